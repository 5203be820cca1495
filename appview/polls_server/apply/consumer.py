"""
Stream consumer for the polls projection.

The StreamConsumer subscribes to the relay and feeds every event through
the record filter and the reconciler, one at a time, in delivery order.
It ensures:
- The cursor only advances past events that were applied or dropped
- A failed apply is retried by reconnecting from the persisted cursor
- Relay failures never end the consumer; it reconnects with backoff

Invariants:
    - Events are processed sequentially; nothing is parallelized
    - The cursor is loaded at connect time and persisted after applying
    - Rejected events advance the cursor like applied ones

How to change safely:
    - Never persist a cursor before the event it names is applied
    - Monitor reconnect counts in production
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import ConsumerConfig, RelayConfig
from ..records.filter import Accepted, RecordFilter
from ..relay.base import RelayCursor, RelayError, RelayEvent, RelayStream
from .projection_store import ProjectionStore, ProjectionStoreError
from .reconciler import ApplyResult, EventReconciler, ReconcileError

logger = logging.getLogger(__name__)


class StreamConsumer:
    """Consumes relay events and applies them to the projection store.

    Thread safety:
        The consumer is designed to run as a single task. Running two
        consumers with the same name would interleave cursor commits.

    Example:
        >>> consumer = StreamConsumer(relay, store)
        >>> task = asyncio.create_task(consumer.start())
        >>> await consumer.stop()
    """

    def __init__(
        self,
        relay: RelayStream,
        store: ProjectionStore,
        reconciler: EventReconciler | None = None,
        record_filter: RecordFilter | None = None,
        relay_config: RelayConfig | None = None,
        consumer_config: ConsumerConfig | None = None,
    ) -> None:
        """Initialize the consumer.

        Args:
            relay: Relay stream to consume from
            store: Projection store (also holds the cursor)
            reconciler: Event reconciler
            record_filter: Record filter
            relay_config: Collections and reconnect backoff
            consumer_config: Consumer name and cursor commit cadence
        """
        self.relay = relay
        self.store = store
        self.reconciler = reconciler or EventReconciler(store)
        self.relay_config = relay_config or RelayConfig()
        self.consumer_config = consumer_config or ConsumerConfig()
        self.record_filter = record_filter or RecordFilter(self.relay_config.collections)

        self._running = False
        self._processed_count = 0
        self._rejected_count = 0
        self._error_count = 0
        self._reconnect_count = 0
        self._uncommitted = 0
        self._last_cursor: RelayCursor | None = None
        self._committed_cursor: RelayCursor | None = None
        self._delay_ms = self.relay_config.reconnect_initial_delay_ms

    @property
    def name(self) -> str:
        return self.consumer_config.name

    async def start(self) -> None:
        """Run the consumer until stop() is called.

        Each failed session is followed by a backoff delay and a new
        session resumed from the persisted cursor.
        """
        if self._running:
            logger.warning("Consumer already running")
            return

        self._running = True
        logger.info(
            "Starting stream consumer",
            extra={"consumer": self.name, "collections": list(self.relay_config.collections)},
        )

        try:
            while self._running:
                try:
                    await self._run_session()
                except (RelayError, ProjectionStoreError, ReconcileError) as e:
                    self._error_count += 1
                    logger.warning(
                        f"Consumer session failed: {e}",
                        extra={"consumer": self.name, "retry_in_ms": self._delay_ms},
                    )
                except Exception as e:
                    self._error_count += 1
                    logger.error(
                        f"Unexpected consumer session failure: {e}",
                        exc_info=True,
                        extra={"consumer": self.name, "retry_in_ms": self._delay_ms},
                    )

                if not self._running:
                    break

                self._reconnect_count += 1
                await asyncio.sleep(self._delay_ms / 1000.0)
                self._delay_ms = min(self._delay_ms * 2, self.relay_config.reconnect_max_delay_ms)

        except asyncio.CancelledError:
            logger.info("Consumer cancelled")

        finally:
            self._running = False
            await self._flush_cursor()

    async def stop(self) -> None:
        """Stop the consumer loop and flush the cursor."""
        self._running = False
        logger.info("Stopping stream consumer")
        await self.relay.close()
        await self._flush_cursor()

    async def _run_session(self) -> None:
        """Consume one relay connection until it ends or fails."""
        cursor = await self._load_cursor()

        await self.relay.connect()
        try:
            async for event in self.relay.subscribe(self.relay_config.collections, cursor):
                if not self._running:
                    break
                await self.process_event(event)
                self._delay_ms = self.relay_config.reconnect_initial_delay_ms
        finally:
            await self.relay.close()

    async def _load_cursor(self) -> RelayCursor | None:
        raw = await self.store.load_cursor(self.name)
        if raw is None:
            logger.info("No persisted cursor, starting from now", extra={"consumer": self.name})
            return None

        try:
            cursor = RelayCursor.parse(raw)
        except ValueError:
            logger.warning(
                f"Ignoring unreadable cursor {raw!r}, starting from now",
                extra={"consumer": self.name},
            )
            return None

        self._committed_cursor = cursor
        return cursor

    async def process_event(self, event: RelayEvent) -> ApplyResult | None:
        """Filter and apply one event, then advance the cursor.

        Args:
            event: Relay event

        Returns:
            ApplyResult for accepted events, None for rejected ones

        Raises:
            ReconcileError: If the event could not be applied; the cursor
                is left before this event
        """
        outcome = self.record_filter.classify(event)

        result = None
        if isinstance(outcome, Accepted):
            result = await self.reconciler.apply(outcome)
            if not result.success:
                raise ReconcileError(f"Failed to apply {event}: {result.error}")
            self._processed_count += 1
        else:
            self._rejected_count += 1

        self._last_cursor = event.cursor
        self._uncommitted += 1
        if self._uncommitted >= self.consumer_config.cursor_commit_every:
            await self._flush_cursor()

        return result

    async def _flush_cursor(self) -> None:
        """Persist the last processed cursor if it moved."""
        cursor = self._last_cursor
        if cursor is None or cursor == self._committed_cursor:
            return

        try:
            await self.store.save_cursor(self.name, str(cursor))
        except ProjectionStoreError as e:
            logger.warning(f"Failed to persist cursor: {e}", extra={"consumer": self.name})
            return

        self._committed_cursor = cursor
        self._uncommitted = 0

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "running": self._running,
            "processed_count": self._processed_count,
            "rejected_count": self._rejected_count,
            "error_count": self._error_count,
            "reconnect_count": self._reconnect_count,
            "last_cursor": str(self._last_cursor) if self._last_cursor else None,
            "committed_cursor": str(self._committed_cursor) if self._committed_cursor else None,
        }
