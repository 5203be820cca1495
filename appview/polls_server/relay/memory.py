"""
In-memory relay stream for testing.

This module provides a relay backend that keeps every published event in
memory. Useful for:
- Unit and integration tests of the consumer
- Local development without network access

Invariants:
    - All data is lost on process exit
    - Events are delivered in publish order, like the real relay
    - Cursors are strictly increasing per publish

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with RelayStream protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

from .base import (
    EventKind,
    RelayConnectionError,
    RelayCursor,
    RelayEvent,
)

logger = logging.getLogger(__name__)


class InMemoryRelayStream:
    """In-memory implementation of RelayStream.

    Thread safety:
        Uses an asyncio condition; safe to publish and subscribe from
        multiple coroutines on one loop.

    Example:
        >>> relay = InMemoryRelayStream()
        >>> await relay.connect()
        >>> await relay.publish(EventKind.CREATE, "did:plc:a", "pt.anto.polls.poll", "r1", record)
        >>> async for event in relay.subscribe(["pt.anto.polls.poll"], RelayCursor(0)):
        ...     print(event.uri)
    """

    def __init__(self) -> None:
        self._events: list[RelayEvent] = []
        self._connected = False
        self._condition = asyncio.Condition()
        self._last_time_us = 0
        self._pending_failure: Exception | None = None
        self.connect_count = 0

    @property
    def is_connected(self) -> bool:
        """Whether connected (true between connect() and close())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self.connect_count += 1
        self._connected = True
        logger.debug("InMemoryRelayStream connected")

    async def close(self) -> None:
        """Disconnect. Published events are kept for later subscriptions."""
        self._connected = False
        async with self._condition:
            self._condition.notify_all()
        logger.debug("InMemoryRelayStream closed")

    def _next_cursor(self) -> RelayCursor:
        time_us = max(int(time.time() * 1_000_000), self._last_time_us + 1)
        self._last_time_us = time_us
        return RelayCursor(time_us=time_us)

    async def publish(
        self,
        kind: EventKind,
        did: str,
        collection: str,
        rkey: str,
        record: dict[str, Any] | None = None,
        cid: str | None = None,
    ) -> RelayEvent:
        """Publish an event to all current and future subscribers.

        Returns:
            The published event with its assigned cursor
        """
        async with self._condition:
            event = RelayEvent(
                kind=kind,
                did=did,
                collection=collection,
                rkey=rkey,
                cid=cid if kind != EventKind.DELETE else None,
                record=record if kind != EventKind.DELETE else None,
                cursor=self._next_cursor(),
            )
            self._events.append(event)
            self._condition.notify_all()
        return event

    async def redeliver(self, event: RelayEvent) -> None:
        """Append an already published event again (at-least-once delivery)."""
        async with self._condition:
            self._events.append(event)
            self._condition.notify_all()

    async def subscribe(
        self,
        collections: Sequence[str],
        cursor: RelayCursor | None = None,
    ) -> AsyncIterator[RelayEvent]:
        """Yield events after cursor, then wait for new ones.

        Args:
            collections: Collection NSIDs to receive
            cursor: Resume after this position; None starts from now

        Yields:
            RelayEvent in publish order
        """
        if not self._connected:
            raise RelayConnectionError("Not connected")

        wanted = set(collections)
        index = 0 if cursor is not None else len(self._events)

        while True:
            async with self._condition:
                while (
                    index >= len(self._events)
                    and self._connected
                    and self._pending_failure is None
                ):
                    await self._condition.wait()
                if not self._connected:
                    return
                if self._pending_failure is not None:
                    failure, self._pending_failure = self._pending_failure, None
                    raise failure
                event = self._events[index]
                index += 1

            if event.collection not in wanted:
                continue
            if cursor is not None and event.cursor <= cursor:
                continue
            yield event

    # Testing helpers

    def inject_failure(self, exception: Exception) -> None:
        """Make the next delivery attempt raise the given exception.

        Takes effect at the next publish, or immediately for a subscriber
        that is not waiting.
        """
        self._pending_failure = exception

    @property
    def events(self) -> list[RelayEvent]:
        """All published events in order."""
        return list(self._events)
