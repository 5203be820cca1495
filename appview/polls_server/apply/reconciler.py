"""
Event reconciler for the polls projection.

The reconciler turns one accepted relay event into one projection
mutation. It ensures:
- Idempotent processing (redelivering an event leaves the same state)
- Last-applied-wins for every key, in relay order
- At most one vote row per (author, poll)

Invariants:
    - Poll create and update are the same upsert
    - Deletes of absent rows are no-ops, not errors
    - Failures are reported in ApplyResult, never raised

How to change safely:
    - Test idempotency with duplicate event injection
    - Keep every mutation a single keyed statement
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..records.filter import Accepted
from ..records.lexicon import POLL_COLLECTION, VOTE_COLLECTION, PollRecord, VoteRecord
from ..relay.base import EventKind, RelayEvent
from .projection_store import Poll, ProjectionStore, ProjectionStoreError, Vote, utc_now_iso

logger = logging.getLogger(__name__)


class ReconcileError(Exception):
    """An accepted event could not be applied to the projection."""

    pass


@dataclass
class ApplyResult:
    """Result of applying one event.

    Attributes:
        success: Whether the projection was updated
        event: The relay event
        action: Mutation performed (upsert_poll, delete_poll, upsert_vote, delete_vote)
        error: Error message if failed
    """

    success: bool
    event: RelayEvent
    action: str | None = None
    error: str | None = None


class EventReconciler:
    """Applies accepted relay events to the projection store.

    Example:
        >>> reconciler = EventReconciler(store)
        >>> result = await reconciler.apply(Accepted(event, record))
        >>> assert result.success
    """

    def __init__(
        self,
        store: ProjectionStore,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Projection store
            clock: Source of index timestamps
        """
        self.store = store
        self.clock = clock

    async def apply(self, accepted: Accepted) -> ApplyResult:
        """Apply one accepted event.

        Args:
            accepted: Filter output for the event

        Returns:
            ApplyResult indicating success/failure
        """
        event = accepted.event
        action = self._action_for(event)
        if action is None:
            return ApplyResult(
                success=False,
                event=event,
                error=f"No mutation for {event.kind.value} on {event.collection}",
            )

        try:
            if action == "upsert_poll":
                await self._upsert_poll(event, accepted.record)
            elif action == "delete_poll":
                await self.store.delete_poll(event.uri)
            elif action == "upsert_vote":
                await self._upsert_vote(event, accepted.record)
            elif action == "delete_vote":
                await self.store.delete_vote(event.uri)

        except (ProjectionStoreError, ReconcileError) as e:
            logger.error(
                f"Error applying event: {e}",
                extra={"uri": event.uri, "action": action, "cursor": str(event.cursor)},
            )
            return ApplyResult(success=False, event=event, action=action, error=str(e))

        logger.debug(
            "Applied event",
            extra={"uri": event.uri, "action": action, "cursor": str(event.cursor)},
        )
        return ApplyResult(success=True, event=event, action=action)

    def _action_for(self, event: RelayEvent) -> str | None:
        deleting = event.kind == EventKind.DELETE
        if event.collection == POLL_COLLECTION:
            return "delete_poll" if deleting else "upsert_poll"
        if event.collection == VOTE_COLLECTION:
            return "delete_vote" if deleting else "upsert_vote"
        return None

    async def _upsert_poll(self, event: RelayEvent, record: PollRecord | VoteRecord | None) -> None:
        if not isinstance(record, PollRecord):
            raise ReconcileError(f"Poll event without poll record: {event.uri}")

        await self.store.upsert_poll(
            Poll(
                uri=event.uri,
                author_did=event.did,
                cid=event.cid or "",
                question=record.question,
                options=list(record.options),
                created_at=record.created_at,
                indexed_at=self.clock(),
            )
        )

    async def _upsert_vote(self, event: RelayEvent, record: PollRecord | VoteRecord | None) -> None:
        if not isinstance(record, VoteRecord):
            raise ReconcileError(f"Vote event without vote record: {event.uri}")

        await self.store.upsert_vote(
            Vote(
                uri=event.uri,
                author_did=event.did,
                poll_uri=record.poll.uri,
                option_index=record.option_index,
                created_at=record.created_at,
                indexed_at=self.clock(),
            )
        )
