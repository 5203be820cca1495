"""
Record filter for relay events.

Classifies every relay event as Accepted or Rejected before it reaches the
reconciler. The namespace is shared with third-party writers, so a record
that does not match the schema is expected traffic, not an error.

Invariants:
    - classify() is total: it never raises for any event
    - Delete events are accepted without payload validation
    - Rejections are logged at debug level only
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from ..relay.base import EventKind, RelayEvent
from .lexicon import (
    POLL_COLLECTION,
    VOTE_COLLECTION,
    PollRecord,
    VoteRecord,
    validate_record,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    """Event that should be reconciled.

    Attributes:
        event: The relay event
        record: Typed record for create/update, None for delete
    """

    event: RelayEvent
    record: PollRecord | VoteRecord | None = None


@dataclass(frozen=True)
class Rejected:
    """Event that must be dropped.

    Attributes:
        event: The relay event
        reason: Why the event was dropped
    """

    event: RelayEvent
    reason: str


class RecordFilter:
    """Classifies relay events by collection and validates their records.

    Example:
        >>> outcome = RecordFilter().classify(event)
        >>> if isinstance(outcome, Accepted):
        ...     await reconciler.apply(outcome)
    """

    def __init__(self, collections: Iterable[str] = (POLL_COLLECTION, VOTE_COLLECTION)) -> None:
        self.collections = frozenset(collections)

    def classify(self, event: RelayEvent) -> Accepted | Rejected:
        """Classify one event.

        Args:
            event: Relay event

        Returns:
            Accepted with the typed record, or Rejected with a reason
        """
        if event.collection not in self.collections:
            return self._reject(event, f"unwanted collection {event.collection}")

        if event.kind == EventKind.DELETE:
            return Accepted(event=event)

        if event.record is None:
            return self._reject(event, "missing record")

        if event.cid is None:
            return self._reject(event, "missing cid")

        result = validate_record(event.collection, event.record)
        if not result.success:
            return self._reject(event, f"invalid record: {result.error}")

        return Accepted(event=event, record=result.record)

    def _reject(self, event: RelayEvent, reason: str) -> Rejected:
        logger.debug("Dropping relay event", extra={"uri": event.uri, "reason": reason})
        return Rejected(event=event, reason=reason)
