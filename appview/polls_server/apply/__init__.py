"""
Apply module for the polls AppView - projection and reconciliation.

This module handles:
- The SQLite projection of polls and votes
- Reconciling relay events into the projection
- Consuming the relay with a persisted cursor
- Mirroring the user's own writes ahead of the relay

The projection is a materialized view derived from the relay stream.
It can be rebuilt from scratch by replaying the stream.

Invariants:
    - Reconciliation is idempotent (same event applied twice has no effect)
    - At most one vote per (author, poll) after any sequence of events
    - Two independent writers (relay and optimistic) use only keyed
      upserts and deletes, so the last applied write wins per key
"""

from .consumer import StreamConsumer
from .optimistic import OptimisticWriteReconciler, ReplaceOutcome, WriteResult
from .projection_store import (
    Poll,
    PollResults,
    ProjectionStore,
    ProjectionStoreError,
    Vote,
    utc_now_iso,
)
from .reconciler import ApplyResult, EventReconciler, ReconcileError

__all__ = [
    "ProjectionStore",
    "ProjectionStoreError",
    "Poll",
    "Vote",
    "PollResults",
    "utc_now_iso",
    "EventReconciler",
    "ApplyResult",
    "ReconcileError",
    "StreamConsumer",
    "OptimisticWriteReconciler",
    "WriteResult",
    "ReplaceOutcome",
]
