"""
Polls AppView - projection of decentralized poll and vote records.

Polls and votes are records in users' own repositories. This package
derives a local, queryable view of them by consuming the relay's change
stream, and mirrors the signed-in user's own writes into that view so
reads are fresh before the relay catches up.

Architecture:
    ┌─────────────┐   putRecord/applyWrites   ┌──────────────────┐
    │ Web actions │──────────────────────────▶│ User repository  │
    └──────┬──────┘                           └────────┬─────────┘
           │ optimistic                                │
           ▼                                           ▼
    ┌─────────────┐                           ┌──────────────────┐
    │  Projection │◀───── reconcile ──────────│ Relay (Jetstream)│
    │   (SQLite)  │     StreamConsumer        └──────────────────┘
    └─────────────┘

Invariants:
    - User repositories are the source of truth
    - The projection is a derived view that can be rebuilt by replay
    - At most one vote per (author, poll) in the projection
    - Author identifiers are opaque strings; no resolution happens here

How to change safely:
    - Keep every projection mutation a keyed upsert or delete
    - Test new record fields against third-party records in the wild
"""

from ._version import __version__

__all__ = ["__version__"]
