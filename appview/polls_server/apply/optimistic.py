"""
Optimistic projection writes.

After a user action writes a record to the user's own repository, the
same mutation is applied to the projection right away so the user's next
read sees it. The relay will deliver the same change later and the
reconciler will apply it again, which is harmless.

Invariants:
    - Never raises; a failed mirror is logged and left to the relay
    - A replaced vote is deleted locally only once the new vote's
      creation is confirmed remotely
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..records.lexicon import PollRecord, VoteRecord
from .projection_store import Poll, ProjectionStore, ProjectionStoreError, Vote, utc_now_iso

logger = logging.getLogger(__name__)

_IGNORED = "failed to update computed view; ignoring as it should be caught by the relay stream"


@dataclass(frozen=True)
class WriteResult:
    """A record durably written to a repository.

    Attributes:
        uri: Assigned record URI
        cid: Content hash of the written record
    """

    uri: str
    cid: str


@dataclass(frozen=True)
class ReplaceOutcome:
    """What actually happened remotely during a delete-then-create replace.

    Attributes:
        deleted: The previous record was confirmed deleted
        created: The new record, if its creation was confirmed
    """

    deleted: bool
    created: WriteResult | None


class OptimisticWriteReconciler:
    """Mirrors confirmed repository writes into the projection."""

    def __init__(
        self,
        store: ProjectionStore,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self.clock = clock

    async def poll_created(self, author_did: str, write: WriteResult, record: PollRecord) -> bool:
        """Project a poll the author just wrote.

        Returns:
            True if the projection was updated
        """
        poll = Poll(
            uri=write.uri,
            author_did=author_did,
            cid=write.cid,
            question=record.question,
            options=list(record.options),
            created_at=record.created_at,
            indexed_at=self.clock(),
        )
        try:
            await self.store.upsert_poll(poll)
        except ProjectionStoreError as e:
            logger.warning(_IGNORED, extra={"uri": write.uri, "error": str(e)})
            return False
        return True

    async def vote_created(self, author_did: str, write: WriteResult, record: VoteRecord) -> bool:
        """Project a first vote the author just wrote.

        Returns:
            True if the projection was updated
        """
        try:
            await self.store.upsert_vote(self._vote(author_did, write, record))
        except ProjectionStoreError as e:
            logger.warning(_IGNORED, extra={"uri": write.uri, "error": str(e)})
            return False
        return True

    async def vote_replaced(
        self,
        author_did: str,
        previous_uri: str,
        outcome: ReplaceOutcome,
        record: VoteRecord,
    ) -> bool:
        """Project a vote change according to what happened remotely.

        Args:
            author_did: Voter
            previous_uri: URI of the vote being replaced
            outcome: Confirmed remote delete/create results
            record: The new vote record

        Returns:
            True if the projection was updated
        """
        if outcome.created is None:
            # Old vote may still exist remotely; keep showing it.
            logger.info(
                "Vote replacement not confirmed, keeping previous vote",
                extra={"previous_uri": previous_uri, "deleted": outcome.deleted},
            )
            return False

        vote = self._vote(author_did, outcome.created, record)
        try:
            await self.store.replace_vote(previous_uri if outcome.deleted else None, vote)
        except ProjectionStoreError as e:
            logger.warning(_IGNORED, extra={"uri": vote.uri, "error": str(e)})
            return False
        return True

    def _vote(self, author_did: str, write: WriteResult, record: VoteRecord) -> Vote:
        return Vote(
            uri=write.uri,
            author_did=author_did,
            poll_uri=record.poll.uri,
            option_index=record.option_index,
            created_at=record.created_at,
            indexed_at=self.clock(),
        )
