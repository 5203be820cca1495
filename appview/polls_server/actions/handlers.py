"""
User write actions: creating polls and voting.

Each action writes to the acting user's repository first and only then
mirrors the change into the projection. Repository failures are the
caller's to report; projection failures are never surfaced because the
relay stream repairs the projection.

Invariants:
    - Records are validated before they are written
    - Votes are immutable records; changing a vote deletes the old record
      and creates a new one in one applyWrites batch
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..apply.optimistic import OptimisticWriteReconciler
from ..apply.projection_store import ProjectionStore, utc_now_iso
from ..records.lexicon import (
    POLL_COLLECTION,
    VOTE_COLLECTION,
    PollRecord,
    VoteRecord,
    poll_record,
    validate_record,
    vote_record,
)
from ..records.uri import AtUri
from .repo import (
    APPLY_WRITES_CREATE,
    APPLY_WRITES_DELETE,
    InvalidRecordError,
    PollNotFoundError,
    RepoClient,
    replace_outcome,
)

logger = logging.getLogger(__name__)


class PollActions:
    """Write actions invoked by the web layer for a signed-in user.

    Example:
        >>> actions = PollActions(repo_client, store)
        >>> uri = await actions.create_poll(did, "Best cuisine?", ["Italian", "Thai"])
        >>> await actions.cast_vote(did, uri, 1)
    """

    def __init__(
        self,
        repo: RepoClient,
        store: ProjectionStore,
        optimistic: OptimisticWriteReconciler | None = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.repo = repo
        self.store = store
        self.optimistic = optimistic or OptimisticWriteReconciler(store, clock)
        self.clock = clock

    async def create_poll(self, author_did: str, question: str, options: list[str]) -> str:
        """Create a poll in the author's repository.

        Returns:
            URI of the new poll

        Raises:
            InvalidRecordError: If question/options do not form a valid poll
            RepoWriteError: If the repository write fails
        """
        raw = poll_record(question, options, self.clock())
        result = validate_record(POLL_COLLECTION, raw)
        if not result.success or not isinstance(result.record, PollRecord):
            raise InvalidRecordError(f"Invalid poll: {result.error}")

        write = await self.repo.create_record(author_did, POLL_COLLECTION, raw)
        logger.info("Poll written", extra={"uri": write.uri, "author_did": author_did})

        await self.optimistic.poll_created(author_did, write, result.record)
        return write.uri

    async def cast_vote(self, author_did: str, poll_uri: str, option_index: int) -> str | None:
        """Vote on a poll, replacing the author's previous vote if any.

        Returns:
            URI of the new vote, or None if a replacement was not confirmed

        Raises:
            PollNotFoundError: If the poll is not projected
            InvalidRecordError: If option_index is out of range
            RepoWriteError: If the repository write fails
        """
        poll = await self.store.get_poll(poll_uri)
        if poll is None:
            raise PollNotFoundError(poll_uri)

        if not 0 <= option_index < len(poll.options):
            raise InvalidRecordError(
                f"Option {option_index} out of range for poll with {len(poll.options)} options"
            )

        raw = vote_record(poll.uri, poll.cid, option_index, self.clock())
        result = validate_record(VOTE_COLLECTION, raw)
        if not result.success or not isinstance(result.record, VoteRecord):
            raise InvalidRecordError(f"Invalid vote: {result.error}")
        record = result.record

        existing = await self.store.get_vote(author_did, poll_uri)
        if existing is None:
            write = await self.repo.create_record(author_did, VOTE_COLLECTION, raw)
            logger.info("Vote written", extra={"uri": write.uri, "poll_uri": poll_uri})
            await self.optimistic.vote_created(author_did, write, record)
            return write.uri

        results = await self.repo.apply_writes(
            author_did,
            [
                {
                    "$type": APPLY_WRITES_DELETE,
                    "collection": VOTE_COLLECTION,
                    "rkey": AtUri.parse(existing.uri).rkey,
                },
                {
                    "$type": APPLY_WRITES_CREATE,
                    "collection": VOTE_COLLECTION,
                    "value": raw,
                },
            ],
        )
        outcome = replace_outcome(results)
        logger.info(
            "Vote replaced",
            extra={
                "previous_uri": existing.uri,
                "uri": outcome.created.uri if outcome.created else None,
                "deleted": outcome.deleted,
            },
        )

        await self.optimistic.vote_replaced(author_did, existing.uri, outcome, record)
        return outcome.created.uri if outcome.created else None
