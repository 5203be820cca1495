"""
Unit tests for optimistic projection writes.

Tests cover:
- Poll and first-vote mirroring
- Vote replacement under every remote outcome
- Store failures are swallowed
"""

import tempfile

import pytest

from appview.polls_server.apply import (
    OptimisticWriteReconciler,
    ProjectionStore,
    ReplaceOutcome,
    WriteResult,
)
from appview.polls_server.records.lexicon import (
    PollRecord,
    VoteRecord,
    poll_record,
    vote_record,
)

ALICE = "did:plc:alice"
P1 = f"at://{ALICE}/pt.anto.polls.poll/p1"
V1 = f"at://{ALICE}/pt.anto.polls.vote/v1"
V2 = f"at://{ALICE}/pt.anto.polls.vote/v2"
CREATED_AT = "2026-01-01T12:00:00.000Z"


def vote(option_index):
    return VoteRecord.model_validate(vote_record(P1, "bafy-p1", option_index, CREATED_AT))


class TestOptimisticWriteReconciler:
    """Tests for OptimisticWriteReconciler."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        store = ProjectionStore(f"{data_dir}/projection.db", wal_mode=False)
        await store.initialize()
        return store

    @pytest.fixture
    def optimistic(self, store):
        return OptimisticWriteReconciler(store, clock=lambda: "2026-03-01T00:00:00.000Z")

    @pytest.fixture
    async def voted(self, optimistic):
        """Alice has voted for option 1 under V1."""
        assert await optimistic.vote_created(ALICE, WriteResult(uri=V1, cid="c1"), vote(1))

    @pytest.mark.asyncio
    async def test_poll_created(self, store, optimistic):
        record = PollRecord.model_validate(poll_record("Best cuisine?", ["Italian", "Thai"], CREATED_AT))

        assert await optimistic.poll_created(ALICE, WriteResult(uri=P1, cid="bafy-p1"), record)

        poll = await store.get_poll(P1)
        assert poll.options == ["Italian", "Thai"]
        assert poll.cid == "bafy-p1"
        assert poll.indexed_at == "2026-03-01T00:00:00.000Z"

    @pytest.mark.asyncio
    async def test_vote_created(self, store, voted):
        current = await store.get_vote(ALICE, P1)
        assert current.uri == V1
        assert current.option_index == 1

    @pytest.mark.asyncio
    async def test_replace_confirmed(self, store, optimistic, voted):
        """Both remote writes confirmed: old row gone, new row present."""
        outcome = ReplaceOutcome(deleted=True, created=WriteResult(uri=V2, cid="c2"))

        assert await optimistic.vote_replaced(ALICE, V1, outcome, vote(0))

        votes = await store.get_votes_for_poll(P1)
        assert [(v.uri, v.option_index) for v in votes] == [(V2, 0)]

    @pytest.mark.asyncio
    async def test_replace_create_failed_keeps_prior_vote(self, store, optimistic, voted):
        """Remote delete succeeded but create failed: prior vote stays visible."""
        outcome = ReplaceOutcome(deleted=True, created=None)

        assert await optimistic.vote_replaced(ALICE, V1, outcome, vote(0)) is False

        current = await store.get_vote(ALICE, P1)
        assert current is not None
        assert current.uri == V1
        assert current.option_index == 1

    @pytest.mark.asyncio
    async def test_replace_nothing_confirmed(self, store, optimistic, voted):
        outcome = ReplaceOutcome(deleted=False, created=None)

        assert await optimistic.vote_replaced(ALICE, V1, outcome, vote(0)) is False
        assert (await store.get_vote(ALICE, P1)).uri == V1

    @pytest.mark.asyncio
    async def test_replace_delete_unconfirmed(self, store, optimistic, voted):
        """Create confirmed without delete: the new vote is shown, still one row."""
        outcome = ReplaceOutcome(deleted=False, created=WriteResult(uri=V2, cid="c2"))

        assert await optimistic.vote_replaced(ALICE, V1, outcome, vote(0))

        votes = await store.get_votes_for_poll(P1)
        assert [v.uri for v in votes] == [V2]

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, data_dir):
        """A broken projection never fails the user action."""
        broken = OptimisticWriteReconciler(ProjectionStore(f"{data_dir}/uninitialized.db", wal_mode=False))
        record = PollRecord.model_validate(poll_record("Q?", ["a", "b"], CREATED_AT))

        assert await broken.poll_created(ALICE, WriteResult(uri=P1, cid="c"), record) is False
        assert await broken.vote_created(ALICE, WriteResult(uri=V1, cid="c"), vote(0)) is False
        outcome = ReplaceOutcome(deleted=True, created=WriteResult(uri=V2, cid="c2"))
        assert await broken.vote_replaced(ALICE, V1, outcome, vote(1)) is False
