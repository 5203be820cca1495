"""
Unit tests for the polls projection store.

Tests cover:
- Poll upsert/delete/get
- Vote two-key upsert (URI and author/poll)
- Atomic vote replacement
- Results tallies
- Cursor persistence and reset
"""

import sqlite3
import tempfile

import pytest

from appview.polls_server.apply.projection_store import (
    Poll,
    ProjectionStore,
    ProjectionStoreError,
    Vote,
)

ALICE = "did:plc:alice"
BOB = "did:plc:bob"
P1 = f"at://{ALICE}/pt.anto.polls.poll/p1"


def make_poll(uri=P1, question="Best cuisine?", options=None, indexed_at="2026-01-01T00:00:00.000Z"):
    return Poll(
        uri=uri,
        author_did=ALICE,
        cid="bafy-poll",
        question=question,
        options=options or ["Italian", "Thai"],
        created_at="2026-01-01T00:00:00.000Z",
        indexed_at=indexed_at,
    )


def make_vote(rkey, author=ALICE, poll_uri=P1, option_index=0):
    return Vote(
        uri=f"at://{author}/pt.anto.polls.vote/{rkey}",
        author_did=author,
        poll_uri=poll_uri,
        option_index=option_index,
        created_at="2026-01-01T00:00:01.000Z",
        indexed_at="2026-01-01T00:00:02.000Z",
    )


class TestProjectionStore:
    """Tests for ProjectionStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create and initialize the store."""
        store = ProjectionStore(f"{data_dir}/projection.db", wal_mode=False)
        await store.initialize()
        return store

    @pytest.mark.asyncio
    async def test_upsert_poll_inserts(self, store):
        """A new poll is stored with every field."""
        await store.upsert_poll(make_poll())

        poll = await store.get_poll(P1)
        assert poll is not None
        assert poll.question == "Best cuisine?"
        assert poll.options == ["Italian", "Thai"]
        assert poll.author_did == ALICE
        assert poll.cid == "bafy-poll"

    @pytest.mark.asyncio
    async def test_upsert_poll_overwrites(self, store):
        """Upserting the same URI overwrites in place."""
        await store.upsert_poll(make_poll())
        await store.upsert_poll(
            make_poll(question="Best dessert?", options=["Gelato", "Mochi", "Flan"],
                      indexed_at="2026-01-02T00:00:00.000Z")
        )

        poll = await store.get_poll(P1)
        assert poll.question == "Best dessert?"
        assert poll.options == ["Gelato", "Mochi", "Flan"]
        assert poll.indexed_at == "2026-01-02T00:00:00.000Z"

        stats = await store.get_stats()
        assert stats["polls"] == 1

    @pytest.mark.asyncio
    async def test_delete_poll(self, store):
        """Delete reports whether a row was removed."""
        await store.upsert_poll(make_poll())

        assert await store.delete_poll(P1) is True
        assert await store.get_poll(P1) is None
        assert await store.delete_poll(P1) is False

    @pytest.mark.asyncio
    async def test_upsert_vote_same_uri_is_idempotent(self, store):
        """Redelivering the same vote keeps one row."""
        vote = make_vote("v1", option_index=1)
        await store.upsert_vote(vote)
        await store.upsert_vote(vote)

        votes = await store.get_votes_for_poll(P1)
        assert len(votes) == 1
        assert votes[0].uri == vote.uri
        assert votes[0].option_index == 1

    @pytest.mark.asyncio
    async def test_upsert_vote_new_uri_replaces_author_vote(self, store):
        """A new URI for the same author and poll displaces the old row."""
        await store.upsert_vote(make_vote("v1", option_index=1))
        await store.upsert_vote(make_vote("v2", option_index=0))

        votes = await store.get_votes_for_poll(P1)
        assert len(votes) == 1
        assert votes[0].uri.endswith("/v2")
        assert votes[0].option_index == 0

    @pytest.mark.asyncio
    async def test_upsert_vote_uri_moving_to_other_poll(self, store):
        """An existing URI pointing at a new poll leaves no stale row behind."""
        p2 = f"at://{ALICE}/pt.anto.polls.poll/p2"
        await store.upsert_vote(make_vote("v1", poll_uri=P1))
        await store.upsert_vote(make_vote("v1", poll_uri=p2))

        assert await store.get_vote(ALICE, P1) is None
        moved = await store.get_vote(ALICE, p2)
        assert moved is not None
        assert (await store.get_stats())["votes"] == 1

    @pytest.mark.asyncio
    async def test_votes_of_different_authors_coexist(self, store):
        """Uniqueness is per author and poll."""
        await store.upsert_vote(make_vote("v1", author=ALICE, option_index=0))
        await store.upsert_vote(make_vote("v1", author=BOB, option_index=1))

        votes = await store.get_votes_for_poll(P1)
        assert {v.author_did for v in votes} == {ALICE, BOB}

    @pytest.mark.asyncio
    async def test_get_vote(self, store):
        """Look up an author's vote on a poll."""
        await store.upsert_vote(make_vote("v1", option_index=1))

        vote = await store.get_vote(ALICE, P1)
        assert vote is not None
        assert vote.option_index == 1
        assert await store.get_vote(BOB, P1) is None

    @pytest.mark.asyncio
    async def test_delete_vote_is_idempotent(self, store):
        """Deleting an absent vote is a no-op."""
        await store.upsert_vote(make_vote("v1"))

        uri = f"at://{ALICE}/pt.anto.polls.vote/v1"
        assert await store.delete_vote(uri) is True
        assert await store.delete_vote(uri) is False
        assert await store.get_votes_for_poll(P1) == []

    @pytest.mark.asyncio
    async def test_replace_vote(self, store):
        """Replace removes the previous URI and stores the new vote."""
        old = make_vote("v1", option_index=1)
        await store.upsert_vote(old)

        await store.replace_vote(old.uri, make_vote("v2", option_index=0))

        votes = await store.get_votes_for_poll(P1)
        assert [v.uri for v in votes] == [f"at://{ALICE}/pt.anto.polls.vote/v2"]

    @pytest.mark.asyncio
    async def test_replace_vote_without_previous(self, store):
        """Replace with no previous URI behaves like an upsert."""
        await store.replace_vote(None, make_vote("v1"))
        assert (await store.get_stats())["votes"] == 1

    @pytest.mark.asyncio
    async def test_poll_results(self, store):
        """Results count votes per option and ignore out-of-range indexes."""
        await store.upsert_poll(make_poll(options=["A", "B", "C"]))
        await store.upsert_vote(make_vote("v1", author=ALICE, option_index=1))
        await store.upsert_vote(make_vote("v1", author=BOB, option_index=1))
        await store.upsert_vote(make_vote("v1", author="did:plc:carol", option_index=2))
        await store.upsert_vote(make_vote("v1", author="did:plc:dave", option_index=7))

        results = await store.get_poll_results(P1)
        assert results is not None
        assert results.counts == [0, 2, 1]
        assert results.total == 3

    @pytest.mark.asyncio
    async def test_poll_results_unknown_poll(self, store):
        """Results for a missing poll are None."""
        assert await store.get_poll_results(P1) is None

    @pytest.mark.asyncio
    async def test_cursor_round_trip(self, store):
        """Cursors are stored per consumer."""
        assert await store.load_cursor("ingester") is None

        await store.save_cursor("ingester", "100")
        await store.save_cursor("ingester", "200")
        await store.save_cursor("other", "5")

        assert await store.load_cursor("ingester") == "200"
        assert await store.load_cursor("other") == "5"

        assert await store.clear_cursor("ingester") is True
        assert await store.load_cursor("ingester") is None

    @pytest.mark.asyncio
    async def test_reset(self, store):
        """Reset removes all projected rows and cursors."""
        await store.upsert_poll(make_poll())
        await store.upsert_vote(make_vote("v1"))
        await store.save_cursor("ingester", "100")

        await store.reset()

        assert await store.get_stats() == {"polls": 0, "votes": 0}
        assert await store.load_cursor("ingester") is None

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store):
        """Initializing twice keeps existing data."""
        await store.upsert_poll(make_poll())
        await store.initialize()
        assert await store.get_poll(P1) is not None

    @pytest.mark.asyncio
    async def test_sqlite_errors_are_wrapped(self, data_dir):
        """Operations on a missing schema raise ProjectionStoreError."""
        store = ProjectionStore(f"{data_dir}/empty.db", wal_mode=False)

        with pytest.raises(ProjectionStoreError) as exc_info:
            await store.get_poll(P1)
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)

    @pytest.mark.asyncio
    async def test_unwritable_directory_is_wrapped(self, data_dir):
        """A data directory that cannot be created raises ProjectionStoreError."""
        blocker = f"{data_dir}/not-a-dir"
        with open(blocker, "w") as f:
            f.write("x")
        store = ProjectionStore(f"{blocker}/projection.db", wal_mode=False)

        with pytest.raises(ProjectionStoreError) as exc_info:
            await store.initialize()
        assert isinstance(exc_info.value.__cause__, OSError)
