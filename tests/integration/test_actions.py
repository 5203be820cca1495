"""
Integration tests for user write actions.

Tests cover:
- Poll creation with optimistic projection
- First vote and vote change via applyWrites
- Partial applyWrites outcomes
- Repository failures surface, projection failures do not
"""

import itertools
import tempfile

import pytest

from appview.polls_server.actions import (
    InvalidRecordError,
    PollActions,
    PollNotFoundError,
    RepoWriteError,
    WriteResult,
    replace_outcome,
)
from appview.polls_server.actions.repo import (
    APPLY_WRITES_CREATE,
    APPLY_WRITES_CREATE_RESULT,
    APPLY_WRITES_DELETE,
    APPLY_WRITES_DELETE_RESULT,
)
from appview.polls_server.apply import EventReconciler, ProjectionStore
from appview.polls_server.records import Accepted, RecordFilter
from appview.polls_server.records.lexicon import POLL_COLLECTION, VOTE_COLLECTION
from appview.polls_server.relay.base import EventKind, RelayCursor, RelayEvent

ALICE = "did:plc:alice"


class FakeRepo:
    """Records writes and assigns sequential record keys.

    Attributes:
        records: Live records by URI
        drop_create_in_batch: Return an unexpected result for applyWrites creates
        fail_batch: Reject applyWrites as a whole
    """

    def __init__(self):
        self.records = {}
        self.calls = []
        self._rkeys = itertools.count(1)
        self.drop_create_in_batch = False
        self.fail_batch = False
        self.fail_create = False

    def _write(self, repo, collection, value):
        rkey = f"r{next(self._rkeys)}"
        uri = f"at://{repo}/{collection}/{rkey}"
        self.records[uri] = value
        return WriteResult(uri=uri, cid=f"bafy-{rkey}")

    async def create_record(self, repo, collection, record):
        self.calls.append(("create_record", collection))
        if self.fail_create:
            raise RepoWriteError("PDS unavailable")
        return self._write(repo, collection, record)

    async def apply_writes(self, repo, writes):
        self.calls.append(("apply_writes", [w["$type"] for w in writes]))
        if self.fail_batch:
            raise RepoWriteError("batch rejected")

        results = []
        for write in writes:
            if write["$type"] == APPLY_WRITES_DELETE:
                self.records.pop(f"at://{repo}/{write['collection']}/{write['rkey']}", None)
                results.append({"$type": APPLY_WRITES_DELETE_RESULT})
            elif write["$type"] == APPLY_WRITES_CREATE:
                if self.drop_create_in_batch:
                    results.append({"$type": "com.atproto.repo.applyWrites#unknown"})
                    continue
                written = self._write(repo, write["collection"], write["value"])
                results.append(
                    {"$type": APPLY_WRITES_CREATE_RESULT, "uri": written.uri, "cid": written.cid}
                )
        return results


class TestPollActions:
    """Integration tests for PollActions."""

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
    def repo(self):
        return FakeRepo()

    @pytest.fixture
    def actions(self, repo, store):
        return PollActions(repo, store)

    @pytest.mark.asyncio
    async def test_create_poll(self, repo, store, actions):
        """The new poll is readable immediately."""
        uri = await actions.create_poll(ALICE, "Best cuisine?", ["Italian", "Thai"])

        assert uri in repo.records
        assert repo.records[uri]["$type"] == POLL_COLLECTION
        poll = await store.get_poll(uri)
        assert poll.question == "Best cuisine?"
        assert poll.cid == "bafy-r1"

    @pytest.mark.asyncio
    async def test_create_poll_then_relay_create(self, repo, store, actions):
        """The relay's later create for the same URI keeps a single row."""
        uri = await actions.create_poll(ALICE, "Best cuisine?", ["Italian", "Thai"])

        event = RelayEvent(
            kind=EventKind.CREATE,
            did=ALICE,
            collection=POLL_COLLECTION,
            rkey=uri.rsplit("/", 1)[1],
            cid="bafy-r1",
            record=repo.records[uri],
            cursor=RelayCursor(1),
        )
        outcome = RecordFilter().classify(event)
        assert isinstance(outcome, Accepted)
        assert (await EventReconciler(store).apply(outcome)).success

        assert (await store.get_stats())["polls"] == 1
        assert (await store.get_poll(uri)).options == ["Italian", "Thai"]

    @pytest.mark.asyncio
    async def test_create_poll_invalid(self, repo, actions):
        """Invalid input is rejected before anything is written."""
        with pytest.raises(InvalidRecordError):
            await actions.create_poll(ALICE, "Only one option?", ["Yes"])
        assert repo.calls == []

    @pytest.mark.asyncio
    async def test_create_poll_repo_failure(self, repo, store, actions):
        """Repository failures surface and nothing is projected."""
        repo.fail_create = True

        with pytest.raises(RepoWriteError):
            await actions.create_poll(ALICE, "Q?", ["a", "b"])
        assert (await store.get_stats())["polls"] == 0

    @pytest.mark.asyncio
    async def test_first_vote(self, repo, store, actions):
        poll_uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])

        vote_uri = await actions.cast_vote(ALICE, poll_uri, 1)

        assert repo.calls[-1] == ("create_record", VOTE_COLLECTION)
        vote = await store.get_vote(ALICE, poll_uri)
        assert vote.uri == vote_uri
        assert vote.option_index == 1
        assert repo.records[vote_uri]["poll"] == {"uri": poll_uri, "cid": "bafy-r1"}

    @pytest.mark.asyncio
    async def test_change_vote(self, repo, store, actions):
        """Changing a vote deletes and creates in one batch."""
        poll_uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])
        first = await actions.cast_vote(ALICE, poll_uri, 1)

        second = await actions.cast_vote(ALICE, poll_uri, 0)

        assert repo.calls[-1] == ("apply_writes", [APPLY_WRITES_DELETE, APPLY_WRITES_CREATE])
        assert first not in repo.records
        votes = await store.get_votes_for_poll(poll_uri)
        assert [(v.uri, v.option_index) for v in votes] == [(second, 0)]

    @pytest.mark.asyncio
    async def test_change_vote_create_unconfirmed(self, repo, store, actions):
        """Unconfirmed create keeps showing the prior vote."""
        poll_uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])
        first = await actions.cast_vote(ALICE, poll_uri, 1)
        repo.drop_create_in_batch = True

        assert await actions.cast_vote(ALICE, poll_uri, 0) is None

        vote = await store.get_vote(ALICE, poll_uri)
        assert vote.uri == first
        assert vote.option_index == 1

    @pytest.mark.asyncio
    async def test_change_vote_batch_rejected(self, repo, store, actions):
        poll_uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])
        first = await actions.cast_vote(ALICE, poll_uri, 1)
        repo.fail_batch = True

        with pytest.raises(RepoWriteError):
            await actions.cast_vote(ALICE, poll_uri, 0)
        assert (await store.get_vote(ALICE, poll_uri)).uri == first

    @pytest.mark.asyncio
    async def test_vote_unknown_poll(self, actions):
        with pytest.raises(PollNotFoundError) as exc_info:
            await actions.cast_vote(ALICE, f"at://{ALICE}/{POLL_COLLECTION}/missing", 0)
        assert exc_info.value.code == "POLL_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_vote_option_out_of_range(self, repo, actions):
        poll_uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])

        with pytest.raises(InvalidRecordError):
            await actions.cast_vote(ALICE, poll_uri, 2)
        assert repo.calls == [("create_record", POLL_COLLECTION)]

    @pytest.mark.asyncio
    async def test_projection_failure_not_surfaced(self, repo, store, data_dir):
        """A broken projection does not fail a successful repository write."""
        actions = PollActions(repo, ProjectionStore(f"{data_dir}/uninitialized.db", wal_mode=False))

        uri = await actions.create_poll(ALICE, "Q?", ["a", "b"])
        assert uri in repo.records


class TestReplaceOutcome:
    """Tests for interpreting applyWrites results."""

    def test_both_confirmed(self):
        outcome = replace_outcome(
            [
                {"$type": APPLY_WRITES_DELETE_RESULT},
                {"$type": APPLY_WRITES_CREATE_RESULT, "uri": "at://a/c/r", "cid": "x"},
            ]
        )
        assert outcome.deleted
        assert outcome.created == WriteResult(uri="at://a/c/r", cid="x")

    def test_create_missing_fields(self):
        outcome = replace_outcome(
            [{"$type": APPLY_WRITES_DELETE_RESULT}, {"$type": APPLY_WRITES_CREATE_RESULT}]
        )
        assert outcome.deleted
        assert outcome.created is None

    def test_empty(self):
        outcome = replace_outcome([])
        assert not outcome.deleted
        assert outcome.created is None
