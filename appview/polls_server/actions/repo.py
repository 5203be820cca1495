"""
Repository write RPC interface.

The AppView writes records into the acting user's own repository through
an authenticated XRPC client. Session handling and credentials live with
the caller; this module only fixes the shape of the calls and results.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ..apply.optimistic import ReplaceOutcome, WriteResult

APPLY_WRITES_CREATE = "com.atproto.repo.applyWrites#create"
APPLY_WRITES_DELETE = "com.atproto.repo.applyWrites#delete"
APPLY_WRITES_CREATE_RESULT = "com.atproto.repo.applyWrites#createResult"
APPLY_WRITES_DELETE_RESULT = "com.atproto.repo.applyWrites#deleteResult"


class ActionError(Exception):
    """Base exception for user write actions.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
    """

    def __init__(self, message: str, code: str = "ACTION_ERROR") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class PollNotFoundError(ActionError):
    """The poll being voted on is not in the projection."""

    def __init__(self, poll_uri: str) -> None:
        super().__init__(f"Poll not found: {poll_uri}", code="POLL_NOT_FOUND")
        self.poll_uri = poll_uri


class InvalidRecordError(ActionError):
    """The record built from user input failed schema validation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_RECORD")


class RepoWriteError(ActionError):
    """The repository rejected or failed the write."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REPO_WRITE_FAILED")


def replace_outcome(results: list[dict[str, Any]]) -> ReplaceOutcome:
    """Interpret com.atproto.repo.applyWrites results for [delete, create].

    Any result that is missing or has an unexpected $type counts as not
    confirmed.
    """
    deleted = len(results) > 0 and results[0].get("$type") == APPLY_WRITES_DELETE_RESULT

    created = None
    if len(results) > 1:
        create = results[1]
        if (
            create.get("$type") == APPLY_WRITES_CREATE_RESULT
            and create.get("uri")
            and create.get("cid")
        ):
            created = WriteResult(uri=create["uri"], cid=create["cid"])

    return ReplaceOutcome(deleted=deleted, created=created)


@runtime_checkable
class RepoClient(Protocol):
    """Authenticated access to the acting user's repository."""

    async def create_record(
        self,
        repo: str,
        collection: str,
        record: dict[str, Any],
    ) -> WriteResult:
        """Write a new record with a server-assigned key.

        Raises:
            RepoWriteError: If the write fails
        """
        ...

    async def apply_writes(
        self,
        repo: str,
        writes: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """Apply a batch of writes and return one result per write.

        Raises:
            RepoWriteError: If the batch is rejected as a whole
        """
        ...
