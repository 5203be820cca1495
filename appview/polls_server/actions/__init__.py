"""
User write actions and the repository write interface they depend on.
"""

from .handlers import PollActions
from .repo import (
    ActionError,
    InvalidRecordError,
    PollNotFoundError,
    RepoClient,
    ReplaceOutcome,
    RepoWriteError,
    replace_outcome,
    WriteResult,
)

__all__ = [
    "PollActions",
    "RepoClient",
    "WriteResult",
    "ReplaceOutcome",
    "ActionError",
    "InvalidRecordError",
    "PollNotFoundError",
    "RepoWriteError",
    "replace_outcome",
]
