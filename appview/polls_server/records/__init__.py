"""
Record schemas, URIs and the relay record filter.
"""

from .filter import Accepted, RecordFilter, Rejected
from .lexicon import (
    POLL_COLLECTION,
    VOTE_COLLECTION,
    PollRecord,
    StrongRef,
    ValidationResult,
    VoteRecord,
    validate_record,
)
from .uri import AtUri

__all__ = [
    "POLL_COLLECTION",
    "VOTE_COLLECTION",
    "PollRecord",
    "VoteRecord",
    "StrongRef",
    "ValidationResult",
    "validate_record",
    "AtUri",
    "RecordFilter",
    "Accepted",
    "Rejected",
]
