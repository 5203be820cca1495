"""
Record schemas for the polls collections.

Records arrive from repositories the service does not control, so
validation is total: validate_record never raises for bad input and
reports failure through ValidationResult instead.

Invariants:
    - $type must name the collection (bare NSID or #main)
    - Unknown extra fields are tolerated (open records)
    - createdAt is kept as the author-supplied string once it parses

How to change safely:
    - Loosening a constraint is safe; tightening one makes previously
      projected records disappear on the next full replay
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

POLL_COLLECTION = "pt.anto.polls.poll"
VOTE_COLLECTION = "pt.anto.polls.vote"

MAX_QUESTION_LENGTH = 300
MIN_OPTIONS = 2
MAX_OPTIONS = 10
MAX_OPTION_LENGTH = 100


_FRACTION = re.compile(r"\.(\d+)")


def _check_datetime(value: str) -> str:
    # fromisoformat on 3.10 only takes 3 or 6 fractional digits and no Z
    normalized = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    if normalized[-1:] in ("Z", "z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        datetime.fromisoformat(normalized)
    except ValueError as e:
        raise ValueError(f"createdAt is not an ISO-8601 datetime: {value}") from e
    return value


class StrongRef(BaseModel):
    """Reference to a specific version of a record."""

    model_config = ConfigDict(extra="allow")

    uri: str = Field(pattern=r"^at://[^/]+/[^/]+/[^/]+$")
    cid: str = Field(min_length=1)


class PollRecord(BaseModel):
    """pt.anto.polls.poll record."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["pt.anto.polls.poll", "pt.anto.polls.poll#main"] = Field(alias="$type")
    question: str = Field(min_length=1, max_length=MAX_QUESTION_LENGTH)
    options: list[str] = Field(min_length=MIN_OPTIONS, max_length=MAX_OPTIONS)
    created_at: str = Field(alias="createdAt")

    @field_validator("options")
    @classmethod
    def _options_not_blank(cls, options: list[str]) -> list[str]:
        for option in options:
            if not option.strip():
                raise ValueError("Poll options must not be blank")
            if len(option) > MAX_OPTION_LENGTH:
                raise ValueError(f"Poll option longer than {MAX_OPTION_LENGTH} characters")
        return options

    @field_validator("created_at")
    @classmethod
    def _created_at_is_datetime(cls, value: str) -> str:
        return _check_datetime(value)


class VoteRecord(BaseModel):
    """pt.anto.polls.vote record."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["pt.anto.polls.vote", "pt.anto.polls.vote#main"] = Field(alias="$type")
    poll: StrongRef
    option_index: int = Field(alias="optionIndex", ge=0, strict=True)
    created_at: str = Field(alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def _created_at_is_datetime(cls, value: str) -> str:
        return _check_datetime(value)


RECORD_MODELS: dict[str, type[BaseModel]] = {
    POLL_COLLECTION: PollRecord,
    VOTE_COLLECTION: VoteRecord,
}


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one record.

    Attributes:
        success: Whether the record matched the schema
        record: Typed record when success is True
        error: Reason when success is False
    """

    success: bool
    record: PollRecord | VoteRecord | None = None
    error: str | None = None


def validate_record(collection: str, value: Any) -> ValidationResult:
    """Validate a raw record value against its collection schema.

    Args:
        collection: Collection NSID
        value: Raw record (decoded JSON)

    Returns:
        ValidationResult with the typed record on success
    """
    model = RECORD_MODELS.get(collection)
    if model is None:
        return ValidationResult(success=False, error=f"Unknown collection: {collection}")

    if not isinstance(value, dict):
        return ValidationResult(success=False, error="Record is not an object")

    try:
        record = model.model_validate(value)
    except ValidationError as e:
        return ValidationResult(success=False, error=str(e))

    return ValidationResult(success=True, record=record)  # type: ignore[arg-type]


def poll_record(question: str, options: list[str], created_at: str) -> dict[str, Any]:
    """Build a raw poll record for writing to a repository."""
    return {
        "$type": POLL_COLLECTION,
        "question": question,
        "options": options,
        "createdAt": created_at,
    }


def vote_record(poll_uri: str, poll_cid: str, option_index: int, created_at: str) -> dict[str, Any]:
    """Build a raw vote record for writing to a repository."""
    return {
        "$type": VOTE_COLLECTION,
        "poll": {"uri": poll_uri, "cid": poll_cid},
        "optionIndex": option_index,
        "createdAt": created_at,
    }
