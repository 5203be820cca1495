"""
Base protocol and types for the relay event stream.

This module defines the RelayStream protocol that relay clients implement,
along with the event, cursor and error types shared by the consumer.

Invariants:
    - RelayCursor values are totally ordered within one relay
    - RelayEvent carries everything the reconciler needs; the transport
      framing never leaks past the relay client
    - record is present for create/update and absent for delete

How to change safely:
    - Protocol changes require updating all implementations
    - Keep cursor serialization stable; persisted cursors outlive releases
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable
import logging

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base exception for relay operations."""
    pass


class RelayConnectionError(RelayError):
    """Connection to the relay failed or was lost."""
    pass


class RelayDecodeError(RelayError):
    """A relay frame could not be decoded into an event."""
    pass


class EventKind(Enum):
    """Repository change operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, order=True)
class RelayCursor:
    """Position in the relay stream.

    The relay stamps every event with a microsecond timestamp which doubles
    as the resumption cursor. It is persisted as an opaque string.

    Attributes:
        time_us: Relay timestamp in microseconds
    """
    time_us: int

    @classmethod
    def parse(cls, raw: str) -> RelayCursor:
        """Parse a persisted cursor string.

        Raises:
            ValueError: If the string is not a non-negative integer
        """
        value = int(raw)
        if value < 0:
            raise ValueError(f"Cursor must be non-negative: {raw}")
        return cls(time_us=value)

    def __str__(self) -> str:
        return str(self.time_us)


@dataclass(frozen=True)
class RelayEvent:
    """A repository change event delivered by the relay.

    Attributes:
        kind: create, update or delete
        did: Author identifier (repository owner), treated as opaque
        collection: Record collection NSID
        rkey: Record key within the collection
        cid: Content hash of the record (None for delete)
        record: Raw record value (None for delete)
        cursor: Stream position of this event
    """
    kind: EventKind
    did: str
    collection: str
    rkey: str
    cid: str | None
    record: dict[str, Any] | None
    cursor: RelayCursor

    @property
    def uri(self) -> str:
        """Resource identifier of the record."""
        return f"at://{self.did}/{self.collection}/{self.rkey}"

    def __str__(self) -> str:
        return f"RelayEvent({self.kind.value} {self.uri} @ {self.cursor})"


@runtime_checkable
class RelayStream(Protocol):
    """Protocol for relay stream clients.

    Ordering contract:
        - Events are yielded in relay order within one subscription
        - Resuming from a cursor never skips events after that cursor;
          redelivery of events at or near the cursor is allowed

    Example:
        >>> relay = JetstreamRelayStream(config)
        >>> await relay.connect()
        >>> async for event in relay.subscribe(["pt.anto.polls.poll"]):
        ...     handle(event)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection to the relay.

        Raises:
            RelayConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    @abstractmethod
    def subscribe(
        self,
        collections: Sequence[str],
        cursor: RelayCursor | None = None,
    ) -> AsyncIterator[RelayEvent]:
        """Subscribe to change events for the given collections.

        Args:
            collections: Collection NSIDs to receive
            cursor: Resume after this position; None starts from now

        Yields:
            RelayEvent objects in relay order

        Raises:
            RelayConnectionError: If the connection drops
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the relay."""
        ...
