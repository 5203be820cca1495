"""
Relay stream abstraction for the polls AppView.

This module provides the client side of the network relay:
- Jetstream websocket client (production)
- In-memory relay (testing)

The relay is the only source of repository changes for the projection.
The projection can be rebuilt by replaying the relay from an early cursor.

Invariants:
    - Events are delivered in relay order within one subscription
    - Delivery is at-least-once; consumers must apply idempotently
    - Subscriptions are filtered server-side to the wanted collections
"""

from .base import (
    EventKind,
    RelayConnectionError,
    RelayCursor,
    RelayDecodeError,
    RelayError,
    RelayEvent,
    RelayStream,
)
from .jetstream import JetstreamRelayStream, decode_message
from .memory import InMemoryRelayStream

__all__ = [
    # Protocol and types
    "RelayStream",
    "RelayEvent",
    "RelayCursor",
    "EventKind",
    "RelayError",
    "RelayConnectionError",
    "RelayDecodeError",
    # Implementations
    "JetstreamRelayStream",
    "InMemoryRelayStream",
    "decode_message",
]
