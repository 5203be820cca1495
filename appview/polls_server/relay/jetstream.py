"""
Jetstream relay client.

Jetstream re-broadcasts the network firehose as JSON over a websocket and
supports server-side collection filtering and cursor resumption, which is
everything the polls consumer needs.

Invariants:
    - Only commit frames become RelayEvents; identity and account frames
      are skipped
    - A malformed frame is logged and skipped, never fatal to the session
    - Connection loss surfaces as RelayConnectionError

How to change safely:
    - Test against a live Jetstream instance before deploying
    - Keep decode_message pure so it stays unit-testable
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

import aiohttp

from .base import (
    EventKind,
    RelayConnectionError,
    RelayCursor,
    RelayDecodeError,
    RelayEvent,
)

logger = logging.getLogger(__name__)

_COMMIT_KIND = "commit"


def decode_message(raw: str | bytes) -> RelayEvent | None:
    """Decode one Jetstream frame.

    Args:
        raw: Frame payload

    Returns:
        RelayEvent for commit frames, None for frames that carry no
        repository change (identity, account)

    Raises:
        RelayDecodeError: If the frame is not valid JSON or a commit frame
            is missing required fields
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RelayDecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RelayDecodeError("Frame is not a JSON object")

    if data.get("kind") != _COMMIT_KIND:
        return None

    commit = data.get("commit")
    if not isinstance(commit, dict):
        raise RelayDecodeError("Commit frame has no commit body")

    try:
        kind = EventKind(commit["operation"])
        did = data["did"]
        collection = commit["collection"]
        rkey = commit["rkey"]
        cursor = RelayCursor(time_us=int(data["time_us"]))
    except (KeyError, TypeError, ValueError) as e:
        raise RelayDecodeError(f"Commit frame is incomplete: {e}") from e

    record = commit.get("record")
    if kind == EventKind.DELETE:
        return RelayEvent(
            kind=kind,
            did=did,
            collection=collection,
            rkey=rkey,
            cid=None,
            record=None,
            cursor=cursor,
        )

    return RelayEvent(
        kind=kind,
        did=did,
        collection=collection,
        rkey=rkey,
        cid=commit.get("cid"),
        record=record if isinstance(record, dict) else None,
        cursor=cursor,
    )


class JetstreamRelayStream:
    """RelayStream implementation backed by a Jetstream websocket.

    Attributes:
        config: RelayConfig with endpoint and heartbeat settings

    Example:
        >>> relay = JetstreamRelayStream(RelayConfig())
        >>> await relay.connect()
        >>> async for event in relay.subscribe(["pt.anto.polls.vote"]):
        ...     print(event.uri)
    """

    def __init__(self, config: Any) -> None:
        """Initialize the client.

        Args:
            config: RelayConfig instance
        """
        self.config = config
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def is_connected(self) -> bool:
        """Whether a session is open."""
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        """Open the HTTP session used for websocket subscriptions."""
        if self.is_connected:
            return
        self._session = aiohttp.ClientSession()
        logger.debug("Jetstream session opened", extra={"url": self.config.url})

    async def close(self) -> None:
        """Close the websocket and session."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except aiohttp.ClientError as e:
                logger.warning(f"Error closing websocket: {e}")
            self._ws = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        logger.debug("Jetstream session closed")

    def _build_params(
        self,
        collections: Sequence[str],
        cursor: RelayCursor | None,
    ) -> list[tuple[str, str]]:
        params = [("wantedCollections", c) for c in collections]
        if cursor is not None:
            params.append(("cursor", str(cursor)))
        return params

    async def subscribe(
        self,
        collections: Sequence[str],
        cursor: RelayCursor | None = None,
    ) -> AsyncIterator[RelayEvent]:
        """Subscribe to commit events for the given collections.

        Args:
            collections: Collection NSIDs to receive
            cursor: Resume position; None tails from now

        Yields:
            RelayEvent for each commit frame

        Raises:
            RelayConnectionError: If the websocket cannot be opened or drops
        """
        if self._session is None:
            raise RelayConnectionError("Not connected")

        params = self._build_params(collections, cursor)

        try:
            self._ws = await self._session.ws_connect(
                self.config.url,
                params=params,
                heartbeat=self.config.heartbeat_seconds,
            )
        except aiohttp.ClientError as e:
            raise RelayConnectionError(f"Failed to connect to relay: {e}") from e

        logger.info(
            "Subscribed to relay",
            extra={
                "url": self.config.url,
                "collections": list(collections),
                "cursor": str(cursor) if cursor else None,
            },
        )

        try:
            async for msg in self._ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    try:
                        event = decode_message(msg.data)
                    except RelayDecodeError as e:
                        logger.warning(f"Skipping undecodable relay frame: {e}")
                        continue
                    if event is not None:
                        yield event
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    raise RelayConnectionError(f"Websocket error: {self._ws.exception()}")
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    break
        except aiohttp.ClientError as e:
            raise RelayConnectionError(f"Relay connection lost: {e}") from e
        finally:
            if self._ws is not None and not self._ws.closed:
                await self._ws.close()
            self._ws = None

        raise RelayConnectionError("Relay closed the connection")
