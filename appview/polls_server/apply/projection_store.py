"""
Projection store for the polls AppView.

This module manages the SQLite database that stores:
- Polls projected from pt.anto.polls.poll records
- Votes projected from pt.anto.polls.vote records
- The relay cursor of each consumer

The projection is a materialized view of the relay stream. It can be
rebuilt by clearing it and replaying the relay from an early cursor.

Invariants:
    - polls and votes are keyed by record URI
    - At most one vote row per (author_did, poll_uri)
    - Every mutation is a single key-qualified statement, so the stream
      consumer and the optimistic writer can race without shared locks
    - Whichever writer applies last for a key wins

How to change safely:
    - Schema migrations must be backward compatible
    - Never turn an upsert into read-modify-write; it reopens the race
      between the two writers

Table schema:
    polls:
        - uri TEXT PRIMARY KEY
        - author_did TEXT
        - cid TEXT (content hash of the record)
        - question TEXT
        - options_json TEXT (JSON list of labels)
        - created_at TEXT (author-asserted, ISO-8601)
        - indexed_at TEXT (local, ISO-8601)

    votes:
        - uri TEXT PRIMARY KEY
        - author_did TEXT
        - poll_uri TEXT
        - option_index INTEGER
        - created_at TEXT
        - indexed_at TEXT
        - UNIQUE (author_did, poll_uri)

    relay_cursor:
        - consumer TEXT PRIMARY KEY
        - cursor TEXT
        - updated_at INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class ProjectionStoreError(Exception):
    """Projection database operation failed."""

    pass


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Poll:
    """Projected poll row.

    Attributes:
        uri: Record URI
        author_did: Repository owner
        cid: Content hash of the record
        question: Poll question
        options: Ordered option labels
        created_at: Author-asserted creation time
        indexed_at: Time of the last projection write
    """

    uri: str
    author_did: str
    cid: str
    question: str
    options: list[str]
    created_at: str
    indexed_at: str


@dataclass
class Vote:
    """Projected vote row.

    Attributes:
        uri: Record URI
        author_did: Repository owner
        poll_uri: URI of the poll voted on
        option_index: 0-based selected option
        created_at: Author-asserted creation time
        indexed_at: Time of the last projection write
    """

    uri: str
    author_did: str
    poll_uri: str
    option_index: int
    created_at: str
    indexed_at: str


@dataclass
class PollResults:
    """Aggregated vote counts for one poll.

    Attributes:
        poll: The poll
        counts: Votes per option, aligned with poll.options
        total: Votes counted (votes with out-of-range indexes are excluded)
    """

    poll: Poll
    counts: list[int] = field(default_factory=list)
    total: int = 0


class ProjectionStore:
    """SQLite store holding the polls projection.

    Thread safety:
        Each operation opens its own connection. SQLite serializes
        writers; WAL mode lets readers proceed during writes.

    Example:
        >>> store = ProjectionStore("/var/lib/polls/projection.db")
        >>> await store.initialize()
        >>> await store.upsert_poll(poll)
        >>> results = await store.get_poll_results(poll.uri)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -16000,
    ) -> None:
        """Initialize the projection store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Yields:
            SQLite connection in autocommit mode

        Raises:
            ProjectionStoreError: If any SQLite operation fails
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProjectionStoreError(f"Cannot create projection directory: {e}") from e

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise ProjectionStoreError(f"Cannot open projection database: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        except sqlite3.Error as e:
            raise ProjectionStoreError(str(e)) from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS polls (
                uri TEXT PRIMARY KEY,
                author_did TEXT NOT NULL,
                cid TEXT NOT NULL,
                question TEXT NOT NULL,
                options_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL,
                indexed_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_polls_author ON polls(author_did);

            CREATE TABLE IF NOT EXISTS votes (
                uri TEXT PRIMARY KEY,
                author_did TEXT NOT NULL,
                poll_uri TEXT NOT NULL,
                option_index INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                indexed_at TEXT NOT NULL,
                UNIQUE (author_did, poll_uri)
            );

            CREATE INDEX IF NOT EXISTS idx_votes_poll ON votes(poll_uri);

            CREATE TABLE IF NOT EXISTS relay_cursor (
                consumer TEXT PRIMARY KEY,
                cursor TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info(f"Initialized projection database: {self.db_path}")

    # Polls

    async def upsert_poll(self, poll: Poll) -> None:
        """Set the current state of a poll.

        Inserts the row, or overwrites every field of the row with the same
        URI. Create and update events are identical at this layer.

        Args:
            poll: Poll to store
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO polls (uri, author_did, cid, question, options_json,
                                   created_at, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (uri) DO UPDATE SET
                    author_did = excluded.author_did,
                    cid = excluded.cid,
                    question = excluded.question,
                    options_json = excluded.options_json,
                    created_at = excluded.created_at,
                    indexed_at = excluded.indexed_at
                """,
                (
                    poll.uri,
                    poll.author_did,
                    poll.cid,
                    poll.question,
                    json.dumps(poll.options),
                    poll.created_at,
                    poll.indexed_at,
                ),
            )

        logger.debug("Upserted poll", extra={"uri": poll.uri})

    async def delete_poll(self, uri: str) -> bool:
        """Delete a poll if present.

        Args:
            uri: Poll URI

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM polls WHERE uri = ?", (uri,))
            return cursor.rowcount > 0

    async def get_poll(self, uri: str) -> Poll | None:
        """Get a poll by URI.

        Args:
            uri: Poll URI

        Returns:
            Poll or None if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT * FROM polls WHERE uri = ?", (uri,))
            row = cursor.fetchone()
            if not row:
                return None
            return self._row_to_poll(row)

    # Votes

    async def upsert_vote(self, vote: Vote) -> None:
        """Set the current vote of an author on a poll.

        A single INSERT OR REPLACE removes every existing row that conflicts
        on either unique key, the URI (redelivery of the same record) or
        (author_did, poll_uri) (a changed vote carrying a new URI), then
        inserts the incoming row.

        Args:
            vote: Vote to store
        """
        with self._get_connection() as conn:
            self._replace_vote_row(conn, vote)

        logger.debug(
            "Upserted vote",
            extra={"uri": vote.uri, "author_did": vote.author_did, "poll_uri": vote.poll_uri},
        )

    async def replace_vote(self, previous_uri: str | None, vote: Vote) -> None:
        """Delete a superseded vote and store its replacement atomically.

        Args:
            previous_uri: URI of the vote being replaced, or None to only
                store the new vote
            vote: Replacement vote
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                if previous_uri is not None and previous_uri != vote.uri:
                    conn.execute("DELETE FROM votes WHERE uri = ?", (previous_uri,))
                self._replace_vote_row(conn, vote)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Replaced vote",
            extra={"previous_uri": previous_uri, "uri": vote.uri, "poll_uri": vote.poll_uri},
        )

    def _replace_vote_row(self, conn: sqlite3.Connection, vote: Vote) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO votes
            (uri, author_did, poll_uri, option_index, created_at, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                vote.uri,
                vote.author_did,
                vote.poll_uri,
                vote.option_index,
                vote.created_at,
                vote.indexed_at,
            ),
        )

    async def delete_vote(self, uri: str) -> bool:
        """Delete a vote if present.

        Args:
            uri: Vote URI

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM votes WHERE uri = ?", (uri,))
            return cursor.rowcount > 0

    async def get_vote(self, author_did: str, poll_uri: str) -> Vote | None:
        """Get an author's current vote on a poll.

        Args:
            author_did: Voter
            poll_uri: Poll URI

        Returns:
            Vote or None if the author has not voted
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM votes WHERE author_did = ? AND poll_uri = ?",
                (author_did, poll_uri),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._row_to_vote(row)

    async def get_votes_for_poll(self, poll_uri: str) -> list[Vote]:
        """Get all votes on a poll, oldest first.

        Args:
            poll_uri: Poll URI

        Returns:
            List of votes
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM votes WHERE poll_uri = ? ORDER BY created_at, uri",
                (poll_uri,),
            )
            return [self._row_to_vote(row) for row in cursor.fetchall()]

    async def get_poll_results(self, poll_uri: str) -> PollResults | None:
        """Tally votes per option for a poll.

        Args:
            poll_uri: Poll URI

        Returns:
            PollResults, or None if the poll is not projected
        """
        poll = await self.get_poll(poll_uri)
        if poll is None:
            return None

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT option_index, COUNT(*) AS n FROM votes
                WHERE poll_uri = ? AND option_index >= 0 AND option_index < ?
                GROUP BY option_index
                """,
                (poll_uri, len(poll.options)),
            )
            counts = [0] * len(poll.options)
            for row in cursor.fetchall():
                counts[row["option_index"]] = row["n"]

        return PollResults(poll=poll, counts=counts, total=sum(counts))

    # Cursor

    async def load_cursor(self, consumer: str) -> str | None:
        """Get the persisted relay cursor of a consumer.

        Args:
            consumer: Consumer name

        Returns:
            Cursor string or None if the consumer never committed
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT cursor FROM relay_cursor WHERE consumer = ?",
                (consumer,),
            )
            row = cursor.fetchone()
            return row[0] if row else None

    async def save_cursor(self, consumer: str, cursor: str) -> None:
        """Persist the relay cursor of a consumer.

        Args:
            consumer: Consumer name
            cursor: Cursor string
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO relay_cursor (consumer, cursor, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (consumer) DO UPDATE SET
                    cursor = excluded.cursor,
                    updated_at = excluded.updated_at
                """,
                (consumer, cursor, int(time.time() * 1000)),
            )

    async def clear_cursor(self, consumer: str) -> bool:
        """Forget a consumer's cursor so it starts from now.

        Returns:
            True if a cursor was removed
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM relay_cursor WHERE consumer = ?", (consumer,))
            return cursor.rowcount > 0

    # Maintenance

    async def reset(self) -> None:
        """Delete all projected rows and cursors."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM votes")
                conn.execute("DELETE FROM polls")
                conn.execute("DELETE FROM relay_cursor")
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.info(f"Reset projection database: {self.db_path}")

    async def get_stats(self) -> dict[str, int]:
        """Get row counts.

        Returns:
            Dictionary with counts
        """
        with self._get_connection() as conn:
            stats = {}

            cursor = conn.execute("SELECT COUNT(*) FROM polls")
            stats["polls"] = cursor.fetchone()[0]

            cursor = conn.execute("SELECT COUNT(*) FROM votes")
            stats["votes"] = cursor.fetchone()[0]

            return stats

    def _row_to_poll(self, row: sqlite3.Row) -> Poll:
        return Poll(
            uri=row["uri"],
            author_did=row["author_did"],
            cid=row["cid"],
            question=row["question"],
            options=json.loads(row["options_json"]),
            created_at=row["created_at"],
            indexed_at=row["indexed_at"],
        )

    def _row_to_vote(self, row: sqlite3.Row) -> Vote:
        return Vote(
            uri=row["uri"],
            author_did=row["author_did"],
            poll_uri=row["poll_uri"],
            option_index=row["option_index"],
            created_at=row["created_at"],
            indexed_at=row["indexed_at"],
        )
