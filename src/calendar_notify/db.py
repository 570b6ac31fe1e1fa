"""
SQLite persistence for the notification ledger.
"""

import logging
import sqlite3
from datetime import datetime
from datetime import timezone
from pathlib import Path

from calendar_notify.models import Channel
from calendar_notify.models import LedgerEntry
from calendar_notify.models import LedgerKey

# SQLite's own clock, UTC with millisecond precision.  Sent times are always
# taken from here, never from the local process.
_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"


def _parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


class LedgerDatabase:
    """SQLite-backed LedgerStore.

    The connection runs in autocommit mode; :meth:`begin` opens an
    ``IMMEDIATE`` transaction so that concurrent runs against the same file
    serialise on the database write lock.
    """

    def __init__(self, db_path: Path, timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout  # seconds to wait for another run's write lock
        self.conn: sqlite3.Connection | None = None
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the ledger database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            str(self.db_path), isolation_level=None, timeout=self.timeout
        )
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create the notification_ledger table if it doesn't exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS notification_ledger (
                user_id INTEGER NOT NULL,
                instance_id INTEGER NOT NULL,
                channel TEXT NOT NULL CHECK (channel IN ('email', 'phone')),
                sequence_number INTEGER NOT NULL DEFAULT 0 CHECK (sequence_number >= 0),
                last_sent_at TEXT,
                PRIMARY KEY (user_id, instance_id, channel)
            )
        """)

    # ------------------------------------------------------------------ #
    # LedgerStore interface                                                #
    # ------------------------------------------------------------------ #

    def read(self, key: LedgerKey, channel: Channel) -> LedgerEntry | None:
        row = self.conn.execute(
            "SELECT sequence_number, last_sent_at FROM notification_ledger "
            "WHERE user_id = ? AND instance_id = ? AND channel = ?",
            (key.user_id, key.instance_id, channel.value),
        ).fetchone()
        if row is None:
            return None
        return LedgerEntry(row["sequence_number"], _parse_timestamp(row["last_sent_at"]))

    def write_sequence(self, key: LedgerKey, channel: Channel, sequence_number: int):
        """Store the new sequence number and stamp last_sent_at from SQLite's clock."""
        self.conn.execute(
            "INSERT INTO notification_ledger "
            "(user_id, instance_id, channel, sequence_number, last_sent_at) "
            f"VALUES (?, ?, ?, ?, {_NOW_SQL}) "
            "ON CONFLICT (user_id, instance_id, channel) DO UPDATE SET "
            "sequence_number = excluded.sequence_number, "
            "last_sent_at = excluded.last_sent_at",
            (key.user_id, key.instance_id, channel.value, sequence_number),
        )

    def read_authoritative_sent_time(self, key: LedgerKey, channel: Channel) -> datetime:
        row = self.conn.execute(
            "SELECT last_sent_at FROM notification_ledger "
            "WHERE user_id = ? AND instance_id = ? AND channel = ?",
            (key.user_id, key.instance_id, channel.value),
        ).fetchone()
        if row is None or row["last_sent_at"] is None:
            raise sqlite3.DatabaseError(
                f"no sent time recorded for user {key.user_id}, instance {key.instance_id}"
            )
        return _parse_timestamp(row["last_sent_at"])

    def begin(self):
        self.conn.execute("BEGIN IMMEDIATE")

    def commit(self):
        """Commit pending transactions."""
        if self.conn and self.conn.in_transaction:
            self.conn.execute("COMMIT")

    def rollback(self):
        if self.conn and self.conn.in_transaction:
            self.conn.execute("ROLLBACK")

    # ------------------------------------------------------------------ #
    # Reporting                                                            #
    # ------------------------------------------------------------------ #

    def all_entries(self, user_id: int | None = None) -> list[sqlite3.Row]:
        """Return ledger rows ordered by user, instance and channel."""
        query = "SELECT * FROM notification_ledger"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY user_id, instance_id, channel"
        return self.conn.execute(query, params).fetchall()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.rollback()
            self.conn.close()
            self.conn = None


def query_status(db_path: Path) -> list:
    """
    Return per-channel aggregates: channel, count, max sequence, last sent time.

    Returns an empty list when the DB file does not exist or has no
    notification_ledger table yet.
    """
    if not db_path.exists():
        return []
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    try:
        tables = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        if "notification_ledger" not in tables:
            return []
        cursor = conn.execute("""
            SELECT
                channel,
                COUNT(*)             AS count,
                MAX(sequence_number) AS max_sequence,
                MAX(last_sent_at)    AS last_sent_at
            FROM notification_ledger
            GROUP BY channel
            ORDER BY channel
        """)
        return cursor.fetchall()
    finally:
        conn.close()
