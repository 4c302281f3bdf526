"""
SQLite access: initialization, generic parameterized queries and the
person/profile/snapshot helpers used by the summary pipeline.

Thread-safety: one shared connection, ALL operations (read+write) are
serialized through _lock. The web layer runs blocking work in a thread
pool, so the connection is opened with check_same_thread=False.
WAL mode is enabled to survive abrupt shutdowns.
"""
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Sequence

from app.db.models import SCHEMA

TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime. Naive datetimes are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_ts(value: Optional[datetime]) -> Optional[str]:
    """Datetime → UTC text with fixed width, so text comparison orders correctly."""
    if value is None:
        return None
    return as_utc(value).strftime(TS_FORMAT)


def from_db_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


class Database:
    def __init__(self, db_path: str):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _write(self):
        """Thread-safe write context: acquires lock, yields conn, commits on exit."""
        with self._lock:
            yield self.conn
            self.conn.commit()

    def migrate(self) -> None:
        """Create tables on first start. Safe to run on every start."""
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    # ─── generic access ───────────────────────────────────────

    def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """
        Run one parameterized statement and commit.

        rows: result rows as dicts (empty for statements without a result set);
        row_count: rows affected by DML, or the number of rows returned.
        """
        with self._write() as c:
            cur = c.execute(sql, tuple(params))
            rows = [dict(r) for r in cur.fetchall()] if cur.description else []
            count = cur.rowcount if cur.rowcount >= 0 else len(rows)
        return QueryResult(rows=rows, row_count=count)

    # ─── persons / profiles ───────────────────────────────────

    def get_or_create_person(self, username: str) -> str:
        with self._write() as c:
            row = c.execute(
                "SELECT id FROM persons WHERE username = ?", (username,)
            ).fetchone()
            if row:
                return row["id"]
            person_id = new_id()
            c.execute(
                "INSERT INTO persons (id, username) VALUES (?, ?)",
                (person_id, username),
            )
        return person_id

    def set_friend_tier(self, username: str, tier: Optional[int]) -> None:
        """Set (or clear with None) the friend tier of a person's profile."""
        person_id = self.get_or_create_person(username)
        now = to_db_ts(utcnow())
        with self._write() as c:
            c.execute(
                """INSERT INTO profiles (id, person_id, friend_tier, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (person_id) DO UPDATE SET
                     friend_tier = excluded.friend_tier,
                     updated_at = excluded.updated_at""",
                (new_id(), person_id, tier, now),
            )

    # ─── viewer snapshots ─────────────────────────────────────

    def record_snapshot(
        self,
        username: str,
        num_users: int,
        recorded_at: Optional[datetime] = None,
    ) -> str:
        person_id = self.get_or_create_person(username)
        snapshot_id = new_id()
        with self._write() as c:
            c.execute(
                """INSERT INTO affiliate_api_snapshots (id, person_id, num_users, recorded_at)
                   VALUES (?, ?, ?, ?)""",
                (snapshot_id, person_id, num_users, to_db_ts(recorded_at or utcnow())),
            )
        return snapshot_id
