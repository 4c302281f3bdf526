"""
Broadcast records: own broadcasts (my_broadcasts) with a read fallback to
sessions detected from the events feed (stream_sessions).
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List

from app.db.database import Database, as_utc, new_id, to_db_ts, from_db_ts, utcnow

logger = logging.getLogger("controlpanel.broadcasts")

UPDATABLE_FIELDS = (
    "started_at", "ended_at", "duration_minutes", "peak_viewers", "total_tokens",
    "followers_gained", "notes", "tags", "room_subject",
)


@dataclass
class Broadcast:
    id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    peak_viewers: int = 0
    total_tokens: int = 0
    followers_gained: int = 0
    notes: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    room_subject: Optional[str] = None
    auto_detected: bool = False
    source: str = "manual"


def minutes_between(started_at: datetime, ended_at: datetime) -> int:
    """Whole minutes between two timestamps, rounded half-up."""
    seconds = (ended_at - started_at).total_seconds()
    return int(seconds / 60 + 0.5)


def _from_row(row: dict) -> Broadcast:
    return Broadcast(
        id=row["id"],
        started_at=from_db_ts(row["started_at"]),
        ended_at=from_db_ts(row["ended_at"]),
        duration_minutes=row["duration_minutes"],
        peak_viewers=row["peak_viewers"] or 0,
        total_tokens=row["total_tokens"] or 0,
        followers_gained=row["followers_gained"] or 0,
        notes=row["notes"],
        tags=json.loads(row["tags_json"] or "[]"),
        room_subject=row["room_subject"],
        auto_detected=bool(row["auto_detected"]),
        source=row["source"],
    )


class BroadcastRepository:
    def __init__(self, db: Database):
        self.db = db

    def create(
        self,
        started_at: datetime,
        ended_at: Optional[datetime] = None,
        duration_minutes: Optional[int] = None,
        peak_viewers: int = 0,
        total_tokens: int = 0,
        followers_gained: int = 0,
        notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        room_subject: Optional[str] = None,
        auto_detected: bool = False,
        source: str = "manual",
    ) -> Broadcast:
        started_at, ended_at = as_utc(started_at), as_utc(ended_at)
        if ended_at and not duration_minutes:
            duration_minutes = minutes_between(started_at, ended_at)

        broadcast_id = new_id()
        self.db.query(
            """INSERT INTO my_broadcasts
               (id, started_at, ended_at, duration_minutes, peak_viewers,
                total_tokens, followers_gained, notes, tags_json, room_subject,
                auto_detected, source)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (broadcast_id, to_db_ts(started_at), to_db_ts(ended_at),
             duration_minutes or None, peak_viewers, total_tokens, followers_gained,
             notes, json.dumps(tags or [], ensure_ascii=False), room_subject,
             int(auto_detected), source),
        )
        logger.info("Broadcast created: %s (source=%s)", broadcast_id, source)
        return self.get_by_id(broadcast_id)

    def get_by_id(self, broadcast_id: str) -> Optional[Broadcast]:
        """Look in my_broadcasts first, then fall back to stream_sessions."""
        result = self.db.query(
            "SELECT * FROM my_broadcasts WHERE id = ?", (broadcast_id,)
        )
        if result.rows:
            return _from_row(result.rows[0])

        result = self.db.query(
            "SELECT * FROM stream_sessions WHERE id = ?", (broadcast_id,)
        )
        if not result.rows:
            return None

        row = result.rows[0]
        started_at = from_db_ts(row["started_at"])
        ended_at = from_db_ts(row["ended_at"])
        return Broadcast(
            id=row["id"],
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=minutes_between(started_at, ended_at) if ended_at else None,
            auto_detected=True,
            source="events_api",
        )

    def end_broadcast(
        self,
        broadcast_id: str,
        peak_viewers: Optional[int] = None,
        total_tokens: Optional[int] = None,
        followers_gained: Optional[int] = None,
    ) -> Optional[Broadcast]:
        """Set ended_at to now, compute the duration and merge final stats."""
        broadcast = self.get_by_id(broadcast_id)
        if broadcast is None or broadcast.source == "events_api":
            return None

        ended_at = utcnow()
        self.db.query(
            """UPDATE my_broadcasts SET
                 ended_at = ?,
                 duration_minutes = ?,
                 peak_viewers = COALESCE(?, peak_viewers),
                 total_tokens = COALESCE(?, total_tokens),
                 followers_gained = COALESCE(?, followers_gained),
                 updated_at = ?
               WHERE id = ?""",
            (to_db_ts(ended_at), minutes_between(broadcast.started_at, ended_at),
             peak_viewers, total_tokens, followers_gained, to_db_ts(ended_at),
             broadcast_id),
        )
        logger.info("Broadcast ended: %s", broadcast_id)
        return self.get_by_id(broadcast_id)

    def list_recent(self, limit: int = 50, offset: int = 0) -> List[Broadcast]:
        result = self.db.query(
            "SELECT * FROM my_broadcasts ORDER BY started_at DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_from_row(r) for r in result.rows]

    def count(self) -> int:
        result = self.db.query("SELECT COUNT(*) AS n FROM my_broadcasts")
        return result.rows[0]["n"]

    def update(self, broadcast_id: str, **changes) -> Optional[Broadcast]:
        """
        Overwrite the given columns of an own broadcast. Keys outside
        UPDATABLE_FIELDS are ignored; an empty update is a plain lookup.
        Returns None when the broadcast is not in my_broadcasts.
        """
        values = {}
        for name in UPDATABLE_FIELDS:
            if name not in changes:
                continue
            value = changes[name]
            if name in ("started_at", "ended_at"):
                value = to_db_ts(value)
            elif name == "tags":
                name, value = "tags_json", json.dumps(value or [], ensure_ascii=False)
            values[name] = value

        if not values:
            broadcast = self.get_by_id(broadcast_id)
            return broadcast if broadcast and broadcast.source != "events_api" else None

        assignments = ", ".join(f"{name} = ?" for name in values)
        result = self.db.query(
            f"UPDATE my_broadcasts SET {assignments}, updated_at = ? WHERE id = ?",
            [*values.values(), to_db_ts(utcnow()), broadcast_id],
        )
        if result.row_count == 0:
            return None

        logger.info("Broadcast updated: %s (%s)", broadcast_id, ", ".join(values))
        return self.get_by_id(broadcast_id)

    def delete(self, broadcast_id: str) -> bool:
        result = self.db.query(
            "DELETE FROM my_broadcasts WHERE id = ?", (broadcast_id,)
        )
        if result.row_count > 0:
            logger.info("Broadcast deleted: %s", broadcast_id)
            return True
        return False

    def create_session(
        self,
        broadcaster: str,
        started_at: datetime,
        ended_at: Optional[datetime] = None,
    ) -> str:
        session_id = new_id()
        self.db.query(
            """INSERT INTO stream_sessions (id, broadcaster, started_at, ended_at)
               VALUES (?, ?, ?, ?)""",
            (session_id, broadcaster, to_db_ts(started_at), to_db_ts(ended_at)),
        )
        return session_id
