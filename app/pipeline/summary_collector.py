"""
Summary data collector.

Gathers everything the AI summary step needs for one broadcast: transcript
metrics, broadcast timing, peak viewers from the affiliate snapshots, the
friends list and the instructions document. Also owns persistence of the
generated summary (broadcast_summaries).

Viewer, friends and instructions lookups are optional enrichments: a failure
is logged and replaced by a default, it never fails the collection.
"""
import dataclasses
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any

from app.db.broadcasts import Broadcast, BroadcastRepository, minutes_between
from app.db.database import Database, new_id, to_db_ts, from_db_ts, utcnow
from app.pipeline.transcript_parser import ParsedTranscript, TranscriptParser, VisitorCategories
from app.utils.fallback import fallback

logger = logging.getLogger("controlpanel.summary_collector")

PREVIEW_BROADCAST_ID = "preview"

# Narrative fields a user may edit after generation
EDITABLE_FIELDS = (
    "theme", "overall_vibe", "engagement_summary", "tracking_notes",
    "private_dynamics", "opportunities", "chat_highlights", "themes_moments",
    "overall_summary", "full_markdown",
)

# Columns written by save_summary, with the value used when absent
_SUMMARY_COLUMNS = {
    "theme": None,
    "tokens_received": 0,
    "tokens_per_hour": None,
    "max_viewers": None,
    "unique_viewers": None,
    "avg_watch_time_seconds": None,
    "new_followers": 0,
    "lost_followers": 0,
    "net_followers": 0,
    "room_subject_variants": [],
    "visitors_stayed": [],
    "visitors_quick": [],
    "visitors_banned": [],
    "top_tippers": [],
    "top_lovers_board": [],
    "overall_vibe": None,
    "engagement_summary": None,
    "tracking_notes": None,
    "private_dynamics": None,
    "opportunities": None,
    "chat_highlights": None,
    "themes_moments": None,
    "overall_summary": None,
    "full_markdown": None,
    "transcript_text": None,
    "ai_model": None,
    "generation_tokens_used": None,
}

# Stored as JSON text, deserialized on every read
_JSON_COLUMNS = (
    "room_subject_variants", "visitors_stayed", "visitors_quick", "visitors_banned",
    "top_tippers", "top_lovers_board",
)
_TIMESTAMP_COLUMNS = ("generated_at", "created_at", "updated_at")


class BroadcastNotFoundError(Exception):
    pass


@dataclass
class SummaryData:
    broadcast_id: str
    started_at: datetime
    ended_at: Optional[datetime]
    duration_minutes: int

    parsed: ParsedTranscript
    visitor_categories: VisitorCategories
    tokens_received: int
    tokens_per_hour: float
    unique_viewers: int
    avg_watch_time_seconds: float
    net_followers: int

    max_viewers: int
    friends_list: List[str] = field(default_factory=list)

    instructions: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["ended_at"] = self.ended_at.isoformat() if self.ended_at else None
        return data


def round2(value: float) -> float:
    """Round half-up to two decimals."""
    return math.floor(value * 100 + 0.5) / 100


def tokens_per_hour(tokens: int, duration_minutes: int) -> float:
    if duration_minutes <= 0:
        return 0.0
    return round2(tokens / duration_minutes * 60)


def _json_default(value):
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    raise TypeError(f"Not JSON serializable: {type(value).__name__}")


def _summary_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    summary = dict(row)
    for name in _JSON_COLUMNS:
        summary[name] = json.loads(summary[name] or "[]")
    for name in _TIMESTAMP_COLUMNS:
        summary[name] = from_db_ts(summary[name])
    return summary


class SummaryDataCollector:
    def __init__(
        self,
        db: Database,
        broadcasts: BroadcastRepository,
        parser: TranscriptParser,
        instructions_path: str,
        broadcaster_username: str = "",
        visitor_threshold_minutes: float = 1,
        preview_duration_minutes: int = 60,
    ):
        self.db = db
        self.broadcasts = broadcasts
        self.parser = parser
        self.instructions_path = instructions_path
        self.broadcaster_username = broadcaster_username
        self.visitor_threshold_minutes = visitor_threshold_minutes
        self.preview_duration_minutes = preview_duration_minutes

    # ─── collection ───────────────────────────────────────────

    def collect(self, broadcast_id: str, transcript: str) -> SummaryData:
        """
        Collect everything needed for the AI summary of a real broadcast.

        Raises:
            BroadcastNotFoundError: unknown broadcast_id (checked before any other work)
        """
        logger.info("Collecting summary data for broadcast %s", broadcast_id)

        broadcast = self.broadcasts.get_by_id(broadcast_id)
        if broadcast is None:
            raise BroadcastNotFoundError(f"Broadcast not found: {broadcast_id}")

        parsed = self.parser.parse(transcript)
        duration = broadcast.duration_minutes or self._calculate_duration(broadcast)

        return self._assemble(
            broadcast_id=broadcast_id,
            started_at=broadcast.started_at,
            ended_at=broadcast.ended_at,
            duration_minutes=duration,
            parsed=parsed,
            max_viewers=self._get_max_viewers(broadcast),
        )

    def collect_for_preview(self, transcript: str) -> SummaryData:
        """
        Same transcript analysis without a broadcast record. Duration is a fixed
        estimate (tokens/hour is approximate) and max viewers is unknown (0).
        """
        logger.info("Collecting summary data for preview")

        parsed = self.parser.parse(transcript)
        now = utcnow()

        return self._assemble(
            broadcast_id=PREVIEW_BROADCAST_ID,
            started_at=now,
            ended_at=now,
            duration_minutes=self.preview_duration_minutes,
            parsed=parsed,
            max_viewers=0,
        )

    def _assemble(
        self,
        broadcast_id: str,
        started_at: datetime,
        ended_at: Optional[datetime],
        duration_minutes: int,
        parsed: ParsedTranscript,
        max_viewers: int,
    ) -> SummaryData:
        categories = self.parser.categorize_visitors(parsed.visitors, self.visitor_threshold_minutes)

        return SummaryData(
            broadcast_id=broadcast_id,
            started_at=started_at,
            ended_at=ended_at,
            duration_minutes=duration_minutes,
            parsed=parsed,
            visitor_categories=categories,
            tokens_received=parsed.total_tokens,
            tokens_per_hour=tokens_per_hour(parsed.total_tokens, duration_minutes),
            unique_viewers=len(parsed.unique_usernames),
            avg_watch_time_seconds=self.parser.calculate_avg_watch_time(parsed.visitors),
            net_followers=len(parsed.follows) - len(parsed.unfollows),
            max_viewers=max_viewers,
            friends_list=self._get_friends_list(),
            instructions=self._load_instructions(),
        )

    @staticmethod
    def _calculate_duration(broadcast: Broadcast) -> int:
        if broadcast.ended_at is None or broadcast.started_at is None:
            return 0
        return minutes_between(broadcast.started_at, broadcast.ended_at)

    # ─── optional enrichments ─────────────────────────────────

    def _get_max_viewers(self, broadcast: Broadcast) -> int:
        """Peak concurrent viewers from snapshots taken during the broadcast."""
        cached = broadcast.peak_viewers or 0
        if broadcast.ended_at is None:
            return cached

        def query():
            result = self.db.query(
                """SELECT COALESCE(MAX(s.num_users), 0) AS max_viewers
                   FROM affiliate_api_snapshots s
                   JOIN persons p ON s.person_id = p.id
                   WHERE p.username = ?
                     AND s.recorded_at >= ?
                     AND s.recorded_at <= ?""",
                (self.broadcaster_username,
                 to_db_ts(broadcast.started_at), to_db_ts(broadcast.ended_at)),
            )
            return int(result.rows[0]["max_viewers"] or 0)

        return fallback(query, cached, "fetch max viewers from snapshots", broadcast_id=broadcast.id)

    def _get_friends_list(self) -> List[str]:
        """Usernames with a friend tier, closest tier first."""
        def query():
            result = self.db.query(
                """SELECT p.username
                   FROM profiles pr
                   JOIN persons p ON pr.person_id = p.id
                   WHERE pr.friend_tier IS NOT NULL
                   ORDER BY pr.friend_tier ASC, p.username ASC"""
            )
            return [row["username"] for row in result.rows]

        return fallback(query, [], "fetch friends list")

    def _load_instructions(self) -> str:
        return fallback(
            lambda: Path(self.instructions_path).read_text(encoding="utf-8"),
            "",
            "load summary instructions",
            path=self.instructions_path,
        )

    # ─── broadcast_summaries ──────────────────────────────────

    def save_summary(self, broadcast_id: str, summary: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert or fully replace the summary for broadcast_id.
        Absent fields get their defaults; generated_at/updated_at are set to now.
        """
        values = {}
        for name, default in _SUMMARY_COLUMNS.items():
            value = summary.get(name)
            if value is None:
                value = default
            if name in _JSON_COLUMNS:
                value = json.dumps(value, ensure_ascii=False, default=_json_default)
            values[name] = value

        now = to_db_ts(utcnow())
        columns = list(_SUMMARY_COLUMNS)
        insert_cols = ["id", "broadcast_id", *columns, "generated_at", "created_at", "updated_at"]
        update_cols = [*columns, "generated_at", "updated_at"]

        sql = (
            f"INSERT INTO broadcast_summaries ({', '.join(insert_cols)}) "
            f"VALUES ({', '.join('?' for _ in insert_cols)}) "
            f"ON CONFLICT (broadcast_id) DO UPDATE SET "
            f"{', '.join(f'{c} = excluded.{c}' for c in update_cols)}"
        )
        params = [new_id(), broadcast_id, *(values[c] for c in columns), now, now, now]
        self.db.query(sql, params)

        logger.info("Broadcast summary saved: %s", broadcast_id)
        return self.get_summary_by_broadcast_id(broadcast_id)

    def get_summary_by_broadcast_id(self, broadcast_id: str) -> Optional[Dict[str, Any]]:
        result = self.db.query(
            "SELECT * FROM broadcast_summaries WHERE broadcast_id = ?", (broadcast_id,)
        )
        return _summary_from_row(result.rows[0]) if result.rows else None

    def update_summary(self, broadcast_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Patch narrative fields. Keys outside EDITABLE_FIELDS are ignored;
        with nothing to write this is a plain lookup.
        """
        fields = {name: updates[name] for name in EDITABLE_FIELDS if name in updates}
        if not fields:
            return self.get_summary_by_broadcast_id(broadcast_id)

        assignments = ", ".join(f"{name} = ?" for name in fields)
        result = self.db.query(
            f"UPDATE broadcast_summaries SET {assignments}, updated_at = ? WHERE broadcast_id = ?",
            [*fields.values(), to_db_ts(utcnow()), broadcast_id],
        )
        if result.row_count == 0:
            return None

        logger.info("Broadcast summary updated: %s (%s)", broadcast_id, ", ".join(fields))
        return self.get_summary_by_broadcast_id(broadcast_id)

    def delete_summary(self, broadcast_id: str) -> bool:
        result = self.db.query(
            "DELETE FROM broadcast_summaries WHERE broadcast_id = ?", (broadcast_id,)
        )
        deleted = result.row_count > 0
        if deleted:
            logger.info("Broadcast summary deleted: %s", broadcast_id)
        return deleted
