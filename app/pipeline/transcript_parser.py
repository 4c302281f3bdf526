"""
Chat transcript parser.

Turns a pasted room transcript into structured events: joins/leaves, tips,
room subject changes, follows/unfollows, the top lovers board, private
message notices and chat lines. The result feeds the AI summary prompt.

Transcripts usually carry no timestamps. When a line starts with
[HH:MM] or [HH:MM:SS] the time is used for join/leave durations;
otherwise visit durations are unknown and count as zero.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Dict

logger = logging.getLogger("controlpanel.transcript_parser")

_TIMESTAMP = re.compile(r"^\[(\d{1,2}):(\d{2})(?::(\d{2}))?\]\s*")

_USER_JOIN = re.compile(r"^User (\S+) has joined the room")
_USER_LEAVE = re.compile(r"^User (\S+) has left the room")
_TIP = re.compile(r"^(\S+) tipped (\d+) tokens?$")
_TIP_NOTE = re.compile(r"^Notice: (\S+) tipped for » (.+)$")
_ROOM_SUBJECT = re.compile(r'^room subject changed to "(.+)"$')
_FOLLOW = re.compile(r"@(\S+) has followed you")
_UNFOLLOW = re.compile(r"@(\S+) has unfollowed you")
_TOP_LOVER = re.compile(r"^Notice: (\d+)\. (\S+) \((\d+) tks?\)")
_PRIVATE_MESSAGE = re.compile(r"^New private message from (\S+)")
_BROADCASTER_WARNING = re.compile(r"\*\*\* Warning \*\*\* A \w+ User @(\S+) is currently broadcasting")
# Username glued to the message without a separator: "alice_99Hello there".
# Usernames are lowercase; the message must open with a capital or punctuation.
_CHAT_MESSAGE = re.compile(r"^([a-z0-9_]+[a-z0-9])([A-Z@:!?'\".,].*)$")

_GOAL_COUNTER = re.compile(r"\[\d+\s*tokens?\s*(left|remaining|to go)?\]", re.IGNORECASE)

_IGNORED_PREFIXES = (
    "Broadcaster Rules:",
    "Your cam is visible",
    "Notice: SmokerBot",
    "Notice: 🤖",
    "Notice: 💎",
    "Notice: ↣",
    "Notice: ⵗ≡",
    "Notice: :mtl",
    "Notice: :me_",
    "Notice: :neon",
    "Notice: Warning Online Model",
)

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class Visitor:
    username: str
    joined_at: Optional[float] = None   # seconds since midnight of the first day
    left_at: Optional[float] = None
    has_left: bool = False

    @property
    def duration_seconds(self) -> Optional[float]:
        """None while still in the room; 0 when the times are unknown."""
        if not self.has_left:
            return None
        if self.joined_at is None or self.left_at is None:
            return 0.0
        return max(0.0, self.left_at - self.joined_at)


@dataclass
class Tip:
    username: str
    tokens: int
    note: Optional[str] = None


@dataclass
class ChatMessage:
    username: str
    message: str
    is_broadcaster: bool = False


@dataclass
class TopLover:
    rank: int
    username: str
    tokens: int


@dataclass
class ParsedTranscript:
    room_subjects: List[str] = field(default_factory=list)
    tips: List[Tip] = field(default_factory=list)
    visitors: List[Visitor] = field(default_factory=list)
    follows: List[str] = field(default_factory=list)
    unfollows: List[str] = field(default_factory=list)
    chat_messages: List[ChatMessage] = field(default_factory=list)
    private_message_users: List[str] = field(default_factory=list)
    known_streamers: List[str] = field(default_factory=list)
    top_lovers_board: List[TopLover] = field(default_factory=list)
    total_tokens: int = 0
    unique_usernames: List[str] = field(default_factory=list)
    # Lines handed to the LLM: chat, tips, tip notes, top lovers notices
    filtered_chat_lines: List[str] = field(default_factory=list)


@dataclass
class VisitorCategories:
    stayed: List[str] = field(default_factory=list)
    quick: List[str] = field(default_factory=list)


def normalize_room_subject(subject: str) -> str:
    """Replace goal counters like "[995 tokens left]" so variants deduplicate."""
    return _GOAL_COUNTER.sub("[GOAL]", subject).strip()


class _Clock:
    """Converts [HH:MM:SS] prefixes to monotonically increasing seconds."""

    def __init__(self):
        self._day_offset = 0
        self._last: Optional[float] = None

    def read(self, match: Optional[re.Match]) -> Optional[float]:
        if match is None:
            return None
        hours, minutes, seconds = match.group(1), match.group(2), match.group(3) or "0"
        value = int(hours) * 3600 + int(minutes) * 60 + int(seconds) + self._day_offset
        # A jump back of more than half a day means we crossed midnight
        if self._last is not None and value < self._last - SECONDS_PER_DAY / 2:
            self._day_offset += SECONDS_PER_DAY
            value += SECONDS_PER_DAY
        self._last = value
        return value


class TranscriptParser:
    def __init__(self, excluded_usernames: Iterable[str] = (), broadcaster: str = ""):
        self.excluded = {u.lower() for u in excluded_usernames}
        self.broadcaster = broadcaster
        prefixes = list(_IGNORED_PREFIXES)
        if broadcaster:
            prefixes += [f"Broadcaster {broadcaster} is running", f"Notice: Follow {broadcaster}"]
        self._ignored_prefixes = tuple(prefixes)

    def is_excluded(self, username: str) -> bool:
        return username.lower() in self.excluded

    def parse(self, text: str) -> ParsedTranscript:
        """Parse a raw transcript into structured data."""
        result = ParsedTranscript()
        sessions: Dict[str, Visitor] = {}
        top_lovers: Dict[str, TopLover] = {}
        unique_users: Dict[str, None] = {}
        known_streamers: Dict[str, None] = {}
        clock = _Clock()

        for raw_line in text.split("\n"):
            line = raw_line.strip()
            if not line:
                continue

            ts_match = _TIMESTAMP.match(line)
            event_time = clock.read(ts_match)
            if ts_match:
                line = line[ts_match.end():]
                if not line:
                    continue

            if line.startswith(self._ignored_prefixes):
                continue

            m = _USER_JOIN.match(line)
            if m:
                username = m.group(1)
                if not self.is_excluded(username):
                    unique_users[username] = None
                    sessions[username] = Visitor(username=username, joined_at=event_time)
                continue

            m = _USER_LEAVE.match(line)
            if m:
                username = m.group(1)
                session = sessions.pop(username, None)
                if session is not None:
                    session.left_at = event_time
                    session.has_left = True
                    result.visitors.append(session)
                continue

            m = _TIP.match(line)
            if m:
                username, tokens = m.group(1), int(m.group(2))
                if not self.is_excluded(username):
                    result.tips.append(Tip(username=username, tokens=tokens))
                    result.total_tokens += tokens
                    result.filtered_chat_lines.append(line)
                continue

            m = _TIP_NOTE.match(line)
            if m:
                username, note = m.group(1), m.group(2)
                # Attach the note to the latest un-noted tip from this user
                for tip in reversed(result.tips):
                    if tip.username == username and tip.note is None:
                        tip.note = note
                        break
                if not self.is_excluded(username):
                    result.filtered_chat_lines.append(line)
                continue

            m = _ROOM_SUBJECT.match(line)
            if m:
                subject = m.group(1)
                normalized = normalize_room_subject(subject)
                if all(normalize_room_subject(s) != normalized for s in result.room_subjects):
                    result.room_subjects.append(subject)
                continue

            m = _FOLLOW.search(line)
            if m and not self.is_excluded(m.group(1)):
                result.follows.append(m.group(1))
                continue

            m = _UNFOLLOW.search(line)
            if m and not self.is_excluded(m.group(1)):
                result.unfollows.append(m.group(1))
                continue

            m = _TOP_LOVER.match(line)
            if m:
                rank, username, tokens = int(m.group(1)), m.group(2), int(m.group(3))
                if not self.is_excluded(username):
                    # The most recent board wins
                    top_lovers[username] = TopLover(rank=rank, username=username, tokens=tokens)
                    result.filtered_chat_lines.append(line)
                continue

            m = _PRIVATE_MESSAGE.match(line)
            if m and not self.is_excluded(m.group(1)):
                if m.group(1) not in result.private_message_users:
                    result.private_message_users.append(m.group(1))
                continue

            m = _BROADCASTER_WARNING.search(line)
            if m:
                known_streamers[m.group(1)] = None
                continue

            m = _CHAT_MESSAGE.match(line)
            if m and not line.startswith(("Notice:", "User ")):
                username, message = m.group(1), m.group(2)
                if not self.is_excluded(username):
                    result.chat_messages.append(ChatMessage(
                        username=username,
                        message=message,
                        is_broadcaster=bool(self.broadcaster) and username.lower() == self.broadcaster.lower(),
                    ))
                    unique_users[username] = None
                    result.filtered_chat_lines.append(f"{username}: {message}")
                continue

        # Visitors still in the room at the end of the transcript
        result.visitors.extend(sessions.values())

        result.top_lovers_board = sorted(top_lovers.values(), key=lambda t: t.rank)
        result.unique_usernames = [u for u in unique_users if not self.is_excluded(u)]
        result.known_streamers = list(known_streamers)

        logger.debug(
            "Parsed transcript: %d tips, %d visitors, %d chat lines",
            len(result.tips), len(result.visitors), len(result.chat_messages),
        )
        return result

    def categorize_visitors(self, visitors: List[Visitor], threshold_minutes: float = 1) -> VisitorCategories:
        """
        Split visitors into those who stayed at least threshold_minutes in total
        (summed over repeat visits) and quick visits. A visitor who never left
        counts as stayed.
        """
        threshold_sec = threshold_minutes * 60
        totals: Dict[str, float] = {}

        for visitor in visitors:
            if self.is_excluded(visitor.username):
                continue
            duration = visitor.duration_seconds
            if duration is None:
                duration = threshold_sec + 1
            totals[visitor.username] = totals.get(visitor.username, 0.0) + duration

        categories = VisitorCategories()
        for username, total in totals.items():
            if total >= threshold_sec:
                categories.stayed.append(username)
            else:
                categories.quick.append(username)
        return categories

    def calculate_avg_watch_time(self, visitors: List[Visitor]) -> float:
        """Mean visit length in whole seconds, over visitors who left."""
        durations = [
            v.duration_seconds for v in visitors
            if v.has_left and not self.is_excluded(v.username)
        ]
        if not durations:
            return 0.0
        return float(int(sum(durations) / len(durations) + 0.5))

    def aggregate_tips_by_user(self, tips: List[Tip]) -> List[dict]:
        """Total tokens per tipper, largest first."""
        totals: Dict[str, int] = {}
        for tip in tips:
            if self.is_excluded(tip.username):
                continue
            totals[tip.username] = totals.get(tip.username, 0) + tip.tokens
        return [
            {"username": username, "tokens": tokens}
            for username, tokens in sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
        ]

    def get_notable_chat_excerpts(self, messages: List[ChatMessage], max_messages: int = 50) -> List[ChatMessage]:
        """Broadcaster lines, the reply right after each, and messages mentioning someone."""
        notable: List[ChatMessage] = []
        last_was_broadcaster = False

        for msg in messages:
            if msg.is_broadcaster:
                notable.append(msg)
                last_was_broadcaster = True
            elif last_was_broadcaster:
                notable.append(msg)
                last_was_broadcaster = False
            elif "@" in msg.message:
                notable.append(msg)

            if len(notable) >= max_messages:
                break

        return notable
