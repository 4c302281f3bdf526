"""
Stream summary generation through the Anthropic Claude API.

Collects broadcast data, builds the prompt around the instructions document,
post-processes the markdown (friends in bold, known streamers marked with *)
and stores the result as a broadcast summary.
"""
import logging
import re
import time
from datetime import datetime
from typing import List, Optional, Tuple, Dict, Any
from zoneinfo import ZoneInfo

import anthropic

from app.config import Config
from app.pipeline.summary_collector import SummaryData, SummaryDataCollector

logger = logging.getLogger("controlpanel.summarizer")

SYSTEM_PROMPT = """You are generating a stream summary for a broadcaster on a live cam platform.

Follow these instructions EXACTLY:
{instructions}

IMPORTANT RULES:
- DO NOT use em dashes. Use commas or "..." for pauses instead.
- All lists MUST be bullet points, not comma-separated.
- If a value is unknown or missing, write "Unknown" - never guess.

MARKDOWN FORMATTING (CRITICAL):
- The title line MUST start with # (e.g., # S: 2025-12-28 Stream - Theme Here)
- Use ## for all section headers (e.g., ## Overall Vibe, ## Tokens, ## Followers)
- Use bullet points (- ) for all lists
- Leave one blank line after each header

NOTE: Friends will be bolded and known streamers will be marked with * in post-processing. Just use plain usernames."""

_THEME = re.compile(r"#?\s*S:\s*\d{4}-\d{2}-\d{2}[/\d]*\s+Stream\s*[–-]\s*(.+)")
_KNOWN_STREAMERS_HEADER = "## Known Streamers"


class SummarizerUnavailableError(Exception):
    pass


class TranscriptMissingError(Exception):
    pass


def format_duration(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def _format_time(value: datetime, tz: ZoneInfo) -> str:
    return value.astimezone(tz).strftime("%I:%M %p").lstrip("0")


def _bullets(items: List[str], empty: str) -> str:
    return "\n".join(f"- {item}" for item in items) or f"- {empty}"


def build_prompts(data: SummaryData, timezone_name: str = "America/New_York") -> Tuple[str, str]:
    """Return (system_prompt, user_prompt) for one summary."""
    tz = ZoneInfo(timezone_name)
    parsed = data.parsed

    system_prompt = SYSTEM_PROMPT.format(instructions=data.instructions)

    end = f"{_format_time(data.ended_at, tz)} ({timezone_name})" if data.ended_at else "Unknown"
    avg_watch = int(data.avg_watch_time_seconds)
    net = f"+{data.net_followers}" if data.net_followers >= 0 else str(data.net_followers)

    follower_lines = []
    if parsed.follows:
        follower_lines.append(f"- Gained: {', '.join(parsed.follows)}")
    if parsed.unfollows:
        follower_lines.append(f"- Lost: {', '.join(parsed.unfollows)}")

    chat_text = "\n".join(parsed.filtered_chat_lines) or "No chat recorded"

    user_prompt = f"""Generate a complete stream summary for this broadcast.

## Broadcast Info
- Date: {data.started_at.astimezone(tz).date().isoformat()}
- Start: {_format_time(data.started_at, tz)} ({timezone_name})
- End: {end}
- Duration: {format_duration(data.duration_minutes)}

## Room Subject
Initial: {parsed.room_subjects[0] if parsed.room_subjects else 'Unknown'}

## Room Subject Variants
{_bullets(parsed.room_subjects, 'None recorded')}

## Token Stats
- Total Tokens Received: {data.tokens_received}
- Tokens per Hour: {data.tokens_per_hour:.2f}

## Viewers
- Max Viewers: {data.max_viewers or 'Unknown'}
- Unique Registered Viewers: {data.unique_viewers}
- Avg. Watch Time: {avg_watch // 60}m {avg_watch % 60}s

## Followers
- New Followers: +{len(parsed.follows)}
- Unfollows: {len(parsed.unfollows)}
- Net Followers: {net}
{chr(10).join(follower_lines)}

## Private Messages From
{_bullets(parsed.private_message_users, 'None')}

## Full Chat Log (chat messages, tips and top lovers board updates)
{chat_text}

---

Generate the complete summary following the exact format from the instructions. Include all required sections.
Analyze the chat to identify:
- Overall vibe and engagement
- Notable conversations and dynamics
- Key moments and themes
- Opportunities for next stream"""

    return system_prompt, user_prompt


def post_process_markdown(markdown: str, friends: List[str], known_streamers: List[str]) -> str:
    """
    Bold friends (**name**) and mark known streamers (name*).
    Whole words, case-insensitive, never twice. The Known Streamers section
    itself is left untouched.
    """
    result = markdown

    for friend in friends:
        pattern = re.compile(rf"(?<!\*\*)\b({re.escape(friend)})\b(?!\*\*)", re.IGNORECASE)
        result = pattern.sub(r"**\1**", result)

    for streamer in known_streamers:
        pattern = re.compile(rf"\b({re.escape(streamer)})\b(?!\*)", re.IGNORECASE)
        parts = re.split(re.escape(_KNOWN_STREAMERS_HEADER), result, flags=re.IGNORECASE)
        if len(parts) == 2:
            parts[0] = pattern.sub(r"\1*", parts[0])
            result = _KNOWN_STREAMERS_HEADER.join(parts)
        else:
            result = pattern.sub(r"\1*", result)

    return result


def extract_theme(markdown: str) -> Optional[str]:
    """Theme from the title line "# S: YYYY-MM-DD Stream - <theme>"."""
    match = _THEME.search(markdown)
    return match.group(1).strip() if match else None


class SummaryGenerator:
    def __init__(self, cfg: Config, collector: SummaryDataCollector, client=None):
        self.cfg = cfg
        self.collector = collector
        self._client = client
        if self._client is None and cfg.anthropic_api_key:
            self._client = anthropic.Anthropic(api_key=cfg.anthropic_api_key)
            logger.info("Anthropic client initialized (%s)", cfg.llm_model)
        elif self._client is None:
            logger.warning("ANTHROPIC_API_KEY not set: AI summaries are unavailable")

    def is_available(self) -> bool:
        return self._client is not None

    def _call_api(self, system_prompt: str, user_prompt: str) -> Tuple[str, int, int]:
        """Call Claude. Returns (content, input_tokens, output_tokens)."""
        if self._client is None:
            raise SummarizerUnavailableError("ANTHROPIC_API_KEY is not configured")

        max_attempts = self.cfg.max_retries
        backoff = self.cfg.retry_backoff_sec

        last_exc = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = self._client.messages.create(
                    model=self.cfg.llm_model,
                    max_tokens=self.cfg.llm_max_tokens,
                    system=system_prompt,
                    messages=[{"role": "user", "content": user_prompt}],
                )
                content = response.content[0].text
                return content, response.usage.input_tokens, response.usage.output_tokens

            except anthropic.AuthenticationError:
                raise RuntimeError(
                    "Invalid ANTHROPIC_API_KEY.\n"
                    "Check the key at https://console.anthropic.com/keys\n"
                    "and update it in .env"
                )

            except anthropic.RateLimitError as e:
                last_exc = e
                wait = 60.0 * attempt
                logger.warning(
                    "Anthropic rate limit (attempt %d/%d). Waiting %.0f s...",
                    attempt, max_attempts, wait,
                )
                if attempt < max_attempts:
                    time.sleep(wait)

            except anthropic.APIStatusError as e:
                last_exc = e
                if e.status_code < 500:
                    raise  # 4xx is not retryable
                wait = backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Anthropic server error %d (attempt %d/%d). Retrying in %.0f s...",
                    e.status_code, attempt, max_attempts, wait,
                )
                if attempt < max_attempts:
                    time.sleep(wait)

        raise RuntimeError(
            f"Claude API unavailable after {max_attempts} attempts: {last_exc}"
        )

    def _generate_markdown(self, data: SummaryData) -> Tuple[str, int, int]:
        system_prompt, user_prompt = build_prompts(data, self.cfg.summary_timezone)

        started = time.monotonic()
        content, input_tokens, output_tokens = self._call_api(system_prompt, user_prompt)
        markdown = post_process_markdown(content, data.friends_list, data.parsed.known_streamers)

        logger.info(
            "Summary generated for %s in %.1f s. Tokens: in=%d, out=%d, chat lines=%d",
            data.broadcast_id, time.monotonic() - started,
            input_tokens, output_tokens, len(data.parsed.filtered_chat_lines),
        )
        return markdown, input_tokens, output_tokens

    def _summary_payload(self, data: SummaryData, markdown: str, tokens_used: int) -> Dict[str, Any]:
        parsed = data.parsed
        return {
            "theme": extract_theme(markdown),
            "tokens_received": data.tokens_received,
            "tokens_per_hour": data.tokens_per_hour,
            "max_viewers": data.max_viewers,
            "unique_viewers": data.unique_viewers,
            "avg_watch_time_seconds": data.avg_watch_time_seconds,
            "new_followers": len(parsed.follows),
            "lost_followers": len(parsed.unfollows),
            "net_followers": data.net_followers,
            "room_subject_variants": parsed.room_subjects,
            "visitors_stayed": data.visitor_categories.stayed,
            "visitors_quick": data.visitor_categories.quick,
            "visitors_banned": [],  # bans are not present in transcripts
            "top_tippers": self.collector.parser.aggregate_tips_by_user(parsed.tips),
            "top_lovers_board": [
                {"rank": t.rank, "username": t.username, "tokens": t.tokens}
                for t in parsed.top_lovers_board
            ],
            "full_markdown": markdown,
            "ai_model": self.cfg.llm_model,
            "generation_tokens_used": tokens_used,
        }

    def generate_summary(self, broadcast_id: str, transcript: str) -> Dict[str, Any]:
        """Generate, store and return the summary of a broadcast."""
        if not self.is_available():
            raise SummarizerUnavailableError("ANTHROPIC_API_KEY is not configured")

        logger.info("Generating AI summary for broadcast %s", broadcast_id)
        data = self.collector.collect(broadcast_id, transcript)
        markdown, input_tokens, output_tokens = self._generate_markdown(data)

        payload = self._summary_payload(data, markdown, input_tokens + output_tokens)
        payload["transcript_text"] = transcript
        return self.collector.save_summary(broadcast_id, payload)

    def regenerate_summary(self, broadcast_id: str) -> Dict[str, Any]:
        """Generate again from the transcript stored with the previous summary."""
        existing = self.collector.get_summary_by_broadcast_id(broadcast_id)
        if not existing or not existing.get("transcript_text"):
            raise TranscriptMissingError(f"No stored transcript for broadcast {broadcast_id}")
        return self.generate_summary(broadcast_id, existing["transcript_text"])

    def generate_preview(self, transcript: str) -> Dict[str, Any]:
        """Summarize arbitrary pasted text without a broadcast record. Nothing is stored."""
        if not self.is_available():
            raise SummarizerUnavailableError("ANTHROPIC_API_KEY is not configured")

        data = self.collector.collect_for_preview(transcript)
        markdown, input_tokens, output_tokens = self._generate_markdown(data)
        summary = self._summary_payload(data, markdown, input_tokens + output_tokens)

        cost = (
            input_tokens * self.cfg.llm_input_price_per_mtok
            + output_tokens * self.cfg.llm_output_price_per_mtok
        ) / 1_000_000

        parsed = data.parsed
        return {
            "summary": summary,
            "parsed_data": {
                "tokens_received": data.tokens_received,
                "tokens_per_hour": data.tokens_per_hour,
                "unique_viewers": data.unique_viewers,
                "avg_watch_time_seconds": data.avg_watch_time_seconds,
                "new_followers": len(parsed.follows),
                "lost_followers": len(parsed.unfollows),
                "net_followers": data.net_followers,
                "room_subjects": parsed.room_subjects,
                "top_tippers": summary["top_tippers"],
                "top_lovers_board": summary["top_lovers_board"],
                "chat_message_count": len(parsed.chat_messages),
                "filtered_chat_line_count": len(parsed.filtered_chat_lines),
            },
            "tokens_used": input_tokens + output_tokens,
            "cost": round(cost, 6),
        }
