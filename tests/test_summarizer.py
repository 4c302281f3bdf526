"""
Summary generation tests. The Anthropic client is always mocked.
"""
import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import anthropic
import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Config
from app.db.broadcasts import BroadcastRepository
from app.db.database import Database
from app.pipeline.summarizer import (
    SummarizerUnavailableError,
    SummaryGenerator,
    TranscriptMissingError,
    build_prompts,
    extract_theme,
    format_duration,
    post_process_markdown,
)
from app.pipeline.summary_collector import BroadcastNotFoundError, SummaryDataCollector
from app.pipeline.transcript_parser import TranscriptParser

START = datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)

TRANSCRIPT = (
    "User alice has joined the room.\n"
    "alice tipped 10 tokens\n"
    "bob tipped 20 tokens\n"
    "carol tipped 5 tokens\n"
    "Notice: @dave has followed you\n"
    "*** Warning *** A Male User @gary is currently broadcasting!!\n"
)

MARKDOWN = (
    "# S: 2025-01-14 Stream - Leather Night\n\n"
    "## Overall Vibe\n\n"
    "alice hung out, gary dropped by.\n"
)


def _response(text=MARKDOWN, input_tokens=1000, output_tokens=500):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def _status_error(cls, status):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return cls("boom", response=httpx.Response(status, request=request), body=None)


class GeneratorTestCase(unittest.TestCase):

    def setUp(self):
        self.db = Database(":memory:")
        self.db.connect()
        self.db.migrate()
        self.repo = BroadcastRepository(self.db)
        self.collector = SummaryDataCollector(
            db=self.db,
            broadcasts=self.repo,
            parser=TranscriptParser(),
            instructions_path="/nonexistent/instructions.md",
            broadcaster_username="host",
        )
        self.cfg = Config(llm_model="claude-test", max_retries=3, retry_backoff_sec=0)
        self.client = MagicMock()
        self.client.messages.create.return_value = _response()
        self.generator = SummaryGenerator(self.cfg, self.collector, client=self.client)
        self.broadcast = self.repo.create(started_at=START, ended_at=START + timedelta(minutes=120))

    def tearDown(self):
        self.db.close()


class TestGenerateSummary(GeneratorTestCase):

    def test_summary_stored(self):
        self.db.set_friend_tier("alice", 1)
        summary = self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)

        self.assertEqual(summary["broadcast_id"], self.broadcast.id)
        self.assertEqual(summary["theme"], "Leather Night")
        self.assertEqual(summary["tokens_received"], 35)
        self.assertEqual(summary["tokens_per_hour"], 17.5)
        self.assertEqual(summary["new_followers"], 1)
        self.assertEqual(summary["net_followers"], 1)
        self.assertEqual(summary["visitors_banned"], [])
        self.assertEqual(summary["top_tippers"][0], {"username": "bob", "tokens": 20})
        self.assertEqual(summary["ai_model"], "claude-test")
        self.assertEqual(summary["generation_tokens_used"], 1500)
        self.assertEqual(summary["transcript_text"], TRANSCRIPT)
        self.assertIn("**alice** hung out, gary* dropped by.", summary["full_markdown"])
        self.assertEqual(
            self.collector.get_summary_by_broadcast_id(self.broadcast.id)["theme"], "Leather Night"
        )

    def test_request_parameters(self):
        self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        kwargs = self.client.messages.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "claude-test")
        self.assertEqual(kwargs["max_tokens"], self.cfg.llm_max_tokens)
        self.assertIn("stream summary", kwargs["system"])
        user_prompt = kwargs["messages"][0]["content"]
        self.assertIn("Total Tokens Received: 35", user_prompt)
        self.assertIn("bob tipped 20 tokens", user_prompt)

    def test_unknown_broadcast(self):
        with self.assertRaises(BroadcastNotFoundError):
            self.generator.generate_summary("nope", TRANSCRIPT)
        self.client.messages.create.assert_not_called()

    def test_unavailable_without_key(self):
        generator = SummaryGenerator(Config(anthropic_api_key=""), self.collector)
        self.assertFalse(generator.is_available())
        with self.assertRaises(SummarizerUnavailableError):
            generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        with self.assertRaises(SummarizerUnavailableError):
            generator.generate_preview(TRANSCRIPT)

    def test_regenerate_uses_stored_transcript(self):
        self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        self.client.messages.create.return_value = _response(
            "# S: 2025-01-14 Stream - Second Take\n"
        )
        summary = self.generator.regenerate_summary(self.broadcast.id)
        self.assertEqual(summary["theme"], "Second Take")
        self.assertEqual(summary["transcript_text"], TRANSCRIPT)
        self.assertEqual(self.client.messages.create.call_count, 2)

    def test_regenerate_without_summary(self):
        with self.assertRaises(TranscriptMissingError):
            self.generator.regenerate_summary(self.broadcast.id)

    def test_regenerate_without_transcript(self):
        self.collector.save_summary(self.broadcast.id, {"theme": "Manual"})
        with self.assertRaises(TranscriptMissingError):
            self.generator.regenerate_summary(self.broadcast.id)


class TestPreview(GeneratorTestCase):

    def test_preview_not_stored(self):
        result = self.generator.generate_preview(TRANSCRIPT)
        self.assertEqual(result["summary"]["theme"], "Leather Night")
        self.assertEqual(result["parsed_data"]["tokens_received"], 35)
        self.assertEqual(result["parsed_data"]["tokens_per_hour"], 35.0)
        self.assertEqual(result["tokens_used"], 1500)
        self.assertAlmostEqual(result["cost"], 0.0105)
        self.assertIsNone(self.collector.get_summary_by_broadcast_id("preview"))


class TestRetries(GeneratorTestCase):

    @patch("app.pipeline.summarizer.time.sleep")
    def test_server_error_retried(self, mock_sleep):
        self.client.messages.create.side_effect = [
            _status_error(anthropic.InternalServerError, 500),
            _response(),
        ]
        summary = self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        self.assertEqual(summary["theme"], "Leather Night")
        self.assertEqual(self.client.messages.create.call_count, 2)

    @patch("app.pipeline.summarizer.time.sleep")
    def test_client_error_not_retried(self, mock_sleep):
        self.client.messages.create.side_effect = _status_error(anthropic.BadRequestError, 400)
        with self.assertRaises(anthropic.BadRequestError):
            self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        self.assertEqual(self.client.messages.create.call_count, 1)
        mock_sleep.assert_not_called()

    @patch("app.pipeline.summarizer.time.sleep")
    def test_exhausted_retries(self, mock_sleep):
        self.client.messages.create.side_effect = _status_error(anthropic.RateLimitError, 429)
        with self.assertRaises(RuntimeError):
            self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)
        self.assertEqual(self.client.messages.create.call_count, 3)
        self.assertIsNone(self.collector.get_summary_by_broadcast_id(self.broadcast.id))

    def test_authentication_error(self):
        self.client.messages.create.side_effect = _status_error(anthropic.AuthenticationError, 401)
        with self.assertRaises(RuntimeError):
            self.generator.generate_summary(self.broadcast.id, TRANSCRIPT)


class TestHelpers(unittest.TestCase):

    def test_format_duration(self):
        self.assertEqual(format_duration(125), "2h 5m")
        self.assertEqual(format_duration(45), "45m")
        self.assertEqual(format_duration(0), "0m")

    def test_extract_theme(self):
        self.assertEqual(extract_theme("# S: 2025-01-15 Stream - Leather Night"), "Leather Night")
        self.assertEqual(extract_theme("S: 2025-01-15 Stream – Late Show\nmore"), "Late Show")
        self.assertIsNone(extract_theme("## Overall Vibe"))

    def test_friends_bolded_once(self):
        result = post_process_markdown("alice and ALICE and **alice**", ["alice"], [])
        self.assertEqual(result, "**alice** and **ALICE** and **alice**")

    def test_whole_words_only(self):
        self.assertEqual(post_process_markdown("malice", ["alice"], []), "malice")

    def test_streamers_marked_outside_known_streamers_section(self):
        md = "gary rocks\n## Known Streamers\n- gary"
        self.assertEqual(
            post_process_markdown(md, [], ["gary"]),
            "gary* rocks\n## Known Streamers\n- gary",
        )

    def test_streamers_not_marked_twice(self):
        self.assertEqual(post_process_markdown("gary* here", [], ["gary"]), "gary* here")

    def test_build_prompts(self):
        db = Database(":memory:")
        db.connect()
        db.migrate()
        try:
            collector = SummaryDataCollector(
                db=db, broadcasts=MagicMock(), parser=TranscriptParser(),
                instructions_path="/nonexistent.md",
            )
            data = collector.collect_for_preview(TRANSCRIPT)
            data.instructions = "Use five sections."
            system_prompt, user_prompt = build_prompts(data, "UTC")
        finally:
            db.close()

        self.assertIn("Use five sections.", system_prompt)
        self.assertIn("Tokens per Hour: 35.00", user_prompt)
        self.assertIn("Max Viewers: Unknown", user_prompt)
        self.assertIn("- Gained: dave", user_prompt)
        self.assertIn("Duration: 1h 0m", user_prompt)


if __name__ == "__main__":
    unittest.main()
