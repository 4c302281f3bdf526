"""
Web API tests:
- AI status and preview
- Summary generate / read / edit / delete
- Error mapping (400, 404, 502, 503)
- Config read/update
- Broadcast CRUD and server startup
"""
import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import Config
from app.db.broadcasts import BroadcastRepository
from app.db.database import Database
from app.pipeline.summarizer import SummaryGenerator
from app.web import create_app

START = datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)

TRANSCRIPT = "alice tipped 10 tokens\nbob tipped 20 tokens\ncarol tipped 5 tokens\n"


def _response(text="# S: 2025-01-14 Stream - Leather Night\n\n## Overall Vibe\n\nGood.\n"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=100, output_tokens=50),
    )


class WebTestCase(unittest.TestCase):

    def setUp(self):
        self.cfg = Config(
            db_path=":memory:",
            anthropic_api_key="",
            instructions_path="/nonexistent/instructions.md",
            llm_model="claude-test",
            retry_backoff_sec=0,
        )
        self.db = Database(self.cfg.db_path)
        self.db.connect()
        self.db.migrate()
        self.app = create_app(self.cfg, self.db)
        self.client = TestClient(self.app)
        self.broadcast = BroadcastRepository(self.db).create(
            started_at=START, ended_at=START + timedelta(minutes=120)
        )

    def tearDown(self):
        self.db.close()

    def enable_ai(self):
        llm = MagicMock()
        llm.messages.create.return_value = _response()
        self.app.state.generator = SummaryGenerator(self.cfg, self.app.state.collector, client=llm)
        return llm

    def url(self, suffix=""):
        return f"/api/broadcasts/{self.broadcast.id}/summary{suffix}"


class TestAiRoutes(WebTestCase):

    def test_status_without_key(self):
        resp = self.client.get("/api/broadcasts/ai/status")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"available": False, "model": "claude-test"})

    def test_status_with_client(self):
        self.enable_ai()
        self.assertTrue(self.client.get("/api/broadcasts/ai/status").json()["available"])

    def test_preview_unavailable(self):
        resp = self.client.post("/api/broadcasts/ai/preview", json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 503)

    def test_preview_requires_transcript(self):
        self.enable_ai()
        resp = self.client.post("/api/broadcasts/ai/preview", json={"transcript": "   "})
        self.assertEqual(resp.status_code, 400)

    def test_preview(self):
        self.enable_ai()
        resp = self.client.post("/api/broadcasts/ai/preview", json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["summary"]["theme"], "Leather Night")
        self.assertEqual(data["parsed_data"]["tokens_received"], 35)
        self.assertEqual(data["tokens_used"], 150)
        self.assertEqual(self.client.get("/api/broadcasts/preview/summary").status_code, 404)


class TestSummaryRoutes(WebTestCase):

    def test_generate_read_edit_delete(self):
        self.enable_ai()

        resp = self.client.post(self.url("/generate"), json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["tokens_per_hour"], 17.5)

        resp = self.client.get(self.url())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["theme"], "Leather Night")

        resp = self.client.put(self.url(), json={"theme": "Edited", "tokens_received": 1})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["theme"], "Edited")
        self.assertEqual(resp.json()["tokens_received"], 35)

        self.assertEqual(self.client.delete(self.url()).status_code, 200)
        self.assertEqual(self.client.delete(self.url()).status_code, 404)
        self.assertEqual(self.client.get(self.url()).status_code, 404)

    def test_generate_unavailable(self):
        resp = self.client.post(self.url("/generate"), json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 503)

    def test_generate_requires_transcript(self):
        self.enable_ai()
        resp = self.client.post(self.url("/generate"), json={})
        self.assertEqual(resp.status_code, 400)

    def test_generate_unknown_broadcast(self):
        self.enable_ai()
        resp = self.client.post("/api/broadcasts/nope/summary/generate", json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 404)

    def test_generate_api_failure(self):
        llm = self.enable_ai()
        llm.messages.create.side_effect = RuntimeError("Claude API unavailable")
        resp = self.client.post(self.url("/generate"), json={"transcript": TRANSCRIPT})
        self.assertEqual(resp.status_code, 502)

    def test_regenerate(self):
        llm = self.enable_ai()
        self.client.post(self.url("/generate"), json={"transcript": TRANSCRIPT})
        resp = self.client.post(self.url("/regenerate"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(llm.messages.create.call_count, 2)

    def test_regenerate_without_summary(self):
        self.enable_ai()
        self.assertEqual(self.client.post(self.url("/regenerate")).status_code, 404)

    def test_update_missing_summary(self):
        resp = self.client.put(self.url(), json={"theme": "x"})
        self.assertEqual(resp.status_code, 404)


class TestConfigRoutes(WebTestCase):

    def test_get_hides_secrets(self):
        self.cfg.anthropic_api_key = "sk-ant-secret"
        data = self.client.get("/api/config").json()
        self.assertNotIn("anthropic_api_key", data)
        self.assertNotIn("sk-ant-secret", str(data))
        self.assertTrue(data["ai_available"])

    @patch("app.web.routes.config._save_config_yaml")
    def test_update(self, mock_save):
        resp = self.client.put("/api/config", json={
            "broadcaster_username": "host",
            "visitor_threshold_minutes": 2,
        })
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(sorted(resp.json()["updated"]), ["broadcaster_username", "visitor_threshold_minutes"])
        self.assertEqual(self.app.state.collector.broadcaster_username, "host")
        self.assertEqual(self.app.state.collector.visitor_threshold_minutes, 2)
        mock_save.assert_called_once()

    @patch("app.web.routes.config._save_config_yaml")
    def test_update_rejects_non_positive_threshold(self, mock_save):
        resp = self.client.put("/api/config", json={"visitor_threshold_minutes": 0})
        self.assertEqual(resp.status_code, 400)
        mock_save.assert_not_called()

    @patch("app.web.routes.config._save_config_yaml")
    def test_rejected_update_changes_nothing(self, mock_save):
        collector = self.app.state.collector
        resp = self.client.put("/api/config", json={
            "broadcaster_username": "mallory",
            "visitor_threshold_minutes": 0,
        })
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.cfg.broadcaster_username, "")
        self.assertEqual(self.cfg.visitor_threshold_minutes, 1)
        self.assertIs(self.app.state.collector, collector)
        mock_save.assert_not_called()

    @patch("app.web.routes.config._save_config_yaml")
    def test_update_rejects_unknown_timezone(self, mock_save):
        resp = self.client.put("/api/config", json={
            "llm_model": "claude-other",
            "summary_timezone": "Not/AZone",
        })
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Not/AZone", resp.json()["error"])
        self.assertEqual(self.cfg.summary_timezone, "America/New_York")
        self.assertEqual(self.cfg.llm_model, "claude-test")
        mock_save.assert_not_called()

    @patch("app.web.routes.config._save_config_yaml")
    def test_update_timezone(self, mock_save):
        resp = self.client.put("/api/config", json={"summary_timezone": "Europe/Berlin"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.cfg.summary_timezone, "Europe/Berlin")
        mock_save.assert_called_once()


class TestSummaryEditValidation(WebTestCase):

    def setUp(self):
        super().setUp()
        self.app.state.collector.save_summary(self.broadcast.id, {"theme": "Original"})

    def test_non_text_value_rejected(self):
        resp = self.client.put(self.url(), json={"theme": ["x"]})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("theme", resp.json()["error"])
        self.assertEqual(self.client.get(self.url()).json()["theme"], "Original")

    def test_object_value_rejected(self):
        resp = self.client.put(self.url(), json={"overall_vibe": {"a": 1}, "theme": "ok"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get(self.url()).json()["theme"], "Original")

    def test_null_clears_field(self):
        resp = self.client.put(self.url(), json={"theme": None})
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(resp.json()["theme"])

    def test_non_text_outside_allow_list_ignored(self):
        resp = self.client.put(self.url(), json={"top_tippers": [1, 2]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["top_tippers"], [])


class TestBroadcastRoutes(WebTestCase):

    def test_create_with_defaults(self):
        resp = self.client.post("/api/broadcasts", json={})
        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        self.assertIsNone(data["ended_at"])
        self.assertEqual(data["source"], "manual")
        self.assertEqual(data["tags"], [])

    def test_create_complete_record(self):
        resp = self.client.post("/api/broadcasts", json={
            "started_at": "2025-02-01T20:00:00",
            "ended_at": "2025-02-01T21:30:00Z",
            "total_tokens": 900,
            "tags": ["late"],
        })
        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        self.assertEqual(data["duration_minutes"], 90)
        self.assertEqual(data["total_tokens"], 900)
        self.assertEqual(data["tags"], ["late"])

    def test_create_rejects_end_before_start(self):
        resp = self.client.post("/api/broadcasts", json={
            "started_at": "2025-02-01T20:00:00Z",
            "ended_at": "2025-02-01T19:00:00Z",
        })
        self.assertEqual(resp.status_code, 400)

    def test_create_rejects_negative_counts(self):
        resp = self.client.post("/api/broadcasts", json={"peak_viewers": -1})
        self.assertEqual(resp.status_code, 422)

    def test_get(self):
        resp = self.client.get(f"/api/broadcasts/{self.broadcast.id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["duration_minutes"], 120)
        self.assertEqual(self.client.get("/api/broadcasts/nope").status_code, 404)

    def test_get_stream_session(self):
        session_id = BroadcastRepository(self.db).create_session("host", START)
        resp = self.client.get(f"/api/broadcasts/{session_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["source"], "events_api")

    def test_list_with_pagination(self):
        repo = BroadcastRepository(self.db)
        newer = repo.create(started_at=START + timedelta(days=1))

        data = self.client.get("/api/broadcasts", params={"limit": 1}).json()
        self.assertEqual(data["total"], 2)
        self.assertTrue(data["has_more"])
        self.assertEqual([b["id"] for b in data["broadcasts"]], [newer.id])

        data = self.client.get("/api/broadcasts", params={"limit": 1, "offset": 1}).json()
        self.assertFalse(data["has_more"])
        self.assertEqual([b["id"] for b in data["broadcasts"]], [self.broadcast.id])

    def test_update(self):
        resp = self.client.put(f"/api/broadcasts/{self.broadcast.id}", json={
            "notes": "great night",
            "peak_viewers": 40,
            "tags": ["theme"],
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["notes"], "great night")
        self.assertEqual(data["peak_viewers"], 40)
        self.assertEqual(data["tags"], ["theme"])
        self.assertEqual(data["duration_minutes"], 120)

    def test_update_missing_or_auto_detected(self):
        self.assertEqual(self.client.put("/api/broadcasts/nope", json={"notes": "x"}).status_code, 404)
        session_id = BroadcastRepository(self.db).create_session("host", START)
        self.assertEqual(self.client.put(f"/api/broadcasts/{session_id}", json={"notes": "x"}).status_code, 404)

    def test_start_end_then_summarize(self):
        self.enable_ai()
        broadcast_id = self.client.post("/api/broadcasts", json={}).json()["id"]

        resp = self.client.post(f"/api/broadcasts/{broadcast_id}/end", json={"total_tokens": 35})
        self.assertEqual(resp.status_code, 200)
        self.assertIsNotNone(resp.json()["ended_at"])
        self.assertEqual(resp.json()["total_tokens"], 35)

        resp = self.client.post(
            f"/api/broadcasts/{broadcast_id}/summary/generate", json={"transcript": TRANSCRIPT}
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["tokens_received"], 35)

    def test_end_without_body(self):
        broadcast_id = self.client.post("/api/broadcasts", json={}).json()["id"]
        self.assertEqual(self.client.post(f"/api/broadcasts/{broadcast_id}/end").status_code, 200)

    def test_end_missing(self):
        self.assertEqual(self.client.post("/api/broadcasts/nope/end", json={}).status_code, 404)

    def test_delete(self):
        url = f"/api/broadcasts/{self.broadcast.id}"
        self.assertEqual(self.client.delete(url).status_code, 200)
        self.assertEqual(self.client.delete(url).status_code, 404)
        self.assertEqual(self.client.get(url).status_code, 404)


class TestStartServer(unittest.TestCase):

    @patch("app.web.server.uvicorn.run")
    def test_runs_app_quietly(self, mock_run):
        from app.web.server import start_server

        db = Database(":memory:")
        db.connect()
        db.migrate()
        try:
            start_server(Config(anthropic_api_key=""), db, host="0.0.0.0", port=8123)
        finally:
            db.close()

        args, kwargs = mock_run.call_args
        self.assertEqual(kwargs["host"], "0.0.0.0")
        self.assertEqual(kwargs["port"], 8123)
        self.assertEqual(kwargs["log_level"], "warning")
        self.assertFalse(kwargs["access_log"])

    @patch("app.web.server.uvicorn.run")
    def test_access_log_when_debugging(self, mock_run):
        from app.web.server import start_server

        db = Database(":memory:")
        db.connect()
        db.migrate()
        try:
            start_server(Config(log_level="DEBUG"), db)
        finally:
            db.close()
        self.assertTrue(mock_run.call_args.kwargs["access_log"])


if __name__ == "__main__":
    unittest.main()
