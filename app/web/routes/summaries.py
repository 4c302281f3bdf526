"""
Summary routes: AI status, preview, generate/regenerate, read, edit, delete.
"""
import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.pipeline.summarizer import SummarizerUnavailableError, TranscriptMissingError
from app.pipeline.summary_collector import EDITABLE_FIELDS, BroadcastNotFoundError

logger = logging.getLogger("controlpanel.web.summaries")

router = APIRouter()


class TranscriptRequest(BaseModel):
    transcript: str = ""


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _unavailable() -> JSONResponse:
    return _error("AI summary service is not configured", 503)


async def _run_blocking(fn, *args):
    """LLM calls block for tens of seconds: keep them off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, fn, *args)


# ── AI ─────────────────────────────────────────────────────

@router.get("/ai/status")
async def ai_status(request: Request):
    """Whether AI summary generation is configured."""
    generator = request.app.state.generator
    return JSONResponse({
        "available": generator.is_available(),
        "model": request.app.state.cfg.llm_model,
    })


@router.post("/ai/preview")
async def preview_summary(body: TranscriptRequest, request: Request):
    """Summarize pasted text without a broadcast record. Nothing is saved."""
    if not body.transcript.strip():
        return _error("Transcript is required", 400)

    generator = request.app.state.generator
    if not generator.is_available():
        return _unavailable()

    try:
        result = await _run_blocking(generator.generate_preview, body.transcript)
    except SummarizerUnavailableError:
        return _unavailable()
    except RuntimeError as e:
        logger.error("Preview generation failed: %s", e)
        return _error(str(e), 502)
    except Exception:
        logger.exception("Error generating preview summary")
        return _error("Failed to generate preview summary", 500)
    return JSONResponse(jsonable_encoder(result))


# ── Summaries ──────────────────────────────────────────────

@router.get("/{broadcast_id}/summary")
async def get_summary(broadcast_id: str, request: Request):
    summary = request.app.state.collector.get_summary_by_broadcast_id(broadcast_id)
    if not summary:
        return _error("Summary not found", 404)
    return JSONResponse(jsonable_encoder(summary))


@router.post("/{broadcast_id}/summary/generate")
async def generate_summary(broadcast_id: str, body: TranscriptRequest, request: Request):
    """Generate (or replace) the AI summary of a broadcast."""
    if not body.transcript.strip():
        return _error("Transcript is required", 400)

    generator = request.app.state.generator
    if not generator.is_available():
        return _unavailable()

    try:
        summary = await _run_blocking(generator.generate_summary, broadcast_id, body.transcript)
    except BroadcastNotFoundError:
        return _error("Broadcast not found", 404)
    except SummarizerUnavailableError:
        return _unavailable()
    except RuntimeError as e:
        logger.error("Summary generation failed for %s: %s", broadcast_id, e)
        return _error(str(e), 502)
    except Exception:
        logger.exception("Error generating summary for %s", broadcast_id)
        return _error("Failed to generate summary", 500)
    return JSONResponse(jsonable_encoder(summary))


@router.post("/{broadcast_id}/summary/regenerate")
async def regenerate_summary(broadcast_id: str, request: Request):
    """Generate again from the stored transcript."""
    generator = request.app.state.generator
    if not generator.is_available():
        return _unavailable()

    try:
        summary = await _run_blocking(generator.regenerate_summary, broadcast_id)
    except (TranscriptMissingError, BroadcastNotFoundError) as e:
        return _error(str(e), 404)
    except SummarizerUnavailableError:
        return _unavailable()
    except RuntimeError as e:
        logger.error("Summary regeneration failed for %s: %s", broadcast_id, e)
        return _error(str(e), 502)
    except Exception:
        logger.exception("Error regenerating summary for %s", broadcast_id)
        return _error("Failed to regenerate summary", 500)
    return JSONResponse(jsonable_encoder(summary))


@router.put("/{broadcast_id}/summary")
async def update_summary(broadcast_id: str, request: Request, updates: Dict[str, Any] = Body(...)):
    """Manual edits of the narrative fields. Other keys are ignored."""
    invalid = [
        name for name in EDITABLE_FIELDS
        if name in updates and updates[name] is not None and not isinstance(updates[name], str)
    ]
    if invalid:
        return _error(f"Fields must be text or null: {', '.join(invalid)}", 400)

    summary = request.app.state.collector.update_summary(broadcast_id, updates)
    if not summary:
        return _error("Summary not found", 404)
    return JSONResponse(jsonable_encoder(summary))


@router.delete("/{broadcast_id}/summary")
async def delete_summary(broadcast_id: str, request: Request):
    deleted = request.app.state.collector.delete_summary(broadcast_id)
    if not deleted:
        return _error("Summary not found", 404)
    return JSONResponse({"success": True})
