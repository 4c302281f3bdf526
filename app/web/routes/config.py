"""
Config routes: read/update summary settings.
"""
import logging
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.pipeline.summarizer import SummaryGenerator

logger = logging.getLogger("controlpanel.web.config")

router = APIRouter()


class ConfigUpdate(BaseModel):
    broadcaster_username: Optional[str] = None
    excluded_usernames: Optional[List[str]] = None
    visitor_threshold_minutes: Optional[float] = None
    summary_timezone: Optional[str] = None
    llm_model: Optional[str] = None


@router.get("")
async def get_config(request: Request):
    """Return current config (secrets are never returned)."""
    cfg = request.app.state.cfg
    return JSONResponse({
        "broadcaster_username": cfg.broadcaster_username,
        "excluded_usernames": cfg.excluded_usernames,
        "visitor_threshold_minutes": cfg.visitor_threshold_minutes,
        "summary_timezone": cfg.summary_timezone,
        "instructions_path": cfg.instructions_path,
        "llm_model": cfg.llm_model,
        "ai_available": bool(cfg.anthropic_api_key),
    })


@router.put("")
async def update_config(body: ConfigUpdate, request: Request):
    """
    Update config values in memory and persist them to config.yaml.
    Only provided (non-null) fields are changed. Every field is validated
    first: one bad value rejects the whole update.
    """
    cfg = request.app.state.cfg
    changes = body.model_dump(exclude_none=True)

    error = _validate(changes)
    if error:
        return JSONResponse({"error": error}, status_code=400)

    for field_name, value in changes.items():
        setattr(cfg, field_name, value)
    updated = list(changes)

    if updated:
        # Services capture config at construction: rebuild them
        from app.web import build_collector
        collector = build_collector(cfg, request.app.state.db)
        request.app.state.collector = collector
        request.app.state.generator = SummaryGenerator(cfg, collector)

        _save_config_yaml(cfg)
        logger.info("Config updated: %s", ", ".join(updated))

    return JSONResponse({"updated": updated, "success": True})


def _validate(changes: dict) -> Optional[str]:
    threshold = changes.get("visitor_threshold_minutes")
    if threshold is not None and threshold <= 0:
        return "visitor_threshold_minutes must be positive"

    tz_name = changes.get("summary_timezone")
    if tz_name is not None:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f"Unknown timezone: {tz_name}"

    return None


def _save_config_yaml(cfg, config_path: Path = Path("config.yaml")):
    """Persist current settings to config.yaml. Secrets stay in .env."""
    data = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    data.setdefault("summary", {})
    data["summary"]["broadcaster"] = cfg.broadcaster_username
    data["summary"]["excluded_usernames"] = list(cfg.excluded_usernames)
    data["summary"]["visitor_threshold_minutes"] = cfg.visitor_threshold_minutes
    data["summary"]["timezone"] = cfg.summary_timezone

    data.setdefault("llm", {})
    data["llm"]["model"] = cfg.llm_model

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True)
