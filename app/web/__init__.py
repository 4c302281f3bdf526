"""
FastAPI app factory for the control panel API.
"""
import logging

from fastapi import FastAPI

from app.config import Config
from app.db.broadcasts import BroadcastRepository
from app.db.database import Database
from app.pipeline.summarizer import SummaryGenerator
from app.pipeline.summary_collector import SummaryDataCollector
from app.pipeline.transcript_parser import TranscriptParser

logger = logging.getLogger("controlpanel.web")


def build_collector(cfg: Config, db: Database) -> SummaryDataCollector:
    """Wire the summary collector from config."""
    parser = TranscriptParser(
        excluded_usernames=cfg.excluded_usernames,
        broadcaster=cfg.broadcaster_username,
    )
    return SummaryDataCollector(
        db=db,
        broadcasts=BroadcastRepository(db),
        parser=parser,
        instructions_path=cfg.instructions_path,
        broadcaster_username=cfg.broadcaster_username,
        visitor_threshold_minutes=cfg.visitor_threshold_minutes,
        preview_duration_minutes=cfg.preview_duration_minutes,
    )


def create_app(cfg: Config, db: Database) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Control Panel",
        description="Broadcast tracking and AI stream summaries",
        docs_url=None,  # disable Swagger UI in production
        redoc_url=None,
    )

    # Shared services, stored in app.state for route access
    collector = build_collector(cfg, db)
    app.state.cfg = cfg
    app.state.db = db
    app.state.collector = collector
    app.state.generator = SummaryGenerator(cfg, collector)

    from app.web.routes.summaries import router as summaries_router
    from app.web.routes.broadcasts import router as broadcasts_router
    from app.web.routes.config import router as config_router

    app.include_router(summaries_router, prefix="/api/broadcasts")
    app.include_router(broadcasts_router, prefix="/api/broadcasts")
    app.include_router(config_router, prefix="/api/config")

    logger.info("Web API initialized")
    return app
