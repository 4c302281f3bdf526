"""
Uvicorn server startup for the control panel API.
"""
import logging

import uvicorn

from app.config import Config
from app.db.database import Database
from app.web import create_app

logger = logging.getLogger("controlpanel.web.server")


def start_server(cfg: Config, db: Database, host: str = "127.0.0.1", port: int = 8000):
    """Start the web server. Blocks until shutdown."""
    app = create_app(cfg, db)
    ai = "enabled" if app.state.generator.is_available() else "disabled (no ANTHROPIC_API_KEY)"

    logger.info(
        "Starting web server on %s:%d (broadcaster=%s, AI summaries %s)",
        host, port, cfg.broadcaster_username or "unset", ai,
    )
    print(f"\n  Control panel API: http://{host}:{port}/api/broadcasts")
    print(f"  AI summaries: {ai}")
    print("  Press Ctrl+C to stop\n")

    # Request lines only when debugging; our own loggers cover the rest
    debug = cfg.log_level.upper() == "DEBUG"
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info" if debug else "warning",
        access_log=debug,
    )
