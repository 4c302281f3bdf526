"""
Single configuration loader.
Priority: CLI arguments > ENV vars > config.yaml > defaults
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    # ─── Paths ───────────────────────────────────────────────
    db_path: str = "./data/control_panel.db"
    log_dir: str = "./logs"
    log_level: str = "INFO"

    # ─── Summary pipeline ────────────────────────────────────
    instructions_path: str = "../STREAM_SUMMARY_INSTRUCTIONS.md"
    broadcaster_username: str = ""
    excluded_usernames: list = field(default_factory=list)
    visitor_threshold_minutes: float = 1
    preview_duration_minutes: int = 60      # used only to estimate tokens/hour
    summary_timezone: str = "America/New_York"

    # ─── LLM ─────────────────────────────────────────────────
    anthropic_api_key: str = ""
    llm_model: str = "claude-sonnet-4-6"
    llm_max_tokens: int = 4096
    llm_input_price_per_mtok: float = 3.0
    llm_output_price_per_mtok: float = 15.0
    max_retries: int = 3
    retry_backoff_sec: float = 30.0

    # ─── Web ─────────────────────────────────────────────────
    web_host: str = "127.0.0.1"
    web_port: int = 8000


def _yaml_value(data: dict, *keys):
    """Return a nested YAML value by a chain of keys."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _split_names(raw) -> list:
    if isinstance(raw, list):
        return [str(x).strip() for x in raw if str(x).strip()]
    if isinstance(raw, str) and raw.strip():
        return [x.strip() for x in raw.split(",") if x.strip()]
    return []


def load_config(
    config_file: Optional[str] = None,
    overrides: Optional[dict] = None,
) -> Config:
    """
    Load configuration with priority:
    CLI overrides > ENV > config.yaml > defaults

    Args:
        config_file: path to config.yaml (None looks for ./config.yaml)
        overrides: dict of CLI arguments (only those actually passed)
    """
    cfg = Config()
    overrides = overrides or {}

    # ── Step 1: YAML ─────────────────────────────────────────
    yaml_data: dict = {}
    yaml_path = config_file or "config.yaml"
    if Path(yaml_path).exists():
        with open(yaml_path, encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

    def y(*keys):
        return _yaml_value(yaml_data, *keys)

    # ── Step 2: ENV > YAML > default ─────────────────────────
    def get(env_key: str, yaml_val, default):
        """ENV → YAML → default"""
        env = os.getenv(env_key)
        if env is not None:
            return env
        if yaml_val is not None:
            return yaml_val
        return default

    cfg.db_path   = get("DB_PATH",   y("paths", "db_path"),   cfg.db_path)
    cfg.log_dir   = get("LOG_DIR",   y("paths", "log_dir"),   cfg.log_dir)
    cfg.log_level = get("LOG_LEVEL", y("app", "log_level"),   cfg.log_level)

    cfg.instructions_path = get(
        "SUMMARY_INSTRUCTIONS_PATH", y("summary", "instructions_path"), cfg.instructions_path
    )
    cfg.broadcaster_username = get(
        "BROADCASTER_USERNAME", y("summary", "broadcaster"), cfg.broadcaster_username
    )
    cfg.excluded_usernames = _split_names(
        get("EXCLUDED_USERNAMES", y("summary", "excluded_usernames"), cfg.excluded_usernames)
    )
    cfg.visitor_threshold_minutes = float(get(
        "VISITOR_THRESHOLD_MINUTES", y("summary", "visitor_threshold_minutes"), cfg.visitor_threshold_minutes
    ))
    cfg.summary_timezone = get("SUMMARY_TIMEZONE", y("summary", "timezone"), cfg.summary_timezone)

    cfg.anthropic_api_key = get("ANTHROPIC_API_KEY", y("llm", "api_key"),    cfg.anthropic_api_key)
    cfg.llm_model         = get("LLM_MODEL",         y("llm", "model"),      cfg.llm_model)
    cfg.llm_max_tokens    = int(get("LLM_MAX_TOKENS", y("llm", "max_tokens"), cfg.llm_max_tokens))
    cfg.llm_input_price_per_mtok  = float(get("LLM_INPUT_PRICE",  y("llm", "input_price"),  cfg.llm_input_price_per_mtok))
    cfg.llm_output_price_per_mtok = float(get("LLM_OUTPUT_PRICE", y("llm", "output_price"), cfg.llm_output_price_per_mtok))
    cfg.max_retries       = int(get("MAX_RETRIES",     y("llm", "max_retries"),       cfg.max_retries))
    cfg.retry_backoff_sec = float(get("RETRY_BACKOFF", y("llm", "retry_backoff_sec"), cfg.retry_backoff_sec))

    cfg.web_host = get("WEB_HOST", y("web", "host"), cfg.web_host)
    cfg.web_port = int(get("PORT", y("web", "port"), cfg.web_port))

    # ── Step 3: CLI overrides (highest priority) ─────────────
    for key, val in overrides.items():
        if val is not None and hasattr(cfg, key):
            setattr(cfg, key, val)

    # ── Path normalization ───────────────────────────────────
    cfg.instructions_path = str(Path(cfg.instructions_path).expanduser().resolve())

    return cfg


def validate_config(cfg: Config) -> list:
    """
    Check the configuration. Returns a list of problems (empty = OK).
    """
    errors = []

    if not Path(cfg.instructions_path).is_file():
        errors.append(
            f"Summary instructions not found: {cfg.instructions_path}\n"
            "  Set SUMMARY_INSTRUCTIONS_PATH or summary.instructions_path in config.yaml"
        )

    if cfg.visitor_threshold_minutes <= 0:
        errors.append("VISITOR_THRESHOLD_MINUTES must be positive")

    if cfg.preview_duration_minutes <= 0:
        errors.append("preview_duration_minutes must be positive")

    # ANTHROPIC_API_KEY is optional: without it only collection and storage work

    return errors
