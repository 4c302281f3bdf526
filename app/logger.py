"""
Logging for the control panel.

One application logger ("controlpanel"), console plus a size-rotated file.
Every handler masks API keys: request errors from the LLM client can echo
headers into exception messages.
"""
import logging
import logging.handlers
import re
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_FILE_NAME = "controlpanel.log"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3

_MASKS = [
    (re.compile(r"(sk-ant-)[A-Za-z0-9\-_]+"), r"\1***"),
    (re.compile(r"(ANTHROPIC_API_KEY\s*[=:]\s*)\S+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(Authorization:\s*Bearer\s+)\S+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(x-api-key['\"]?\s*[=:]\s*['\"]?)[^\s'\",}]+", re.IGNORECASE), r"\1***"),
]

# Chatty at INFO; their warnings still get through
_QUIET_LIBRARIES = ("anthropic", "httpx", "httpcore", "uvicorn.access")


def mask_secrets(text: str) -> str:
    for pattern, replacement in _MASKS:
        text = pattern.sub(replacement, text)
    return text


class SecretFilter(logging.Filter):
    """Masks secrets in the message, its args and any formatted traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_secrets(str(record.msg))
        if isinstance(record.args, dict):
            record.args = {k: self._mask_arg(v) for k, v in record.args.items()}
        elif record.args:
            record.args = tuple(self._mask_arg(a) for a in record.args)
        if record.exc_info and not record.exc_text:
            record.exc_text = mask_secrets(logging.Formatter().formatException(record.exc_info))
        return True

    @staticmethod
    def _mask_arg(value):
        return mask_secrets(value) if isinstance(value, str) else value


def _handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handler.addFilter(SecretFilter())
    return handler


def setup_logger(log_level: str = "INFO", log_dir: str = "./logs") -> logging.Logger:
    """
    Configure the "controlpanel" logger. Calling it again only changes the
    level, so the CLI can re-apply --log-level without duplicating handlers.
    """
    logger = logging.getLogger("controlpanel")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    if logger.handlers:
        return logger

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    logger.addHandler(_handler(logging.StreamHandler()))
    logger.addHandler(_handler(logging.handlers.RotatingFileHandler(
        Path(log_dir) / LOG_FILE_NAME,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
        encoding="utf-8",
    )))

    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
