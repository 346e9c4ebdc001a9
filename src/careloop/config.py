# config.py
# Environment-driven settings and logging setup.
#
# Values are read once at import time after load_dotenv(). Provider
# selection is never global: callers pass a model id per run.

import logging
import os

from dotenv import load_dotenv
from rich.logging import RichHandler

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


DEFAULT_MODEL = os.getenv("CARELOOP_MODEL", "openai-gpt-4o-mini")
MAX_ITERATIONS = _env_int("CARELOOP_MAX_ITERATIONS", 10)
MAX_OBSERVATION_CHARS = _env_int("CARELOOP_MAX_OBSERVATION_CHARS", 4000)
REQUEST_TIMEOUT = _env_int("CARELOOP_REQUEST_TIMEOUT", 60)
LOG_LEVEL = os.getenv("CARELOOP_LOG_LEVEL", "INFO")

# Pricing used for rough cost estimates, USD per 1K tokens.
PROMPT_COST_PER_1K = 0.00015
COMPLETION_COST_PER_1K = 0.0006


def api_key(env_var: str) -> str:
    return os.getenv(env_var, "")


def configure_logging(level: str | int | None = None) -> logging.Logger:
    """Attach a RichHandler to the package logger. Safe to call repeatedly."""
    logger = logging.getLogger("careloop")
    logger.setLevel(level or LOG_LEVEL)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    return logger
