# backend/collabit/core/config.py
"""
Central config & environment helpers.
- Loads env (.env) early
- Exposes DATABASE_URL / REDIS_URL resolution and logging setup
- Holds DEFAULT_OPTIONS used by the survey engine (skill codes, cache keys, limits)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Tuple

from dotenv import load_dotenv

# Load .env once for the whole app
load_dotenv(override=False)

# --- Connection strings -----------------------------------------------------

def get_database_url() -> str:
    """SQLAlchemy URL for the entity store. Empty string means 'DB disabled'."""
    return (os.getenv("DATABASE_URL") or "").strip()


def get_db_echo() -> bool:
    return (os.getenv("DB_ECHO") or "false").lower() == "true"


def get_redis_url() -> str:
    """
    URL of the notification cache.
    Falls back to a local instance, which is what docker-compose exposes.
    """
    return (os.getenv("REDIS_URL") or "redis://localhost:6379/0").strip()


def get_allowed_origins() -> List[str]:
    defaults = {
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    }
    extra = {o.strip() for o in (os.getenv("ALLOWED_ORIGINS") or "").split(",") if o.strip()}
    return sorted(defaults | extra)


# --- Logging ----------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_logging_ready = False


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once. LOG_LEVEL env wins over the default INFO."""
    global _logging_ready
    if _logging_ready:
        return
    lvl = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, lvl, logging.INFO), format=_LOG_FORMAT)
    _logging_ready = True


# --- Options ----------------------------------------------------------------

# Column order of the hexagon graph; every aggregate walks codes in this order.
SKILL_CODES: Tuple[str, ...] = (
    "sympathy",
    "listening",
    "expression",
    "problem_solving",
    "conflict_resolution",
    "leadership",
)

DEFAULT_OPTIONS: Dict[str, Any] = {
    # notification cache keys: prefix + recipient + "::" + survey record id
    "response_key_prefix": "newSurveyResponse::",
    "request_key_prefix": "newSurveyRequest::",
    "key_separator": "::",

    # scoring
    "min_base_score": 1,
    "max_base_score": 5,
    "average_decimals": 1,

    # lifecycle
    "quorum_divisor": 2,   # participant >= total // 2

    # fan-out
    "sse_heartbeat_seconds": 15.0,

    # aggregate singleton
    "aggregate_score_id": 1,
}
