import logging
import os
from pathlib import Path
from typing import Tuple

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Ignoring non-positive %s=%r, using %s", name, raw, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


default_db = str(Path(__file__).resolve().parents[1] / "data" / "servmatch.sqlite3")

DB_PATH = os.getenv("SERVMATCH_DB_PATH", default_db)
CATEGORY_CACHE_TTL_SECONDS = _env_float("CATEGORY_CACHE_TTL_SECONDS", 300.0)
LOCAL_RADIUS_KM = _env_float("LOCAL_RADIUS_KM", 2.0)
AWAIT_FOLLOW_UP = _env_bool("AWAIT_FOLLOW_UP", True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
CORS_ORIGINS = _parse_csv_env("CORS_ORIGINS", "*")
TRUSTED_HOSTS = _parse_csv_env("TRUSTED_HOSTS", "*")
SEED_DEFAULT_CATEGORIES = _env_bool("SEED_DEFAULT_CATEGORIES", True)

_REQUEST_STATUSES = {"open", "in_progress", "completed", "cancelled"}


def _opportunity_statuses() -> Tuple[str, ...]:
    statuses = [s for s in _parse_csv_env("OPPORTUNITY_STATUSES", "open,in_progress") if s in _REQUEST_STATUSES]
    return tuple(statuses) or ("open", "in_progress")


OPPORTUNITY_STATUSES = _opportunity_statuses()
