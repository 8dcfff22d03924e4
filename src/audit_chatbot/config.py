from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RECORDS_DIR = DATA_DIR / "records"      # local record exports (csv / xlsx)
METADATA_DIR = DATA_DIR / "metadata"    # department alias tables

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Audit Findings Conversational Search"
APP_VERSION = "0.1.0"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


# ---------------------------------------------------------------------------
# Query engine tunables
#
# Policy values, not invariants. The documented defaults are what the
# chat surface ships with; override through the environment.
# ---------------------------------------------------------------------------

CONFIDENCE_THRESHOLD = _env_float("AUDIT_CONFIDENCE_THRESHOLD", 0.7)
WORKER_POOL_SIZE = _env_int("AUDIT_WORKER_POOL_SIZE", 4)
RETRY_ATTEMPTS = _env_int("AUDIT_RETRY_ATTEMPTS", 3)
RETRY_BACKOFF_SECONDS = _env_float("AUDIT_RETRY_BACKOFF_SECONDS", 0.2)
RETRY_MAX_BACKOFF_SECONDS = _env_float("AUDIT_RETRY_MAX_BACKOFF_SECONDS", 2.0)

# Firestore-style stores cap "value is one of" clauses at 10 entries
STORE_BATCH_LIMIT = _env_int("AUDIT_STORE_BATCH_LIMIT", 10)

# Rows shown inline in the chat; the export is never capped
DEFAULT_PAGE_SIZE = _env_int("AUDIT_DEFAULT_PAGE_SIZE", 10)

FALLBACK_TOP_K = _env_int("AUDIT_FALLBACK_TOP_K", 10)
FALLBACK_TIMEOUT_SECONDS = _env_float("AUDIT_FALLBACK_TIMEOUT_SECONDS", 5.0)

# ---------------------------------------------------------------------------
# External collaborators
#
# The record store is reached through a JSON search endpoint that answers
# with a CKAN-style envelope:
#   {"success": true, "result": {"records": [...], "total": 123}}
# Leave it empty to run against a local CSV / Excel export instead.
# ---------------------------------------------------------------------------

RECORD_STORE_URL = os.getenv("AUDIT_RECORD_STORE_URL", "").strip()
RECORD_STORE_TOKEN = os.getenv("AUDIT_RECORD_STORE_TOKEN", "").strip()
LOCAL_RECORDS_FILE = os.getenv("AUDIT_LOCAL_RECORDS_FILE", str(RECORDS_DIR / "audit_results.xlsx")).strip()

# Optional semantic fallback (qdrant + sentence-transformers)
QDRANT_URL = os.getenv("AUDIT_QDRANT_URL", "").strip()
QDRANT_API_KEY = os.getenv("AUDIT_QDRANT_API_KEY", "").strip()
QDRANT_COLLECTION = os.getenv("AUDIT_QDRANT_COLLECTION", "audit-findings").strip()
EMBEDDING_MODEL = os.getenv("AUDIT_EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2").strip()

LOG_LEVEL = os.getenv("AUDIT_LOG_LEVEL", "INFO").strip().upper()


@dataclass(frozen=True)
class EngineSettings:
    """
    Immutable snapshot of the query engine tunables.

    One instance is shared by every request; nothing mutates it after
    construction.
    """
    confidence_threshold: float = CONFIDENCE_THRESHOLD
    worker_pool_size: int = WORKER_POOL_SIZE
    retry_attempts: int = RETRY_ATTEMPTS
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    retry_max_backoff_seconds: float = RETRY_MAX_BACKOFF_SECONDS
    store_batch_limit: int = STORE_BATCH_LIMIT
    default_page_size: int = DEFAULT_PAGE_SIZE
    fallback_top_k: int = FALLBACK_TOP_K
    fallback_timeout_seconds: float = FALLBACK_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        if self.worker_pool_size <= 0:
            raise ValueError("worker_pool_size must be greater than 0")
        if self.retry_attempts <= 0:
            raise ValueError("retry_attempts must be greater than 0")
        if self.retry_backoff_seconds < 0 or self.retry_max_backoff_seconds < 0:
            raise ValueError("retry backoff must not be negative")
        if self.store_batch_limit <= 0:
            raise ValueError("store_batch_limit must be greater than 0")
        if self.default_page_size <= 0:
            raise ValueError("default_page_size must be greater than 0")
        if self.fallback_top_k <= 0:
            raise ValueError("fallback_top_k must be greater than 0")
        if self.fallback_timeout_seconds <= 0:
            raise ValueError("fallback_timeout_seconds must be greater than 0")


_SETTINGS: Optional[EngineSettings] = None


def load_settings(refresh: bool = False) -> EngineSettings:
    """Return the process-wide settings built from the module constants."""
    global _SETTINGS
    if _SETTINGS is None or refresh:
        _SETTINGS = EngineSettings()
    return _SETTINGS


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
