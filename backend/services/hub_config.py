"""
Knowledge Hub - Configuration

Environment-driven settings for the admission gate, the migration engine and
the database connection. Values are read once at import time; server.py loads
the .env file before importing this module.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid value for %s=%r, using default %s", name, raw, default)
        return default


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid value for %s=%r, using default %s", name, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%s is below %s, using default %s", name, value, minimum, default)
        return default
    return value


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "knowledge_hub")

# In demo mode the server runs on in-memory stores instead of MongoDB
DEMO_MODE = os.environ.get("DEMO_MODE", "true").lower() == "true"


# =============================================================================
# ADMISSION GATE
# =============================================================================

DUPLICATE_THRESHOLD = _env_float("DUPLICATE_THRESHOLD", 0.80)
SIMILARITY_MATCH_FLOOR = _env_float("SIMILARITY_MATCH_FLOOR", 0.30)
QUALITY_FLOOR = _env_int("QUALITY_FLOOR", 50)
MIN_DESCRIPTION_LENGTH = _env_int("MIN_DESCRIPTION_LENGTH", 50)
MAX_AUTO_TAGS = _env_int("MAX_AUTO_TAGS", 10)
DUPLICATE_CORPUS_LIMIT = _env_int("DUPLICATE_CORPUS_LIMIT", 500)


# =============================================================================
# MIGRATION
# =============================================================================

MIGRATION_DEFAULT_BATCH_SIZE = _env_int("MIGRATION_DEFAULT_BATCH_SIZE", 100, minimum=1)
MIGRATION_MAX_BATCH_SIZE = _env_int("MIGRATION_MAX_BATCH_SIZE", 1000, minimum=1)
MIGRATION_MAX_LOG_ENTRIES = _env_int("MIGRATION_MAX_LOG_ENTRIES", 1000, minimum=1)


@dataclass(frozen=True)
class GateConfig:
    """Thresholds used by the admission gate."""
    duplicate_threshold: float = 0.80
    match_floor: float = 0.30
    quality_floor: int = 50
    min_description_length: int = 50
    max_auto_tags: int = 10
    corpus_limit: int = 500


def get_gate_config() -> GateConfig:
    """Build the gate configuration from the environment-derived constants."""
    return GateConfig(
        duplicate_threshold=DUPLICATE_THRESHOLD,
        match_floor=SIMILARITY_MATCH_FLOOR,
        quality_floor=QUALITY_FLOOR,
        min_description_length=MIN_DESCRIPTION_LENGTH,
        max_auto_tags=MAX_AUTO_TAGS,
        corpus_limit=DUPLICATE_CORPUS_LIMIT,
    )
