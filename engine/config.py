"""
Configuration for the coverage engine.

Values come from environment variables where an override makes sense and
fall back to the defaults below. The schema version is a code constant: it
changes only when the persisted record layout changes.
"""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent

# Bump whenever PersistedRecord changes shape. Records written under any
# other version are discarded whole on load and removed by the start-up sweep.
STORAGE_SCHEMA_VERSION = 2


class StoreConfig:
    """Durable store settings with environment variable overrides"""

    DATA_DIR = Path(os.getenv("COVERAGE_DATA_DIR", str(PACKAGE_DIR / "data")))

    STORE_FILE = Path(os.getenv("COVERAGE_STORE_FILE", "data/coverage_store.json"))

    # Per-identity namespace: "<prefix><user id>"
    KEY_PREFIX = os.getenv("COVERAGE_STORAGE_KEY_PREFIX", "covered-storage-")
    if not KEY_PREFIX:
        logger.warning("Empty COVERAGE_STORAGE_KEY_PREFIX; falling back to default 'covered-storage-'")
        KEY_PREFIX = "covered-storage-"

    # Unnamespaced keys written by earlier releases
    LEGACY_KEYS = ("covered-storage", "coverage-storage", "current_user_id")

    # Parse writer timeout with validation and fallback
    _default_flush_timeout = 10.0
    try:
        FLUSH_TIMEOUT_SECONDS = float(
            os.getenv("COVERAGE_FLUSH_TIMEOUT", str(_default_flush_timeout))
        )
    except (TypeError, ValueError):
        logger.warning(
            "Invalid COVERAGE_FLUSH_TIMEOUT value; falling back to default %s seconds",
            _default_flush_timeout,
        )
        FLUSH_TIMEOUT_SECONDS = _default_flush_timeout


def storage_key(user_id: str) -> str:
    """Return the durable key for an identity's selection record."""
    return f"{StoreConfig.KEY_PREFIX}{user_id}"


def is_identity_key(key: str) -> bool:
    return key.startswith(StoreConfig.KEY_PREFIX) and len(key) > len(StoreConfig.KEY_PREFIX)
