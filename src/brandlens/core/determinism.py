"""
Configuration fingerprinting for reproducible runs.

Every execution and report is stamped with the SHA-256 of the settings that
produced it, so two results can be compared knowing whether limits, models or
analyzer choices differed.
"""

import hashlib
import json
from typing import Any

from pydantic import BaseModel

from ..observability.logging import get_logger

logger = get_logger(__name__)

# Secrets never influence the fingerprint
_EXCLUDED_KEYS = frozenset({"api_key"})


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _scrub(v) for k, v in value.items() if k not in _EXCLUDED_KEYS}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def canonical_json(config: Any) -> bytes:
    """Deterministic JSON blob of a settings object or plain mapping."""
    data = config.model_dump(mode="json") if isinstance(config, BaseModel) else config
    return json.dumps(_scrub(data), sort_keys=True, separators=(",", ":"), default=str).encode(
        "utf-8"
    )


def config_fingerprint(config: Any) -> str:
    """SHA-256 hex digest of the canonical configuration."""
    digest = hashlib.sha256(canonical_json(config)).hexdigest()
    logger.debug("Computed config fingerprint", config_hash=digest[:16])
    return digest
