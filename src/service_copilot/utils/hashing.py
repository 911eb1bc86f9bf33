import hashlib
import json
from typing import Any

from service_copilot.utils.constants import IDEMPOTENCY_KEY_PARAMS


def canonical_params(params: dict[str, Any]) -> str:
    """Serialize params with stable key ordering, excluding the idempotency key."""
    filtered = {k: v for k, v in params.items() if k not in IDEMPOTENCY_KEY_PARAMS}
    return json.dumps(filtered, sort_keys=True, separators=(",", ":"), default=str)


def make_hash(value: str) -> str:
    """Create a SHA-256 hex digest of a string."""
    return hashlib.sha256(value.encode()).hexdigest()


def hash_params(params: dict[str, Any]) -> str:
    return make_hash(canonical_params(params))
