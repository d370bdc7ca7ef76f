"""
Deterministic hashing for repeat-rule identity.

A recurring registration is identified by its job name, its schedule,
and a digest of its payload. The digest must not depend on dict ordering,
so values are serialized as canonical JSON before hashing.

    >>> compute_hash({"organization_id": "org1"}, "0 1 * * *")
    '6f0d...'  # 16-char hex string
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """JSON with sorted keys and no whitespace; ``str()`` for anything exotic."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(*values: Any, length: int = 16) -> str:
    """SHA-256 over the canonical JSON of each value, ``|``-joined, truncated to ``length``."""
    content = "|".join(canonical_json(v) for v in values)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]


__all__ = ["canonical_json", "compute_hash"]
