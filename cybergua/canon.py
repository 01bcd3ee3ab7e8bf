"""
Content hashes for run capsules and configuration fingerprints.

Floats are rounded before hashing, so a capsule read back from JSON hashes the
same as the one that was written. Capsule bookkeeping fields stay outside the
hash.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Mapping

# Capsule keys that never take part in its content hash.
HASH_EXCLUDED_FIELDS = frozenset({"capsule_hash", "createdAt"})

FLOAT_DIGITS = 6


def _rounded(x: Any) -> Any:
    if isinstance(x, float):
        return round(x, FLOAT_DIGITS)
    if isinstance(x, Mapping):
        return {k: _rounded(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_rounded(v) for v in x]
    return x


def sha256_json(obj: Any) -> str:
    text = json.dumps(_rounded(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def capsule_body(capsule: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in capsule.items() if k not in HASH_EXCLUDED_FIELDS}
