"""
Request fingerprints - the join key between the cache and the in-flight table.
"""

import hashlib
import json
import math
from typing import Any

from callgate.services.errors import CanonicalizationError


def _check(value: Any, path: str) -> None:
    """Reject values json.dumps would silently coerce or reorder."""
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"non-string key {key!r} at {path}")
            _check(item, f"{path}.{key}")
    elif isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check(item, f"{path}[{i}]")
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"non-finite number at {path}")
    elif value is None or isinstance(value, (str, int, bool)):
        return
    else:
        raise TypeError(f"unsupported type {type(value).__name__} at {path}")


def canonical_json(endpoint: str, payload: Any) -> str:
    """Serialize *payload* with sorted keys and no insignificant whitespace."""
    try:
        _check(payload, "payload")
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise CanonicalizationError(endpoint, str(e)) from e


def fingerprint(endpoint: str, payload: Any = None) -> str:
    """
    Compute the fingerprint of a logical request.

    The endpoint name stays readable as a prefix so entries can be
    invalidated per endpoint; the payload part is a SHA-256 digest.
    A missing payload is fingerprinted as an empty object.
    """
    if not isinstance(endpoint, str) or not endpoint:
        raise CanonicalizationError(str(endpoint), "endpoint must be a non-empty string")

    body = canonical_json(endpoint, payload if payload is not None else {})
    digest = hashlib.sha256(body.encode()).hexdigest()
    return f"{endpoint}:{digest}"


def endpoint_of(key: str) -> str:
    """Return the endpoint prefix of a fingerprint."""
    return key.rsplit(":", 1)[0]
