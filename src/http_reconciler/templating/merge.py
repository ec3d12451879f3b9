"""Body merge for CREATE and UPDATE requests.

Overlays the declared override payload (``bodyObject``) on top of the body
rendered from the mapping template.

Merge semantics ("overwrite with empty"):

* Every key present in the override wins, **including** empty values such as
  ``""``, ``0``, ``[]`` or ``null``.  This is how an operator explicitly
  clears a field the template would otherwise send.
* Keys present on only one side are kept.
* When both sides hold an object for the same key, the objects are merged
  recursively with the same rule.

The merged document is what gets sent.  Both sides must be JSON objects;
anything else raises ``MergeError`` before a request is built.
"""

from __future__ import annotations

import json
from typing import Any

from ..errors import MergeError
from .query import to_json


def _load_object(value: Any, label: str) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise MergeError(f"{label} is not valid JSON: {exc}") from exc
        if isinstance(parsed, dict):
            return parsed
        raise MergeError(
            f"{label} must be a JSON object, got {type(parsed).__name__}"
        )
    raise MergeError(
        f"{label} must be a JSON object, got {type(value).__name__}"
    )


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with *override* merged onto *base*."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_bodies(templated: str | dict, override: str | dict) -> str:
    """Merge an override payload onto a rendered body.

    Args:
        templated: The body rendered from the mapping (JSON text or dict).
            An empty string counts as ``{}``.
        override: The raw override payload (JSON text or dict).

    Returns:
        The merged body as compact JSON with sorted keys.

    Raises:
        MergeError: Either side is not a JSON object.
    """
    base = _load_object(templated, "templated body")
    patch = _load_object(override, "override payload")
    return to_json(deep_merge(base, patch))
