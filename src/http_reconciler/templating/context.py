"""Evaluation context builder.

The context that templates are evaluated against is a single JSON tree:
the desired parameters at the top level plus the last observed response
under ``response``.  String fields holding JSON object documents are
inflated in place so their contents are addressable by path, e.g.
``.response.body.id`` when the stored body is the text ``{"id": "123"}``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pydantic import BaseModel


def parse_json_object(text: str) -> dict | None:
    """Return *text* parsed as a JSON object, or ``None`` if it is not one."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def inflate_json_strings(value: Any) -> Any:
    """Recursively replace JSON-object strings with their parsed structure.

    Arrays and objects are walked; the input is not modified.  Applying the
    function twice yields the same result as applying it once.
    """
    if isinstance(value, str):
        parsed = parse_json_object(value)
        if parsed is None:
            return value
        return inflate_json_strings(parsed)
    if isinstance(value, dict):
        return {k: inflate_json_strings(v) for k, v in value.items()}
    if isinstance(value, list):
        return [inflate_json_strings(item) for item in value]
    return value


def _to_tree(obj: BaseModel | dict | None) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        # Round-trip through JSON so no caller-owned object is aliased.
        return json.loads(json.dumps(obj))
    return obj.model_dump(mode="json", by_alias=True)


def build_context(
    desired: BaseModel | dict | None,
    observed: BaseModel | dict | None,
) -> dict[str, Any]:
    """Build the evaluation context for one render.

    Args:
        desired: The desired parameters (``DesiredSpec`` or plain dict).
        observed: The last observed response (``Response`` or plain dict).

    Returns:
        A fresh tree with the desired fields at the top level and the
        response under ``response``, with JSON strings inflated.
    """
    tree = _to_tree(desired)
    tree.update({"response": _to_tree(observed)})
    return inflate_json_strings(tree)
