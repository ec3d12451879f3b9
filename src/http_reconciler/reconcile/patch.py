"""Field paths and cross-resource references.

Field paths address values in a resource's serialised form (camelCase
keys), e.g. ``spec.payload.baseUrl``, ``status.response.body.id`` or
``spec.payload.body.items[0]["dotted.key"]``.

A ``Reference`` may declare ``dependsOn`` (the source must be ready
before this resource is reconciled) and ``patchesFrom`` (copy a value
from the source into this resource at ``toFieldPath``).  Source trees are
read with JSON strings inflated, so a stored response body can be
addressed field by field.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Mapping as MappingType, TypeVar

from pydantic import BaseModel

from ..errors import ReferenceResolutionError
from ..templating.compiler import render_value
from ..templating.context import inflate_json_strings
from .models import DependsOn, Reference

M = TypeVar("M", bound=BaseModel)

_NAME = re.compile(r"[^.\[\]]+")
_BRACKET = re.compile(r"""\[(?:(-?\d+)|"((?:[^"\\]|\\.)*)"|'([^']*)')\]""")


def parse_field_path(path: str) -> list[str | int]:
    """Split a field path into keys and list indices.

    Raises:
        ReferenceResolutionError: The path is empty or malformed.
    """
    segments: list[str | int] = []
    pos = 0
    while pos < len(path):
        char = path[pos]
        if char == "[":
            match = _BRACKET.match(path, pos)
            if match is None:
                raise ReferenceResolutionError(
                    f"invalid field path {path!r} at position {pos}"
                )
            index, quoted, single = match.groups()
            if index is not None:
                segments.append(int(index))
            elif quoted is not None:
                segments.append(json.loads(f'"{quoted}"'))
            else:
                segments.append(single)
            pos = match.end()
            continue
        if char == ".":
            if pos == 0:
                raise ReferenceResolutionError(
                    f"invalid field path {path!r}: leading '.'"
                )
            pos += 1
        elif pos != 0:
            raise ReferenceResolutionError(
                f"invalid field path {path!r} at position {pos}"
            )
        match = _NAME.match(path, pos)
        if match is None:
            raise ReferenceResolutionError(
                f"invalid field path {path!r} at position {pos}"
            )
        segments.append(match.group(0))
        pos = match.end()
    if not segments:
        raise ReferenceResolutionError("empty field path")
    return segments


def get_field_value(tree: Any, path: str) -> Any:
    """Return the value at *path* in *tree*.

    Raises:
        ReferenceResolutionError: The path is malformed or does not resolve.
    """
    current = tree
    for segment in parse_field_path(path):
        if isinstance(segment, int):
            if not isinstance(current, list) or not -len(current) <= segment < len(current):
                raise ReferenceResolutionError(f"field {path} not found")
            current = current[segment]
        else:
            if not isinstance(current, dict) or segment not in current:
                raise ReferenceResolutionError(f"field {path} not found")
            current = current[segment]
    return current


def set_field_value(tree: dict[str, Any], path: str, value: Any) -> dict[str, Any]:
    """Return a copy of *tree* with *value* stored at *path*.

    Missing intermediate objects are created; list indices must exist.

    Raises:
        ReferenceResolutionError: The path is malformed or crosses a value
            that is neither an object nor a list.
    """
    segments = parse_field_path(path)
    result = copy.deepcopy(tree)
    current: Any = result
    for position, segment in enumerate(segments):
        last = position == len(segments) - 1
        if isinstance(segment, int):
            if not isinstance(current, list) or not -len(current) <= segment < len(current):
                raise ReferenceResolutionError(f"cannot set {path}: index {segment} out of range")
        elif not isinstance(current, dict):
            raise ReferenceResolutionError(
                f"cannot set {path}: {segment!r} is not inside an object"
            )
        if last:
            current[segment] = copy.deepcopy(value)
        else:
            if isinstance(segment, str) and segment not in current:
                current[segment] = {}
            current = current[segment]
    return result


def is_dependency_ready(depends_on: DependsOn, source: dict[str, Any]) -> bool:
    """Return ``True`` if the source resource satisfies *depends_on*.

    Without a field path the source must be synced.  With a field path the
    value there must equal ``expectedValue`` (compared as rendered text),
    or be present and truthy when no expected value is given.
    """
    tree = inflate_json_strings(source)
    if depends_on.field_path is None:
        return bool(tree.get("status", {}).get("synced"))
    try:
        value = get_field_value(tree, depends_on.field_path)
    except ReferenceResolutionError:
        return False
    if depends_on.expected_value is None:
        return value not in (None, False, "", {}, [])
    return render_value(value) == depends_on.expected_value


def apply_reference(
    reference: Reference, source: dict[str, Any], target: dict[str, Any]
) -> dict[str, Any]:
    """Copy the ``patchesFrom`` value from *source* into *target*.

    Returns *target* unchanged (as a copy) when the reference has no patch.
    """
    if reference.patches_from is None:
        return copy.deepcopy(target)
    value = get_field_value(
        inflate_json_strings(source), reference.patches_from.field_path
    )
    destination = reference.to_field_path or reference.patches_from.field_path
    return set_field_value(target, destination, value)


def resolve_references(resource: M, sources: MappingType[str, BaseModel]) -> M:
    """Check dependencies and apply patches declared on *resource*.

    Args:
        resource: An ``HttpResource`` or ``DisposableResource``.
        sources: Known resources by name (with their current status).

    Returns:
        A new resource of the same type with all patches applied.

    Raises:
        ReferenceResolutionError: A source is unknown, a dependency is not
            ready, or a patch path does not resolve.
    """
    references: list[Reference] = getattr(resource, "references", [])
    if not references:
        return resource

    tree = resource.model_dump(mode="json", by_alias=True)
    for reference in references:
        name = reference.source_name
        if name is None:
            continue
        source_model = sources.get(name)
        if source_model is None:
            raise ReferenceResolutionError(f"referenced resource {name!r} not found")
        source = source_model.model_dump(mode="json", by_alias=True)

        if reference.depends_on is not None and not is_dependency_ready(
            reference.depends_on, source
        ):
            raise ReferenceResolutionError(f"dependency {name!r} is not ready")
        tree = apply_reference(reference, source, tree)

    return type(resource).model_validate(tree)
