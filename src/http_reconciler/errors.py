"""Exception hierarchy for the HTTP resource reconciler.

Every component raises one of these; the reconciliation state machine is
the only place that turns them into failure counters and status text.

- ``TemplateError`` -- malformed template or unresolved field.
- ``MergeError`` -- malformed JSON given to the body merge.
- ``TransportError`` -- network failure or timeout.
- ``ComparisonTypeMismatch`` -- JSON vs non-JSON comparison.
- ``RequestValidationError`` -- rendered request failed validation.
- ``MappingNotFound`` -- no mapping declared for an action.
- ``ReferenceResolutionError`` -- a cross-resource reference failed.
"""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class TemplateError(ReconcilerError):
    """A template could not be compiled or evaluated."""


class QuerySyntaxError(TemplateError):
    """A query expression could not be parsed.

    Attributes:
        query: The query text.
        position: Character offset of the offending token.
    """

    def __init__(self, message: str, query: str, position: int) -> None:
        super().__init__(f"{message} at position {position} in {query!r}")
        self.query = query
        self.position = position


class FieldNotFound(TemplateError):
    """A query referenced a field that does not exist in the context.

    Attributes:
        path: The path that failed to resolve, e.g. ``.response.body.id``.
    """

    def __init__(self, path: str) -> None:
        super().__init__(f"field not found: {path}")
        self.path = path


class MergeError(ReconcilerError):
    """The templated body or the override payload is not a JSON object."""


class TransportError(ReconcilerError):
    """The HTTP request could not be completed."""


class ComparisonTypeMismatch(ReconcilerError):
    """Live and desired bodies cannot be compared (JSON vs non-JSON)."""


class RequestValidationError(ReconcilerError):
    """Rendered request details are not safe to send."""


class MappingNotFound(ReconcilerError):
    """No mapping is declared for the requested action."""

    def __init__(self, action: str) -> None:
        super().__init__(f"no mapping declared for action {action}")
        self.action = action


class ReferenceResolutionError(ReconcilerError):
    """A reference could not be resolved, or its dependency is not ready."""
