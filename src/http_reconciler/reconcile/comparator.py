"""Response comparator: is the live resource already in the desired state?

Rule table:

=================  ====================  ===================================
live body JSON     desired body JSON     outcome
=================  ====================  ===================================
yes                yes                   desired is a subset of live, and 2xx
no                 yes                   ``ComparisonTypeMismatch``
yes                no                    ``ComparisonTypeMismatch``
no                 no                    desired is a substring of live, 2xx
=================  ====================  ===================================

"JSON" here means a JSON object.  Values are compared per top-level key by
their canonical (sorted-key) JSON encoding, so key order never matters.
"""

from __future__ import annotations

from typing import Any

from ..errors import ComparisonTypeMismatch
from ..templating.context import inflate_json_strings, parse_json_object
from ..templating.query import evaluate, is_truthy, to_json
from ..validators import is_http_error, is_http_success
from .models import Action, DisposableStatus, Response, ResourceStatus


def contains(container: dict[str, Any], containee: dict[str, Any]) -> bool:
    """Return ``True`` if every key of *containee* has an equal value in *container*."""
    for key, value in containee.items():
        if key not in container:
            return False
        if to_json(container[key]) != to_json(value):
            return False
    return True


def compare_response(
    live_body: str, live_status: int, desired_body: str
) -> bool:
    """Decide whether the live response matches the desired body.

    Args:
        live_body: Body returned by the GET request.
        live_status: Status code returned by the GET request.
        desired_body: Body the UPDATE mapping would send.

    Returns:
        ``True`` if synced.

    Raises:
        ComparisonTypeMismatch: Exactly one side is a JSON object.
    """
    live = parse_json_object(live_body)
    desired = parse_json_object(desired_body)

    if live is not None and desired is not None:
        return contains(live, desired) and is_http_success(live_status)

    if live is None and desired is not None:
        raise ComparisonTypeMismatch(
            f"response body is not a valid JSON string: {live_body}"
        )

    if live is not None and desired is None:
        raise ComparisonTypeMismatch(
            f"UPDATE mapping result is not a valid JSON string: {desired_body}"
        )

    return desired_body in live_body and is_http_success(live_status)


def is_valid_for_observation(status: ResourceStatus | DisposableStatus) -> bool:
    """Return ``True`` if the resource may exist and should be fetched.

    ``False`` when no response was ever recorded, or when the last request
    was a CREATE that came back with an HTTP error.
    """
    if status.response is None:
        return False
    last = status.request_details
    if (
        last is not None
        and last.action == Action.CREATE
        and is_http_error(status.response.status_code)
    ):
        return False
    return True


def matches_expected_response(expression: str, response: Response) -> bool:
    """Evaluate a predicate query against an HTTP response.

    The query sees ``{"statusCode", "headers", "body"}`` with the body
    inflated, e.g. ``.statusCode == 200 and .body.job_status == "success"``.

    Raises:
        TemplateError: The query is malformed or references a missing field.
    """
    context = inflate_json_strings(response.model_dump(mode="json", by_alias=True))
    return is_truthy(evaluate(expression, context))
