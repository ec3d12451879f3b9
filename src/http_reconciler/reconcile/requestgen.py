"""Request details generator.

Renders a mapping into a concrete ``RequestDetails`` (URL, body, headers):

1. Build the evaluation context from the desired spec and last response.
2. Render the URL and require an absolute http(s) URL.
3. Render the body; for CREATE/UPDATE merge the override payload on top.
4. Render headers: the mapping's headers if declared, otherwise the
   resource defaults (first non-``None`` wins, no merging).

Any failure short-circuits.  ``is_request_valid`` is the final gate
before a request may be sent.
"""

from __future__ import annotations

import logging
import re

from ..errors import RequestValidationError
from ..templating.compiler import TemplateCompiler
from ..templating.context import build_context
from ..templating.merge import merge_bodies
from ..templating.query import to_json
from ..validators import is_url_valid, validate_url
from .models import Action, DesiredSpec, Mapping, RequestDetails, Response

logger = logging.getLogger(__name__)

# A standalone ``null`` token in a rendered request means a field resolved
# to nothing; words merely containing "null" (``nullable``) are fine.
_NULL_TOKEN = re.compile(r"(?<![A-Za-z0-9_])null(?![A-Za-z0-9_])")

_MERGE_ACTIONS = (Action.CREATE, Action.UPDATE)


def coalesce_headers(
    mapping_headers: dict[str, list[str]] | None,
    default_headers: dict[str, list[str]] | None,
) -> dict[str, list[str]] | None:
    """Return the mapping headers if declared, else the default headers."""
    if mapping_headers is not None:
        return mapping_headers
    return default_headers


def is_request_valid(details: RequestDetails) -> bool:
    """Return ``True`` if *details* may be sent.

    A request is valid when its URL is a well-formed absolute URL and its
    serialised form contains no standalone ``null`` token.
    """
    if not details.url or not is_url_valid(details.url):
        return False
    serialised = to_json(details.model_dump(mode="json"))
    return _NULL_TOKEN.search(serialised) is None


class RequestGenerator:
    """Render mappings into request details.

    Args:
        compiler: Template compiler (default sigil ``.``, escape ``\\``).
        log: Logger to use instead of the module logger.
    """

    def __init__(
        self,
        compiler: TemplateCompiler | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.compiler = compiler or TemplateCompiler()
        self.log = log or logger

    def generate(
        self,
        mapping: Mapping,
        desired: DesiredSpec,
        observed: Response | None,
        action: Action,
    ) -> RequestDetails:
        """Render *mapping* for *action*.

        Raises:
            TemplateError: A template is malformed or references a missing
                field.
            RequestValidationError: The rendered URL is not well-formed.
            MergeError: The body or override payload is not a JSON object.
        """
        context = build_context(desired, observed)

        url = self.compiler.render(mapping.url, context)
        ok, reason = validate_url(url)
        if not ok:
            raise RequestValidationError(reason)

        body = self.compiler.render(mapping.body, context)
        if desired.body_object is not None and action in _MERGE_ACTIONS:
            body = merge_bodies(body, desired.body_object)

        headers = self.compiler.render_headers(
            coalesce_headers(mapping.headers, desired.headers), context
        )

        details = RequestDetails(url=url, body=body, headers=headers)
        self.log.debug(
            "Rendered %s request: %s %s", action.value, mapping.method, url
        )
        return details

    def generate_valid(
        self,
        mapping: Mapping,
        desired: DesiredSpec,
        observed: Response | None,
        action: Action,
    ) -> RequestDetails:
        """Render *mapping* and reject details that must not be sent.

        Raises:
            RequestValidationError: The details fail ``is_request_valid``.
        """
        details = self.generate(mapping, desired, observed, action)
        if not is_request_valid(details):
            raise RequestValidationError(
                f"{action.value} request is not valid (unresolved field or "
                f"malformed URL): {to_json(details.model_dump(mode='json'))}"
            )
        return details


_default_generator = RequestGenerator()


def generate_request_details(
    mapping: Mapping,
    desired: DesiredSpec,
    observed: Response | None,
    action: Action,
) -> RequestDetails:
    """Render *mapping* with the default generator."""
    return _default_generator.generate(mapping, desired, observed, action)


def generate_valid_request_details(
    mapping: Mapping,
    desired: DesiredSpec,
    observed: Response | None,
    action: Action,
) -> RequestDetails:
    """Render *mapping* with the default generator and validate it."""
    return _default_generator.generate_valid(mapping, desired, observed, action)
