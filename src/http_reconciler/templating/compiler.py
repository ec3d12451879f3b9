"""Template compiler: turns request templates into query expressions.

Two template shapes are supported:

* **Pure expression** -- the whole string is one query, typically a URL
  such as ``(.payload.baseUrl + "/" + .response.body.id)``.
* **Structured template** -- a JSON object or array whose string leaves are
  either literals or expressions.  A leaf is an expression when it starts
  with the sigil (``.`` by default), e.g.
  ``{"username": ".payload.body.username", "role": "admin"}``.

A structured template is compiled into a single object/array constructor
query, so one evaluation resolves the whole nested structure.

Literal strings that would otherwise look like expressions are written with
a leading escape character (``\\`` by default), which is removed on render:
``"\\.NET"`` renders as ``.NET``.  The same escape turns a whole template
into a literal, e.g. a fixed URL ``\\https://api.example.com/users``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..errors import TemplateError
from .query import evaluate, to_json

logger = logging.getLogger(__name__)

DEFAULT_SIGIL = "."
DEFAULT_ESCAPE = "\\"


def render_value(value: Any) -> str:
    """Render an evaluated value: strings as-is, everything else as JSON."""
    if isinstance(value, str):
        return value
    return to_json(value)


class TemplateCompiler:
    """Compile and render request templates.

    Args:
        sigil: Prefix marking a string leaf as an expression.  The default
            ``.`` is the query path anchor and stays part of the expression;
            any other sigil is stripped before the expression is parsed.
        escape: Prefix marking a string as a literal.  Exactly one leading
            escape character is removed.
    """

    def __init__(
        self, sigil: str = DEFAULT_SIGIL, escape: str = DEFAULT_ESCAPE
    ) -> None:
        if not sigil or not escape:
            raise ValueError("sigil and escape must be non-empty")
        if sigil == escape:
            raise ValueError("sigil and escape must differ")
        self.sigil = sigil
        self.escape = escape

    # ------------------------------------------------------------------
    # Leaf classification
    # ------------------------------------------------------------------

    def is_escaped(self, text: str) -> bool:
        """Return ``True`` if *text* is an escaped literal."""
        return text.startswith(self.escape)

    def is_expression(self, text: str) -> bool:
        """Return ``True`` if the string leaf *text* is a query expression."""
        return not self.is_escaped(text) and text.startswith(self.sigil)

    def _expression_of(self, text: str) -> str:
        if self.sigil == DEFAULT_SIGIL:
            return text
        return text[len(self.sigil) :]

    def compile_leaf(self, text: str) -> str:
        """Compile a single string leaf into query syntax."""
        if self.is_expression(text):
            return f"({self._expression_of(text)})"
        if self.is_escaped(text):
            text = text[len(self.escape) :]
        return json.dumps(text)

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def compile_structured(self, template: Any) -> str:
        """Compile a parsed JSON template into one constructor query.

        Object keys are always literal.  String leaves go through
        ``compile_leaf``; numbers, booleans and null pass through.
        """
        match template:
            case dict():
                entries = ", ".join(
                    f"{json.dumps(str(key))}: {self.compile_structured(value)}"
                    for key, value in template.items()
                )
                return "{" + entries + "}"
            case list():
                return (
                    "["
                    + ", ".join(
                        self.compile_structured(item) for item in template
                    )
                    + "]"
                )
            case str():
                return self.compile_leaf(template)
            case bool() | int() | float() | None:
                return json.dumps(template)
            case _:
                raise TemplateError(
                    f"unsupported template value of type {type(template).__name__}"
                )

    def compile(self, template: str) -> str | None:
        """Compile a template string into query text.

        Returns:
            The query text, or ``None`` for an empty template.
        """
        text = template.strip()
        if not text:
            return None
        if self.is_escaped(text):
            return json.dumps(text[len(self.escape) :])
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return self._expression_of(text) if self.is_expression(text) else text
        if isinstance(parsed, (dict, list)):
            return self.compile_structured(parsed)
        return text

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def evaluate(self, template: str, context: Any) -> Any:
        """Compile and evaluate *template*, returning the JSON value.

        Returns ``None`` for an empty template.
        """
        query = self.compile(template)
        if query is None:
            return None
        logger.debug("Evaluating template query: %s", query)
        return evaluate(query, context)

    def render(self, template: str, context: Any) -> str:
        """Render *template* against *context* to request text.

        An empty template renders as an empty string.
        """
        if not template.strip():
            return ""
        return render_value(self.evaluate(template, context))

    def render_headers(
        self, headers: dict[str, list[str]] | None, context: Any
    ) -> dict[str, list[str]]:
        """Render a header set, treating it as a structured template."""
        if not headers:
            return {}
        resolved = evaluate(self.compile_structured(headers), context)
        rendered: dict[str, list[str]] = {}
        for name, values in resolved.items():
            if isinstance(values, list):
                rendered[name] = [render_value(v) for v in values]
            else:
                rendered[name] = [render_value(values)]
        return rendered


_default_compiler = TemplateCompiler()


def compile_template(template: str) -> str | None:
    """Compile *template* with the default sigil and escape."""
    return _default_compiler.compile(template)


def render_template(template: str, context: Any) -> str:
    """Render *template* against *context* with the default compiler."""
    return _default_compiler.render(template, context)
