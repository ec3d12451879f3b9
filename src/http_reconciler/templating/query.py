"""Query evaluator for a small jq-like expression language.

Templates reference the evaluation context through these expressions, for
example ``.payload.baseUrl`` or ``(.payload.baseUrl + "/" + .response.body.id)``.

Supported syntax (lowest to highest precedence):

- ``a | b`` -- pipe the output of *a* into *b*.
- ``a // b`` -- alternative: *b* when *a* is missing, ``null`` or ``false``.
- ``a or b``, ``a and b`` -- boolean operators.
- ``==``, ``!=``, ``<``, ``<=``, ``>``, ``>=`` -- comparisons.
- ``+``, ``-`` -- addition, concatenation, object merge, subtraction.
- ``.``, ``.a.b``, ``."key"``, ``.[0]``, ``.a[-1]``, ``.a?`` -- paths.
- literals: strings, numbers, ``true``, ``false``, ``null``, ``{...}``,
  ``[...]`` (object keys may be bare words, strings or ``(expr)``).
- builtins: ``not``, ``length``, ``keys``, ``tostring``, ``tojson``,
  ``fromjson``.

A path that does not exist raises ``FieldNotFound`` instead of producing
``null``; use ``?`` or ``//`` where absence is acceptable.
"""

from __future__ import annotations

import json
import math
import re
from functools import lru_cache
from typing import Any

from ..errors import FieldNotFound, QuerySyntaxError, TemplateError

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_SPEC = [
    ("WS", r"\s+"),
    ("STRING", r'"(?:[^"\\]|\\.)*"'),
    ("NUMBER", r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?"),
    ("FIELD", r"\.[A-Za-z_][A-Za-z0-9_]*"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"//|==|!=|<=|>=|[<>+\-|]"),
    ("PUNCT", r"[.()\[\]{},:?]"),
]
_TOKEN_RE = re.compile(
    "|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC)
)

_COMPARISONS = ("==", "!=", "<", "<=", ">", ">=")
_BUILTINS = ("not", "length", "keys", "tostring", "tojson", "fromjson")


class _Token:
    __slots__ = ("kind", "value", "pos")

    def __init__(self, kind: str, value: str, pos: int) -> None:
        self.kind = kind
        self.value = value
        self.pos = pos

    def __repr__(self) -> str:
        return f"_Token({self.kind}, {self.value!r}, {self.pos})"


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise QuerySyntaxError(
                f"unexpected character {text[pos]!r}", text, pos
            )
        kind = match.lastgroup or ""
        if kind != "WS":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token("EOF", "", len(text)))
    return tokens


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_name(value: Any) -> str:
    match value:
        case None:
            return "null"
        case bool():
            return "boolean"
        case int() | float():
            return "number"
        case str():
            return "string"
        case list():
            return "array"
        case dict():
            return "object"
        case _:
            return type(value).__name__


def is_truthy(value: Any) -> bool:
    """Return the jq truthiness of *value*: only ``null`` and ``false`` are false."""
    return value is not None and value is not False


def to_json(value: Any) -> str:
    """Encode *value* as compact JSON with sorted keys."""
    return json.dumps(
        value, separators=(",", ":"), sort_keys=True, ensure_ascii=False
    )


_TYPE_ORDER = {
    "null": 0,
    "boolean": 1,
    "number": 2,
    "string": 3,
    "array": 4,
    "object": 5,
}


def _sort_key(value: Any) -> tuple:
    name = _type_name(value)
    rank = _TYPE_ORDER.get(name, 6)
    if name in ("boolean", "number", "string"):
        return (rank, value)
    if name == "null":
        return (rank, 0)
    return (rank, to_json(value))


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


class _Node:
    def eval(self, value: Any) -> Any:
        raise NotImplementedError

    def describe(self) -> str:
        return "<expr>"


class _Identity(_Node):
    def eval(self, value: Any) -> Any:
        return value

    def describe(self) -> str:
        return ""


class _Literal(_Node):
    def __init__(self, value: Any) -> None:
        self.value = value

    def eval(self, value: Any) -> Any:
        return self.value

    def describe(self) -> str:
        return to_json(self.value)


class _Field(_Node):
    def __init__(self, target: _Node, name: str) -> None:
        self.target = target
        self.name = name

    def eval(self, value: Any) -> Any:
        container = self.target.eval(value)
        if isinstance(container, dict):
            if self.name not in container:
                raise FieldNotFound(self.describe())
            return container[self.name]
        if container is None:
            raise FieldNotFound(self.describe())
        raise TemplateError(
            f"cannot index {_type_name(container)} with "
            f"{self.name!r} at {self.describe()}"
        )

    def describe(self) -> str:
        if re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", self.name):
            return f"{self.target.describe()}.{self.name}"
        return f"{self.target.describe() or '.'}[{json.dumps(self.name)}]"


class _Index(_Node):
    def __init__(self, target: _Node, index: _Node) -> None:
        self.target = target
        self.index = index

    def eval(self, value: Any) -> Any:
        container = self.target.eval(value)
        key = self.index.eval(value)
        if isinstance(container, list) and _is_number(key):
            if not math.isfinite(key):
                raise FieldNotFound(self._describe_with(key))
            position = int(key)
            if -len(container) <= position < len(container):
                return container[position]
            raise FieldNotFound(self._describe_with(key))
        if isinstance(container, dict) and isinstance(key, str):
            if key not in container:
                raise FieldNotFound(self._describe_with(key))
            return container[key]
        if container is None:
            raise FieldNotFound(self._describe_with(key))
        raise TemplateError(
            f"cannot index {_type_name(container)} with "
            f"{_type_name(key)} at {self.target.describe() or '.'}"
        )

    def _describe_with(self, key: Any) -> str:
        return f"{self.target.describe() or '.'}[{to_json(key)}]"

    def describe(self) -> str:
        return f"{self.target.describe() or '.'}[{self.index.describe()}]"


class _Try(_Node):
    def __init__(self, body: _Node) -> None:
        self.body = body

    def eval(self, value: Any) -> Any:
        try:
            return self.body.eval(value)
        except TemplateError:
            return None

    def describe(self) -> str:
        return f"{self.body.describe()}?"


class _Pipe(_Node):
    def __init__(self, left: _Node, right: _Node) -> None:
        self.left = left
        self.right = right

    def eval(self, value: Any) -> Any:
        return self.right.eval(self.left.eval(value))


class _Alternative(_Node):
    def __init__(self, left: _Node, right: _Node) -> None:
        self.left = left
        self.right = right

    def eval(self, value: Any) -> Any:
        try:
            result = self.left.eval(value)
        except FieldNotFound:
            result = None
        if is_truthy(result):
            return result
        return self.right.eval(value)


class _BoolOp(_Node):
    def __init__(self, op: str, left: _Node, right: _Node) -> None:
        self.op = op
        self.left = left
        self.right = right

    def eval(self, value: Any) -> Any:
        left = is_truthy(self.left.eval(value))
        if self.op == "and":
            return left and is_truthy(self.right.eval(value))
        return left or is_truthy(self.right.eval(value))


class _Compare(_Node):
    def __init__(self, op: str, left: _Node, right: _Node) -> None:
        self.op = op
        self.left = left
        self.right = right

    def eval(self, value: Any) -> Any:
        left = self.left.eval(value)
        right = self.right.eval(value)
        match self.op:
            case "==":
                return _sort_key(left) == _sort_key(right)
            case "!=":
                return _sort_key(left) != _sort_key(right)
            case "<":
                return _sort_key(left) < _sort_key(right)
            case "<=":
                return _sort_key(left) <= _sort_key(right)
            case ">":
                return _sort_key(left) > _sort_key(right)
            case _:
                return _sort_key(left) >= _sort_key(right)


class _Arith(_Node):
    def __init__(self, op: str, left: _Node, right: _Node) -> None:
        self.op = op
        self.left = left
        self.right = right

    def eval(self, value: Any) -> Any:
        left = self.left.eval(value)
        right = self.right.eval(value)
        if self.op == "+":
            return _add(left, right)
        return _subtract(left, right)


def _add(left: Any, right: Any) -> Any:
    if left is None:
        return right
    if right is None:
        return left
    if _is_number(left) and _is_number(right):
        return left + right
    if isinstance(left, str) and isinstance(right, str):
        return left + right
    if isinstance(left, list) and isinstance(right, list):
        return left + right
    if isinstance(left, dict) and isinstance(right, dict):
        return {**left, **right}
    raise TemplateError(
        f"{_type_name(left)} and {_type_name(right)} cannot be added"
    )


def _subtract(left: Any, right: Any) -> Any:
    if _is_number(left) and _is_number(right):
        return left - right
    if isinstance(left, list) and isinstance(right, list):
        return [item for item in left if item not in right]
    raise TemplateError(
        f"{_type_name(left)} and {_type_name(right)} cannot be subtracted"
    )


class _ObjectCons(_Node):
    def __init__(self, entries: list[tuple[_Node, _Node]]) -> None:
        self.entries = entries

    def eval(self, value: Any) -> Any:
        result: dict[str, Any] = {}
        for key_node, value_node in self.entries:
            key = key_node.eval(value)
            if not isinstance(key, str):
                raise TemplateError(
                    f"object keys must be strings, got {_type_name(key)}"
                )
            result[key] = value_node.eval(value)
        return result


class _ArrayCons(_Node):
    def __init__(self, items: list[_Node]) -> None:
        self.items = items

    def eval(self, value: Any) -> Any:
        return [item.eval(value) for item in self.items]


class _Call(_Node):
    def __init__(self, name: str) -> None:
        self.name = name

    def eval(self, value: Any) -> Any:
        match self.name:
            case "not":
                return not is_truthy(value)
            case "length":
                if value is None:
                    return 0
                if _is_number(value):
                    return abs(value)
                if isinstance(value, (str, list, dict)):
                    return len(value)
                raise TemplateError(f"{_type_name(value)} has no length")
            case "keys":
                if isinstance(value, dict):
                    return sorted(value)
                if isinstance(value, list):
                    return list(range(len(value)))
                raise TemplateError(f"{_type_name(value)} has no keys")
            case "tostring":
                return value if isinstance(value, str) else to_json(value)
            case "tojson":
                return to_json(value)
            case _:
                if not isinstance(value, str):
                    raise TemplateError(
                        f"fromjson expects a string, got {_type_name(value)}"
                    )
                try:
                    return json.loads(value)
                except json.JSONDecodeError as exc:
                    raise TemplateError(
                        f"fromjson: invalid JSON text: {exc}"
                    ) from exc

    def describe(self) -> str:
        return self.name


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.pos]

    def _peek(self, offset: int = 1) -> _Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> _Token:
        token = self.tokens[self.pos]
        if token.kind != "EOF":
            self.pos += 1
        return token

    def _at(self, value: str) -> bool:
        token = self.current
        return token.kind in ("OP", "PUNCT") and token.value == value

    def _at_keyword(self, word: str) -> bool:
        return self.current.kind == "IDENT" and self.current.value == word

    def _expect(self, value: str) -> _Token:
        if not self._at(value):
            raise self._error(f"expected {value!r}")
        return self._advance()

    def _error(self, message: str) -> QuerySyntaxError:
        token = self.current
        found = "end of input" if token.kind == "EOF" else repr(token.value)
        return QuerySyntaxError(
            f"{message}, found {found}", self.text, token.pos
        )

    def parse(self) -> _Node:
        if self.current.kind == "EOF":
            raise self._error("empty query")
        node = self._pipe()
        if self.current.kind != "EOF":
            raise self._error("unexpected token")
        return node

    def _pipe(self) -> _Node:
        node = self._alternative()
        while self._at("|"):
            self._advance()
            node = _Pipe(node, self._alternative())
        return node

    def _alternative(self) -> _Node:
        node = self._or()
        while self._at("//"):
            self._advance()
            node = _Alternative(node, self._or())
        return node

    def _or(self) -> _Node:
        node = self._and()
        while self._at_keyword("or"):
            self._advance()
            node = _BoolOp("or", node, self._and())
        return node

    def _and(self) -> _Node:
        node = self._comparison()
        while self._at_keyword("and"):
            self._advance()
            node = _BoolOp("and", node, self._comparison())
        return node

    def _comparison(self) -> _Node:
        node = self._additive()
        if self.current.kind == "OP" and self.current.value in _COMPARISONS:
            op = self._advance().value
            node = _Compare(op, node, self._additive())
        return node

    def _additive(self) -> _Node:
        node = self._postfix()
        while self._at("+") or self._at("-"):
            op = self._advance().value
            node = _Arith(op, node, self._postfix())
        return node

    def _postfix(self) -> _Node:
        node = self._term()
        while True:
            token = self.current
            if token.kind == "FIELD":
                self._advance()
                node = _Field(node, token.value[1:])
            elif self._at(".") and self._peek().kind == "STRING":
                self._advance()
                node = _Field(node, self._string(self._advance()))
            elif self._at(".") and self._peek().value == "[":
                self._advance()
                node = self._index(node)
            elif self._at("["):
                node = self._index(node)
            elif self._at("?"):
                self._advance()
                node = _Try(node)
            else:
                return node

    def _index(self, target: _Node) -> _Node:
        self._expect("[")
        if self._at("]"):
            raise self._error("iteration '.[]' is not supported")
        index = self._pipe()
        self._expect("]")
        return _Index(target, index)

    def _term(self) -> _Node:
        token = self.current
        if token.kind == "FIELD":
            self._advance()
            return _Field(_Identity(), token.value[1:])
        if self._at("."):
            self._advance()
            if self.current.kind == "STRING":
                return _Field(_Identity(), self._string(self._advance()))
            return _Identity()
        if token.kind == "STRING":
            return _Literal(self._string(self._advance()))
        if token.kind == "NUMBER":
            return _Literal(self._number(self._advance()))
        if self._at("-") and self._peek().kind == "NUMBER":
            self._advance()
            return _Literal(-self._number(self._advance()))
        if token.kind == "IDENT":
            return self._keyword()
        if self._at("("):
            self._advance()
            node = self._pipe()
            self._expect(")")
            return node
        if self._at("{"):
            return self._object()
        if self._at("["):
            return self._array()
        raise self._error("unexpected token")

    def _keyword(self) -> _Node:
        word = self._advance().value
        match word:
            case "true":
                return _Literal(True)
            case "false":
                return _Literal(False)
            case "null":
                return _Literal(None)
            case name if name in _BUILTINS:
                return _Call(name)
        self.pos -= 1
        raise self._error(f"unknown function {word!r}")

    def _object(self) -> _Node:
        self._expect("{")
        entries: list[tuple[_Node, _Node]] = []
        while not self._at("}"):
            token = self.current
            key: _Node
            shorthand: _Node | None = None
            if token.kind == "IDENT":
                name = self._advance().value
                key = _Literal(name)
                shorthand = _Field(_Identity(), name)
            elif token.kind == "STRING":
                name = self._string(self._advance())
                key = _Literal(name)
                shorthand = _Field(_Identity(), name)
            elif self._at("("):
                self._advance()
                key = self._pipe()
                self._expect(")")
            else:
                raise self._error("expected object key")

            if self._at(":"):
                self._advance()
                value = self._alternative()
            elif shorthand is not None:
                value = shorthand
            else:
                raise self._error("expected ':'")
            entries.append((key, value))

            if not self._at(","):
                break
            self._advance()
        self._expect("}")
        return _ObjectCons(entries)

    def _array(self) -> _Node:
        self._expect("[")
        items: list[_Node] = []
        while not self._at("]"):
            items.append(self._pipe())
            if not self._at(","):
                break
            self._advance()
        self._expect("]")
        return _ArrayCons(items)

    def _string(self, token: _Token) -> str:
        try:
            return json.loads(token.value)
        except json.JSONDecodeError:
            raise QuerySyntaxError(
                "invalid string literal", self.text, token.pos
            ) from None

    @staticmethod
    def _number(token: _Token) -> int | float:
        if any(ch in token.value for ch in ".eE"):
            return float(token.value)
        return int(token.value)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Query:
    """A parsed query, ready to be evaluated against any number of contexts.

    Args:
        text: The query source.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self._root = _Parser(text).parse()

    def evaluate(self, context: Any) -> Any:
        """Evaluate the query against *context* and return the JSON value.

        Raises:
            FieldNotFound: A referenced path does not exist.
            TemplateError: The query is ill-typed for the given context.
        """
        return self._root.eval(context)

    def __repr__(self) -> str:
        return f"Query({self.text!r})"


@lru_cache(maxsize=512)
def compile_query(text: str) -> Query:
    """Parse *text* into a ``Query`` (cached per distinct text)."""
    return Query(text)


def evaluate(expr: str | Query, context: Any) -> Any:
    """Evaluate a query expression against a JSON-like *context*.

    Args:
        expr: Query text or an already compiled ``Query``.
        context: The evaluation context (dicts, lists and scalars).

    Returns:
        The resulting JSON value.
    """
    query = expr if isinstance(expr, Query) else compile_query(expr)
    return query.evaluate(context)
