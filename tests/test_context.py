"""Tests for the evaluation context builder.

Covers:
- parse_json_object
- inflate_json_strings (recursion, idempotence, no aliasing)
- build_context from models and plain dicts
"""

import pytest

from http_reconciler.reconcile.models import Response
from http_reconciler.templating.context import (
    build_context,
    inflate_json_strings,
    parse_json_object,
)


class TestParseJsonObject:
    """Only JSON objects are parsed; everything else yields None."""

    def test_object(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    @pytest.mark.parametrize("text", ["[1, 2]", "42", '"str"', "not json", "", "null"])
    def test_non_objects(self, text):
        assert parse_json_object(text) is None

    def test_non_string_input(self):
        assert parse_json_object(None) is None


class TestInflate:
    """inflate_json_strings replaces JSON-object strings with structures."""

    def test_inflates_nested_strings(self):
        value = {"body": '{"id": "123", "inner": "{\\"x\\": 1}"}'}
        assert inflate_json_strings(value) == {"body": {"id": "123", "inner": {"x": 1}}}

    def test_walks_lists(self):
        assert inflate_json_strings(['{"a": 1}', "plain"]) == [{"a": 1}, "plain"]

    def test_leaves_arrays_as_text(self):
        assert inflate_json_strings({"body": "[1, 2]"}) == {"body": "[1, 2]"}

    def test_idempotent(self):
        value = {"a": '{"b": "{\\"c\\": 2}"}', "d": ["{}", 3, None]}
        once = inflate_json_strings(value)
        assert inflate_json_strings(once) == once

    def test_input_not_modified(self):
        value = {"body": '{"id": 1}'}
        inflate_json_strings(value)
        assert value == {"body": '{"id": 1}'}


class TestBuildContext:
    """build_context merges desired fields with the observed response."""

    def test_desired_at_top_level_response_nested(self, spec):
        observed = Response(status_code=201, body='{"id": "123"}')
        context = build_context(spec, observed)
        assert context["payload"]["baseUrl"] == "https://api.example.com/users"
        assert context["response"]["statusCode"] == 201
        assert context["response"]["body"] == {"id": "123"}

    def test_no_observation(self, spec):
        context = build_context(spec, None)
        assert context["response"] == {}

    def test_plain_dicts(self):
        desired = {"payload": {"body": '{"name": "x"}'}}
        context = build_context(desired, {"body": "plain"})
        assert context == {
            "payload": {"body": {"name": "x"}},
            "response": {"body": "plain"},
        }

    def test_caller_dict_not_aliased(self):
        desired = {"payload": {"body": {"name": "x"}}}
        context = build_context(desired, None)
        context["payload"]["body"]["name"] = "changed"
        assert desired["payload"]["body"]["name"] == "x"

    def test_response_key_overrides_desired(self):
        context = build_context({"response": "stale"}, {"statusCode": 200})
        assert context["response"] == {"statusCode": 200}
