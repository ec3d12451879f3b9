"""Request templating: query language, template compiler, context, merge.

Modules:

- ``query``    -- jq-like expression parser and evaluator.
- ``compiler`` -- ``TemplateCompiler``: pure and structured templates.
- ``context``  -- ``build_context`` and JSON-string inflation.
- ``merge``    -- overwrite-with-empty body merge.
"""

from .compiler import (
    TemplateCompiler,
    compile_template,
    render_template,
    render_value,
)
from .context import build_context, inflate_json_strings
from .merge import deep_merge, merge_bodies
from .query import Query, compile_query, evaluate, is_truthy, to_json

__all__ = [
    "Query",
    "TemplateCompiler",
    "build_context",
    "compile_query",
    "compile_template",
    "deep_merge",
    "evaluate",
    "inflate_json_strings",
    "is_truthy",
    "merge_bodies",
    "render_template",
    "render_value",
    "to_json",
]
