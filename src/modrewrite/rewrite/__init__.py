"""modrewrite rule compiler and dispatcher.

Features:
- mod_rewrite rule lines: [!]<pattern> <replacement> [FLAGS]
- Flags: NC, L, P, R[=code], F, G, T=<mime>, H=<host pattern>, QSA
- Forward chaining: each rule sees the URL left by the rules before it
- Query-string pass-through, replacement and QSA merging

Usage:
    from modrewrite.rewrite import Action, RewriteEngine, create_request_context

    engine = RewriteEngine.from_lines([
        r"^/old$ /new [R=302]",
        r"^/api/(.*)$ http://api.internal/$1 [P]",
    ])

    result = engine.dispatch(create_request_context("/old", host="example.com"))
    assert result.action is Action.TERMINAL
    assert result.headers["Location"] == "http://example.com/new"
"""

from modrewrite.rewrite.engine import (
    Action,
    DispatchResult,
    RequestContext,
    RewriteEngine,
    Step,
    create_request_context,
)
from modrewrite.rewrite.query import merge_query, parse_query, split_url
from modrewrite.rewrite.rules import (
    RewriteRule,
    RuleSet,
    compile_rules,
    expand_template,
    parse_rule,
)

__all__ = [
    # Engine
    "RewriteEngine",
    "RequestContext",
    "DispatchResult",
    "Action",
    "Step",
    "create_request_context",
    # Rules
    "RewriteRule",
    "RuleSet",
    "parse_rule",
    "compile_rules",
    "expand_template",
    # Query strings
    "merge_query",
    "parse_query",
    "split_url",
]
