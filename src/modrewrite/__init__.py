"""modrewrite - mod_rewrite style request rewriting, redirects and proxying."""

from modrewrite.errors import (
    ClientDisconnectedError,
    CompileError,
    MalformedURLError,
    RewriteError,
    UpstreamTransportError,
)
from modrewrite.rewrite import (
    Action,
    DispatchResult,
    RequestContext,
    RewriteEngine,
    RewriteRule,
    RuleSet,
    compile_rules,
    parse_rule,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Rules and dispatch
    "Action",
    "DispatchResult",
    "RequestContext",
    "RewriteEngine",
    "RewriteRule",
    "RuleSet",
    "compile_rules",
    "parse_rule",
    # Errors
    "RewriteError",
    "CompileError",
    "MalformedURLError",
    "UpstreamTransportError",
    "ClientDisconnectedError",
]
