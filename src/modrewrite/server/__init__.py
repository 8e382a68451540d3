from modrewrite.server.app import (
    create_app,
    create_rewrite_handler,
    error_middleware,
    not_found_stage,
    static_stage,
    upstream_stage,
)
from modrewrite.server.proxy import ProxyForwarder, build_headers, build_target

__all__ = [
    "create_app",
    "create_rewrite_handler",
    "error_middleware",
    "not_found_stage",
    "static_stage",
    "upstream_stage",
    "ProxyForwarder",
    "build_headers",
    "build_target",
]
