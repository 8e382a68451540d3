"""aiohttp pipeline around the rewrite engine.

Every request goes through the rewrite stage first. Depending on the
dispatch outcome it is answered there (403, 410, redirect), proxied to an
upstream, or handed on to the next stage with its rewritten URL:

    request -> error_middleware -> rewrite stage -> next stage
                                        |
                                        +-> ProxyForwarder

Next stages:
- upstream_stage: pass the rewritten request through to a fixed origin
- static_stage: serve files from a directory
- not_found_stage: answer 404
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path

import structlog
from aiohttp import web

from modrewrite.core.config import RewriteConfig
from modrewrite.errors import ClientDisconnectedError, MalformedURLError, UpstreamTransportError
from modrewrite.observability.metrics import DISPATCH_OUTCOMES, generate_metrics, get_content_type
from modrewrite.rewrite.engine import Action, RequestContext, RewriteEngine
from modrewrite.rewrite.rules import compile_rules, parse_rule
from modrewrite.server.proxy import ProxyForwarder

logger = structlog.get_logger()

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]
# Next stages also receive the response headers set by the rules (T flag)
NextStage = Callable[[web.Request, Mapping[str, str]], Awaitable[web.StreamResponse]]

ENGINE_KEY = web.AppKey("engine", RewriteEngine)
FORWARDER_KEY = web.AppKey("forwarder", ProxyForwarder)


def request_context(request: web.Request) -> RequestContext:
    """Build the dispatcher's view of an aiohttp request."""
    transport = request.transport
    encrypted = transport is not None and transport.get_extra_info("sslcontext") is not None
    return RequestContext(
        url=request.raw_path,
        method=request.method,
        headers=request.headers,
        encrypted=encrypted,
    )


def create_rewrite_handler(
    engine: RewriteEngine,
    forwarder: ProxyForwarder,
    next_stage: NextStage,
) -> Handler:
    """Create the rewrite stage.

    Args:
        engine: Compiled rules.
        forwarder: Used for rules with the P flag.
        next_stage: Receives requests whose dispatch outcome is CONTINUE,
            along with the response headers the rules set.

    Returns:
        An aiohttp request handler.
    """

    async def handle(request: web.Request) -> web.StreamResponse:
        result = engine.dispatch(request_context(request))
        DISPATCH_OUTCOMES.labels(action=result.action.value).inc()

        if result.action is Action.TERMINAL:
            return web.Response(status=result.status or 200, headers=result.headers)

        if result.action is Action.PROXIED:
            assert result.rule is not None
            return await forwarder.forward(
                result.rule, request, url=result.url, headers=result.headers
            )

        if result.url != request.raw_path:
            request = request.clone(rel_url=result.url)

        response = await next_stage(request, result.headers)
        content_type = result.headers.get("Content-Type")
        if content_type and not response.prepared:
            response.headers["Content-Type"] = content_type
        return response

    return handle


async def not_found_stage(
    request: web.Request, headers: Mapping[str, str]
) -> web.StreamResponse:
    raise web.HTTPNotFound()


def static_stage(root: str | Path) -> NextStage:
    """Serve files below ``root`` for the request path."""
    base = Path(root).resolve()

    async def handle(request: web.Request, headers: Mapping[str, str]) -> web.StreamResponse:
        if request.method not in ("GET", "HEAD"):
            raise web.HTTPMethodNotAllowed(request.method, ["GET", "HEAD"])
        candidate = (base / request.path.lstrip("/")).resolve()
        if not candidate.is_relative_to(base):
            raise web.HTTPForbidden()
        if candidate.is_dir():
            candidate = candidate / "index.html"
        if not candidate.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(candidate)

    return handle


def upstream_stage(forwarder: ProxyForwarder, base_url: str) -> NextStage:
    """Pass requests through to ``base_url`` with their (rewritten) path.

    Headers set by the rules are sent as defaults the upstream can override.
    """
    rule = parse_rule(f"^(.*)$ {base_url.rstrip('/')}$1")

    async def handle(request: web.Request, headers: Mapping[str, str]) -> web.StreamResponse:
        return await forwarder.forward(rule, request, headers=headers)

    return handle


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Pipeline error channel for failures the rewrite stage does not handle."""
    try:
        return await handler(request)
    except UpstreamTransportError as e:
        logger.error("Proxy upstream error", path=request.path, target=e.target, error=str(e))
        if e.streaming:
            raise
        return web.Response(text="Bad Gateway", status=502, content_type="text/plain")
    except MalformedURLError as e:
        logger.error("Rewrite produced malformed URL", path=request.path, url=e.url)
        return web.Response(text="Internal Server Error", status=500, content_type="text/plain")
    except ClientDisconnectedError:
        logger.info("Client disconnected", path=request.path)
        raise


async def _handle_metrics(request: web.Request) -> web.Response:
    return web.Response(body=generate_metrics(), headers={"Content-Type": get_content_type()})


def select_next_stage(config: RewriteConfig, forwarder: ProxyForwarder) -> NextStage:
    if config.upstream:
        return upstream_stage(forwarder, config.upstream)
    if config.static_root:
        return static_stage(config.static_root)
    return not_found_stage


def create_app(config: RewriteConfig) -> web.Application:
    """Build the aiohttp application for ``config``.

    Raises:
        CompileError: If a configured rule does not compile.
    """
    engine = RewriteEngine(compile_rules(config.rules))
    forwarder = ProxyForwarder(
        via=config.via,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
        chunk_size=config.chunk_size,
    )

    app = web.Application(middlewares=[error_middleware])
    app[ENGINE_KEY] = engine
    app[FORWARDER_KEY] = forwarder

    async def close_forwarder(app: web.Application) -> None:
        await app[FORWARDER_KEY].close()

    app.on_cleanup.append(close_forwarder)

    if config.metrics_path:
        app.router.add_get(config.metrics_path, _handle_metrics)

    handler = create_rewrite_handler(engine, forwarder, select_next_stage(config, forwarder))
    app.router.add_route("*", "/{path:.*}", handler)

    logger.info(
        "Rewrite pipeline ready",
        rules=len(engine.rules),
        upstream=config.upstream,
        static_root=config.static_root,
    )
    return app
