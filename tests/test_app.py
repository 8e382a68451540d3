"""Tests for the aiohttp rewrite pipeline."""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from modrewrite.core.config import RewriteConfig
from modrewrite.rewrite.engine import RewriteEngine
from modrewrite.server.app import (
    ENGINE_KEY,
    FORWARDER_KEY,
    create_app,
    create_rewrite_handler,
    error_middleware,
)
from modrewrite.server.proxy import ProxyForwarder


@asynccontextmanager
async def app_client(**settings):
    config = RewriteConfig(**settings)
    async with TestClient(TestServer(create_app(config))) as client:
        yield client


async def echo_stage(request: web.Request, headers) -> web.Response:
    return web.Response(text=request.path_qs)


@asynccontextmanager
async def handler_client(rules):
    """Rewrite stage in front of a stage that echoes the URL it was given."""
    engine = RewriteEngine.from_lines(rules)
    forwarder = ProxyForwarder(via="1.1 test-proxy")
    app = web.Application(middlewares=[error_middleware])
    app.router.add_route("*", "/{path:.*}", create_rewrite_handler(engine, forwarder, echo_stage))
    try:
        async with TestClient(TestServer(app)) as client:
            yield client
    finally:
        await forwarder.close()


class TestCreateApp:
    """Tests for application assembly."""

    def test_keys_populated(self):
        app = create_app(RewriteConfig(rules=["^/a /b"]))

        assert len(app[ENGINE_KEY].rules) == 1
        assert isinstance(app[FORWARDER_KEY], ProxyForwarder)

    def test_forwarder_settings(self):
        app = create_app(RewriteConfig(via="1.1 edge", read_timeout=3.0, chunk_size=1024))
        forwarder = app[FORWARDER_KEY]

        assert forwarder.via == "1.1 edge"
        assert forwarder.read_timeout == 3.0
        assert forwarder.chunk_size == 1024

    def test_bad_rule_fails_at_startup(self):
        with pytest.raises(ValueError):
            create_app(RewriteConfig(rules=["^/(bad /x"]))


class TestTerminalResponses:
    """Tests for responses finished by the rewrite stage."""

    @pytest.mark.asyncio
    async def test_forbidden(self):
        async with app_client(rules=["^/admin - [F]"]) as client:
            resp = await client.get("/admin/users")
        assert resp.status == 403

    @pytest.mark.asyncio
    async def test_gone(self):
        async with app_client(rules=["^/old - [G]"]) as client:
            resp = await client.get("/old")
        assert resp.status == 410

    @pytest.mark.asyncio
    async def test_forbidden_with_content_type(self):
        async with app_client(rules=["^/admin - [F,T=application/json]"]) as client:
            resp = await client.get("/admin")

        assert resp.status == 403
        assert resp.headers["Content-Type"] == "application/json"

    @pytest.mark.asyncio
    async def test_redirect(self):
        async with app_client(rules=["^/old$ /new [R=302]"]) as client:
            resp = await client.get("/old?a=1", allow_redirects=False)

        assert resp.status == 302
        assert resp.headers["Location"].startswith("http://")
        assert resp.headers["Location"].endswith("/new?a=1")

    @pytest.mark.asyncio
    async def test_relative_redirect(self):
        async with app_client(rules=["^/old$ /new [R]"]) as client:
            resp = await client.get(
                "/old", headers={"X-Use-Relative-Redirects": "1"}, allow_redirects=False
            )

        assert resp.status == 301
        assert resp.headers["Location"] == "/new"

    @pytest.mark.asyncio
    async def test_forwarded_proto_redirect(self):
        async with app_client(rules=["^/old$ /new [R]"]) as client:
            resp = await client.get(
                "/old", headers={"X-Forwarded-Proto": "https"}, allow_redirects=False
            )

        assert resp.headers["Location"].startswith("https://")


class TestContinue:
    """Tests for requests handed to the next stage."""

    @pytest.mark.asyncio
    async def test_unchanged_url(self):
        async with handler_client([]) as client:
            resp = await client.get("/plain?x=1")
            text = await resp.text()

        assert text == "/plain?x=1"

    @pytest.mark.asyncio
    async def test_rewritten_url(self):
        async with handler_client(["^/pages/(.+)$ /page.php?page=$1 [QSA]"]) as client:
            resp = await client.get("/pages/123?one=two")
            text = await resp.text()

        assert text == "/page.php?page=123&one=two"

    @pytest.mark.asyncio
    async def test_content_type_applied(self):
        async with handler_client([r"\.md$ - [T=text/markdown]"]) as client:
            resp = await client.get("/readme.md")

        assert resp.status == 200
        assert resp.headers["Content-Type"] == "text/markdown"

    @pytest.mark.asyncio
    async def test_no_next_stage_is_not_found(self):
        async with app_client(rules=["^/a$ /b"]) as client:
            resp = await client.get("/a")
        assert resp.status == 404


class TestStaticStage:
    """Tests for serving files after rewriting."""

    @pytest.mark.asyncio
    async def test_rewritten_path_served(self, tmp_path):
        (tmp_path / "page.html").write_text("<h1>page</h1>")

        async with app_client(rules=["^/pretty$ /page.html"], static_root=str(tmp_path)) as client:
            resp = await client.get("/pretty")
            text = await resp.text()

        assert resp.status == 200
        assert text == "<h1>page</h1>"

    @pytest.mark.asyncio
    async def test_index_fallback(self, tmp_path):
        (tmp_path / "index.html").write_text("home")

        async with app_client(static_root=str(tmp_path)) as client:
            resp = await client.get("/")
            text = await resp.text()

        assert text == "home"

    @pytest.mark.asyncio
    async def test_single_page_app_fallback(self, tmp_path):
        """Test an inverted rule sends every non-asset path to the app shell."""
        (tmp_path / "index.html").write_text("shell")
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "app.js").write_text("js")

        rules = ["!^/assets/ /index.html"]
        async with app_client(rules=rules, static_root=str(tmp_path)) as client:
            page = await client.get("/dashboard/settings")
            page_text = await page.text()
            asset = await client.get("/assets/app.js")
            asset_text = await asset.text()

        assert page_text == "shell"
        assert asset_text == "js"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        async with app_client(static_root=str(tmp_path)) as client:
            resp = await client.get("/missing.txt")
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_method_not_allowed(self, tmp_path):
        async with app_client(static_root=str(tmp_path)) as client:
            resp = await client.post("/index.html", data=b"x")
        assert resp.status == 405


class TestUpstreamStage:
    """Tests for passing rewritten requests to a fixed origin."""

    @pytest.mark.asyncio
    async def test_rewritten_request_passed_through(self):
        async def echo(request: web.Request) -> web.Response:
            return web.json_response({"path": request.path_qs, "via": request.headers.get("Via")})

        upstream_app = web.Application()
        upstream_app.router.add_route("*", "/{tail:.*}", echo)
        server = TestServer(upstream_app)
        await server.start_server()
        try:
            upstream = f"http://{server.host}:{server.port}"
            async with app_client(
                rules=["^/old$ /new"], upstream=upstream, via="1.1 test-proxy"
            ) as client:
                resp = await client.get("/old?x=1")
                data = await resp.json()
        finally:
            await server.close()

        assert data["path"] == "/new?x=1"
        assert data["via"] == "1.1 test-proxy"

    @pytest.mark.asyncio
    async def test_content_type_default_for_upstream(self):
        """Test a T rule fills in Content-Type when the upstream sends none."""

        async def empty(request: web.Request) -> web.Response:
            return web.Response(status=200)

        async def typed(request: web.Request) -> web.Response:
            return web.json_response({"ok": True})

        upstream_app = web.Application()
        upstream_app.router.add_get("/empty", empty)
        upstream_app.router.add_get("/typed", typed)
        server = TestServer(upstream_app)
        await server.start_server()
        try:
            upstream = f"http://{server.host}:{server.port}"
            rules = ["^/(empty|typed)$ - [T=text/markdown]"]
            async with app_client(rules=rules, upstream=upstream) as client:
                empty_resp = await client.get("/empty")
                typed_resp = await client.get("/typed")
        finally:
            await server.close()

        assert empty_resp.status == 200
        assert empty_resp.headers["Content-Type"] == "text/markdown"
        assert typed_resp.headers["Content-Type"].startswith("application/json")


class TestMetricsRoute:
    @pytest.mark.asyncio
    async def test_metrics_exposed(self):
        async with app_client(rules=["^/old - [G]"], metrics_path="/_metrics") as client:
            await client.get("/old")
            resp = await client.get("/_metrics")
            text = await resp.text()

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert "modrewrite_dispatch_total" in text

    @pytest.mark.asyncio
    async def test_metrics_disabled_by_default(self):
        async with app_client() as client:
            resp = await client.get("/_metrics")
        assert resp.status == 404
