"""modrewrite server - aiohttp runner."""

import asyncio

import structlog
from aiohttp import web
from rich.console import Console

from modrewrite.core.config import RewriteConfig
from modrewrite.server.app import create_app

console = Console()
logger = structlog.get_logger()


async def run_server(config: RewriteConfig) -> None:
    """Run the rewrite server until cancelled."""
    logger.debug("Loaded configuration", **config.to_display_dict())
    app = create_app(config)
    runner = web.AppRunner(app)
    await runner.setup()

    try:
        site = web.TCPSite(runner, config.host, config.port)
        await site.start()
        logger.info("Rewrite server listening", bind=config.bind)
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
