"""HTTP endpoint exposing the sync session to UI and monitoring code."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiohttp import web

if TYPE_CHECKING:
    from roomsync.controller import SyncLoopController

logger = logging.getLogger(__name__)

DEFAULT_STATUS_PORT = 8929


class StatusServer:
    """Serves the controller's session state and a manual re-sync trigger.

    Routes:
        GET /status: session state as JSON.
        POST /sync: run one immediate tick.
        DELETE /errors: clear the session's error ring.
    """

    def __init__(
        self,
        controller: SyncLoopController,
        port: int = DEFAULT_STATUS_PORT,
        host: str = "127.0.0.1",
    ) -> None:
        """Initialize the status server.

        Args:
            controller: Controller whose session is exposed.
            port: Port to listen on.
            host: Interface to bind.
        """
        self._controller = controller
        self._port = port
        self._host = host
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        app = web.Application()
        app.router.add_get("/status", self._handle_status)
        app.router.add_post("/sync", self._handle_sync)
        app.router.add_delete("/errors", self._handle_clear_errors)
        return app

    async def start(self) -> None:
        """Start listening."""
        self._app = self.create_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        logger.info("Status server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        """Stop listening."""
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._app = None
        logger.debug("Status server stopped")

    async def _handle_status(self, request: web.Request) -> web.Response:
        session = self._controller.session
        if session is None:
            return web.json_response({"state": "stopped"})
        return web.json_response(session.to_dict())

    async def _handle_sync(self, request: web.Request) -> web.Response:
        ok = await self._controller.manual_sync()
        return web.json_response({"ok": ok})

    async def _handle_clear_errors(self, request: web.Request) -> web.Response:
        self._controller.clear_errors()
        return web.json_response({"ok": True})

    async def __aenter__(self) -> StatusServer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.stop()
