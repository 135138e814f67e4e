"""HTTP streaming endpoint for torrent files.

Serves ``GET /stream?torrent=<info hash>&file=<index>`` with range support
so media players can seek while the file is still downloading.
"""

from __future__ import annotations

import logging
import urllib.parse
from pathlib import Path
from typing import Callable

from aiohttp import web

logger = logging.getLogger(__name__)

STREAM_PATH = "/stream"

FileResolver = Callable[[str, int], "Path | None"]


def build_stream_url(host: str, port: int, torrent_id: str, file_index: int) -> str:
    """Return the URL serving ``file_index`` of ``torrent_id``."""
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    query = urllib.parse.urlencode({"file": file_index, "torrent": torrent_id})
    return f"http://{host}:{port}{STREAM_PATH}?{query}"


class StreamServer:
    """aiohttp server handing out task files."""

    def __init__(self, resolve_file: FileResolver) -> None:
        """Initialize server.

        Args:
            resolve_file: Maps (torrent id, file index) to a path on disk,
                or None when the torrent or file is unknown

        """
        self.resolve_file = resolve_file
        self.app = web.Application()
        self.app.router.add_get(STREAM_PATH, self._handle_stream)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self.host: str | None = None
        self.port: int | None = None

    @property
    def is_running(self) -> bool:
        return self.site is not None

    async def start(self, host: str, port: int) -> None:
        """Bind and start serving."""
        if self.site is not None:
            return
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host, port)
        try:
            await self.site.start()
        except OSError:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            raise
        self.host, self.port = host, port
        logger.info("Streaming server listening on %s:%d", host, port)

    async def stop(self) -> None:
        """Stop serving and release the socket."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        was_running = self.site is not None
        self.site = None
        self.runner = None
        if was_running:
            logger.info("Streaming server stopped")

    def build_url(self, host: str, port: int, torrent_id: str, file_index: int) -> str:
        return build_stream_url(host, port, torrent_id, file_index)

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        torrent_id = request.query.get("torrent", "").strip().lower()
        raw_index = request.query.get("file", "")
        if not torrent_id or not raw_index.isdigit():
            raise web.HTTPBadRequest(text="torrent and file parameters are required")

        path = self.resolve_file(torrent_id, int(raw_index))
        if path is None or not path.is_file():
            raise web.HTTPNotFound(text="Unknown torrent or file")

        logger.debug("Streaming %s (file %s of %s)", path, raw_index, torrent_id)
        return web.FileResponse(path)
