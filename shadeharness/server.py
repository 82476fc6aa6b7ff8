"""Shared local content server for the viewer and the effects tree.

One HTTP listener on ``127.0.0.1`` serves two independent roots:

- ``/effects/<path>`` from the effects directory
- everything else from the viewer root (``/`` maps to ``index.html``)

The listener is reference counted: the first ``acquire`` binds it, the
matching last ``release`` shuts it down. Sessions share it through a
``ContentServerManager``, usually the process default returned by
``get_server_manager()``.

Usage:
    manager = get_server_manager()
    url = await manager.acquire(4173, viewer_root, effects_dir)
    try:
        ...
    finally:
        await manager.release()
"""
import asyncio
import logging
import os
import socket
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from .effects import is_flat_layout
from .errors import ForbiddenPathError, HarnessTimeoutError, PortConflictError

logger = logging.getLogger(__name__)

HOST = "127.0.0.1"
DEFAULT_PORT = 4173
EFFECTS_PREFIX = "/effects/"

# Seconds to wait for uvicorn to report startup on an already bound socket
STARTUP_TIMEOUT = 10.0

MIME_TYPES: dict[str, str] = {
    ".html": "text/html",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".json": "application/json",
    ".css": "text/css",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".wasm": "application/wasm",
    ".glsl": "text/plain",
    ".wgsl": "text/plain",
    ".frag": "text/plain",
    ".vert": "text/plain",
}

DEFAULT_MIME_TYPE = "application/octet-stream"

RESPONSE_HEADERS = {
    "Cache-Control": "no-store",
    "Access-Control-Allow-Origin": "*",
}


def get_mime_type(path: Path) -> str:
    return MIME_TYPES.get(path.suffix.lower(), DEFAULT_MIME_TYPE)


def safe_join(root: Path, rel_path: str) -> Path:
    """Resolve ``rel_path`` against ``root`` without leaving it.

    Raises:
        ForbiddenPathError: If the normalized path is outside of ``root``
    """
    root_str = os.path.normpath(os.path.abspath(root))
    resolved = os.path.normpath(os.path.join(root_str, rel_path))
    try:
        inside = os.path.commonpath([root_str, resolved]) == root_str
    except ValueError:
        inside = False
    if not inside:
        raise ForbiddenPathError(f"Path escapes served root: {rel_path}")
    return Path(resolved)


def resolve_request_path(
    path: str,
    viewer_root: Path,
    effects_dir: Path,
    flat_effect_name: Optional[str] = None,
) -> Path:
    """Map a decoded request path to a file below one of the served roots.

    Args:
        path: URL path, e.g. ``/effects/synth/noise/definition.json``
        viewer_root: Root of the viewer application
        effects_dir: Root of the effects tree
        flat_effect_name: Basename of ``effects_dir`` when it is a flat
            (single effect) layout. ``/effects/<name>/x`` then maps to
            ``effects_dir/x`` as well as ``/effects/x``.

    Raises:
        ForbiddenPathError: If the path escapes its root
    """
    if path.startswith(EFFECTS_PREFIX):
        rel_path = path[len(EFFECTS_PREFIX):]
        if flat_effect_name and rel_path.startswith(flat_effect_name + "/"):
            rel_path = rel_path[len(flat_effect_name) + 1:]
        return safe_join(effects_dir, rel_path)

    rel_path = "index.html" if path == "/" else path[1:]
    return safe_join(viewer_root, rel_path)


def create_content_app(viewer_root: Path, effects_dir: Path) -> FastAPI:
    """Create the ASGI app serving the viewer root and the effects tree."""
    viewer_root = Path(viewer_root)
    effects_dir = Path(effects_dir)
    flat_effect_name = effects_dir.name if is_flat_layout(effects_dir) else None
    if flat_effect_name:
        logger.debug(f"Effects dir {effects_dir} is a flat layout ({flat_effect_name})")

    # The viewer owns every path, so no docs/openapi routes
    app = FastAPI(
        title="shade-harness content server",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/{request_path:path}")
    async def serve_file(request: Request, request_path: str) -> Response:
        path = request.scope["path"]
        try:
            file_path = resolve_request_path(path, viewer_root, effects_dir, flat_effect_name)
        except ForbiddenPathError:
            logger.warning(f"Refused path outside served roots: {path}")
            return PlainTextResponse("Forbidden", status_code=403)

        try:
            if not file_path.is_file():
                return PlainTextResponse("Not Found", status_code=404)
            if not os.access(file_path, os.R_OK):
                raise PermissionError(f"Not readable: {file_path}")
        except OSError as e:
            logger.error(f"Failed to read {file_path}: {e}")
            return PlainTextResponse("Internal Server Error", status_code=500)

        return FileResponse(
            file_path,
            media_type=get_mime_type(file_path),
            headers=RESPONSE_HEADERS,
        )

    return app


class ContentServerManager:
    """Reference counted owner of the shared content server.

    All mutation happens on the asyncio loop; the lock keeps a second
    ``acquire`` from binding while the first bind is still in flight.
    """

    def __init__(self, host: str = HOST):
        self.host = host
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None
        self._ref_count = 0
        self._active_port = DEFAULT_PORT
        self._lock = asyncio.Lock()

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def active_port(self) -> int:
        return self._active_port

    @property
    def server_url(self) -> str:
        return f"http://{self.host}:{self._active_port}"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def get_server_url(self) -> str:
        return self.server_url

    def get_ref_count(self) -> int:
        return self._ref_count

    async def acquire(self, port: int, viewer_root: Path, effects_dir: Path) -> str:
        """Start the server or join the running one.

        Returns:
            Base URL of the server, e.g. ``http://127.0.0.1:4173``

        Raises:
            PortConflictError: If the server is active on a different port
            OSError: If the listener cannot be bound
        """
        async with self._lock:
            if self._ref_count > 0:
                if port != self._active_port:
                    raise PortConflictError(self._active_port, port)
                self._ref_count += 1
                logger.debug(f"Content server joined, ref_count={self._ref_count}")
                return self.server_url

            await self._start(port, Path(viewer_root), Path(effects_dir))
            self._ref_count = 1
            return self.server_url

    async def release(self) -> None:
        """Drop one reference; the last one shuts the server down."""
        async with self._lock:
            if self._ref_count <= 0:
                return
            self._ref_count -= 1
            logger.debug(f"Content server released, ref_count={self._ref_count}")
            if self._ref_count == 0:
                await self._stop()

    async def _start(self, port: int, viewer_root: Path, effects_dir: Path) -> None:
        app = create_content_app(viewer_root, effects_dir)

        # Bind ourselves so bind failures surface as OSError to the caller
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
        except OSError:
            sock.close()
            raise

        config = uvicorn.Config(
            app,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not server.started:
            if task.done():
                sock.close()
                # Re-raise the startup failure, if any
                task.result()
                raise RuntimeError(f"Content server on port {port} exited during startup")
            if loop.time() > deadline:
                server.should_exit = True
                await task
                raise HarnessTimeoutError(f"Content server on port {port} did not start")
            await asyncio.sleep(0.01)

        self._server = server
        self._task = task
        self._active_port = port
        logger.info(f"Content server listening on {self.server_url} (viewer={viewer_root}, effects={effects_dir})")

    async def _stop(self) -> None:
        server, task = self._server, self._task
        self._server = None
        self._task = None
        if server is None:
            return
        server.should_exit = True
        if task is not None:
            await task
        logger.info(f"Content server on port {self._active_port} stopped")


_default_manager: Optional[ContentServerManager] = None


def get_server_manager() -> ContentServerManager:
    """Get the process-wide content server manager, creating it on first use."""
    global _default_manager
    if _default_manager is None:
        _default_manager = ContentServerManager()
    return _default_manager


__all__ = [
    "MIME_TYPES",
    "ContentServerManager",
    "create_content_app",
    "get_server_manager",
    "resolve_request_path",
    "safe_join",
]
