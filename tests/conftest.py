"""
Pytest fixtures for shade-harness tests

Provides three levels of fixtures:
1. Pure functions (metrics, parity, effects): no fixtures needed
2. Content server: `free_port`, `viewer_root`, `effects_dir`, `server_manager`
3. Sessions without a browser: `fake_playwright` patches Playwright with mocks,
   `mock_session` stands in for a set up BrowserSession
"""

import socket
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shadeharness.config import DEFAULT_GLOBALS, Settings
from shadeharness.server import ContentServerManager


# =============================================================================
# Filesystem
# =============================================================================

@pytest.fixture
def free_port() -> int:
    """A TCP port on 127.0.0.1 that is currently unused."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def viewer_root(tmp_path: Path) -> Path:
    root = tmp_path / "viewer"
    root.mkdir()
    (root / "index.html").write_text("<h1>test</h1>")
    (root / "app.js").write_text("console.log('viewer');")
    (tmp_path / "secret.txt").write_text("do not serve")
    return root


@pytest.fixture
def effects_dir(tmp_path: Path) -> Path:
    """Nested effects tree with synth/noise and filter/blur."""
    root = tmp_path / "effects"
    for effect_id in ("synth/noise", "filter/blur"):
        effect_dir = root / effect_id
        (effect_dir / "glsl").mkdir(parents=True)
        (effect_dir / "definition.json").write_text(f'{{"name": "{effect_id}"}}')
        (effect_dir / "glsl" / "main.glsl").write_text("void main() {}")
    return root


@pytest.fixture
def flat_effect_dir(tmp_path: Path) -> Path:
    """A single effect used directly as effects directory."""
    root = tmp_path / "my-effect"
    (root / "glsl").mkdir(parents=True)
    (root / "definition.json").write_text('{"name": "my-effect"}')
    (root / "glsl" / "main.glsl").write_text("void main() {}")
    return root


@pytest.fixture
async def server_manager():
    """A private content server manager, shut down after the test."""
    manager = ContentServerManager()
    yield manager
    while manager.ref_count > 0:
        await manager.release()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(PROJECT_ROOT=tmp_path, BACKEND="webgl2", STATUS_TIMEOUT=2.0)


# =============================================================================
# Playwright stand-ins
# =============================================================================

@pytest.fixture
def fake_playwright():
    """Patch ``async_playwright`` with a mock browser graph.

    Yields a namespace-like MagicMock with ``playwright``, ``browser``,
    ``context`` and ``page`` attributes for assertions.
    """
    page = MagicMock(name="page")
    page.goto = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.evaluate = AsyncMock()
    page.close = AsyncMock()

    context = MagicMock(name="context")
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock(name="browser")
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()

    playwright = MagicMock(name="playwright")
    playwright.chromium.launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()

    factory = MagicMock(name="async_playwright")
    factory.return_value.start = AsyncMock(return_value=playwright)

    graph = MagicMock()
    graph.factory = factory
    graph.playwright = playwright
    graph.browser = browser
    graph.context = context
    graph.page = page

    with patch("shadeharness.session.async_playwright", factory):
        yield graph


@pytest.fixture
def mock_server_manager() -> MagicMock:
    manager = MagicMock(spec=ContentServerManager)
    manager.acquire = AsyncMock(return_value="http://127.0.0.1:4173")
    manager.release = AsyncMock()
    return manager


@pytest.fixture
def mock_session() -> MagicMock:
    """A set up session whose browser calls are AsyncMocks.

    ``run_with_console_capture`` simply awaits the operation.
    """
    session = MagicMock(name="session")
    session.backend = "webgl2"
    session.globals = DEFAULT_GLOBALS
    for name in (
        "set_backend",
        "select_effect",
        "wait_for_compile",
        "wait_for_frames",
        "evaluate",
        "get_effect_globals",
        "reset_uniforms_to_defaults",
        "set_uniforms",
        "set_seed",
        "pause_at",
        "resume",
        "capture_pixels",
    ):
        setattr(session, name, AsyncMock(name=name))
    session.wait_for_compile.return_value = "Compiled"

    async def run_with_console_capture(fn) -> Any:
        return await fn()

    session.run_with_console_capture = run_with_console_capture
    return session
