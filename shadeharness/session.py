"""BrowserSession - one automated Chromium driving the effect viewer.

The session operates the viewer the way a human would (selector controls,
backend radio buttons) so tests exercise the real UI wiring. Every wait on
browser-side state is a bounded poll; a hung or crashed browser produces a
``HarnessTimeoutError`` instead of a hang.

Usage:
    async with BrowserSession(backend="webgl2") as session:
        await session.select_effect("synth/noise")
        await session.wait_for_compile()
        frame = await session.capture_pixels()
"""
import base64
import dataclasses
import logging
import os
import sys
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, NamedTuple, Optional, TypeVar

import numpy as np
from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import BACKEND_LANGUAGES, Backend, Settings, ViewerGlobals, get_settings
from .errors import CaptureError, HarnessTimeoutError, SetupError
from .server import ContentServerManager, get_server_manager

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Interval of the bounded polls in milliseconds
POLL_INTERVAL_MS = 50

# Console texts containing one of these are kept for diagnostics
CONSOLE_MARKERS = (
    "Error",
    "error",
    "warning",
    "[compileEffect]",
    "[expand]",
    "[Pipeline",
    "[MCP-UNIFORM]",
)

# Console entry kinds that are always kept
CONSOLE_KINDS = ("error", "warning")

CONSOLE_BUFFER_SIZE = 500

CI_VIEWPORT = {"width": 256, "height": 256}
DEFAULT_VIEWPORT = {"width": 1280, "height": 720}

# Status text substrings of the viewer's #status element
READY_MARKERS = ("loaded", "compiled", "ready")
FAILURE_MARKERS = ("error", "failed")


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    TORN_DOWN = "torn_down"


class ConsoleEntry(NamedTuple):
    kind: str
    text: str


class CapturedFrame(NamedTuple):
    """A full resolution, top-down RGBA capture of the viewer canvas."""
    pixels: np.ndarray  # (height, width, 4) uint8
    width: int
    height: int
    source: str  # "readback" or "snapshot"


def get_browser_launch_args(backend: Backend, platform: str = sys.platform) -> list[str]:
    """Chromium flags for rendering through ``backend`` on ``platform``."""
    args = ["--disable-gpu-sandbox"]
    if backend == "webgpu":
        args += [
            "--enable-unsafe-webgpu",
            "--enable-features=Vulkan",
            "--enable-webgpu-developer-features",
            "--use-angle=metal" if platform == "darwin" else "--use-angle=vulkan",
        ]
    elif platform == "darwin":
        args.append("--use-angle=metal")
    return args


def is_diagnostic(kind: str, text: str) -> bool:
    """Check whether a console message is worth keeping."""
    return kind in CONSOLE_KINDS or any(marker in text for marker in CONSOLE_MARKERS)


# ===== In-page scripts =====

_RENDERER_READY_JS = "(name) => !!window[name]"

_GET_BACKEND_JS = """
(name) => typeof window[name] === 'function' ? window[name]() : 'glsl'
"""

_CLICK_BACKEND_JS = """
(target) => {
    const radio = document.querySelector(`input[name="backend"][value="${target}"]`);
    if (!radio) return false;
    radio.click();
    return true;
}
"""

_BACKEND_IS_JS = """
({name, target}) => {
    const current = typeof window[name] === 'function' ? window[name]() : 'glsl';
    return current === target;
}
"""

_SELECT_EFFECT_JS = """
(id) => {
    const select = document.getElementById('effect-select');
    if (!select) return false;
    select.value = id;
    select.dispatchEvent(new Event('change'));
    return true;
}
"""

_STATUS_REACHED_JS = """
(markers) => {
    const status = document.getElementById('status');
    const text = (status?.textContent || '').toLowerCase();
    return markers.some((m) => text.includes(m));
}
"""

_STATUS_TEXT_JS = "() => document.getElementById('status')?.textContent || ''"

_EFFECT_GLOBALS_JS = """
(name) => {
    const effect = window[name];
    return effect?.instance?.globals || {};
}
"""

_RESET_UNIFORMS_JS = """
({pipelineName, effectName}) => {
    const pipeline = window[pipelineName];
    const effect = window[effectName];
    if (!pipeline || !effect?.instance?.globals) return 0;
    let count = 0;
    for (const spec of Object.values(effect.instance.globals)) {
        if (!spec.uniform) continue;
        const value = spec.default ?? spec.min ?? 0;
        if (pipeline.setUniform) pipeline.setUniform(spec.uniform, value);
        else if (pipeline.globalUniforms) pipeline.globalUniforms[spec.uniform] = value;
        count++;
    }
    return count;
}
"""

_SET_UNIFORMS_JS = """
({pipelineName, uniforms}) => {
    const pipeline = window[pipelineName];
    if (!pipeline) return false;
    for (const [key, value] of Object.entries(uniforms)) {
        if (pipeline.setUniform) pipeline.setUniform(key, value);
        else if (pipeline.globalUniforms) pipeline.globalUniforms[key] = value;
    }
    return true;
}
"""

_SET_SEED_JS = """
({pipelineName, seed}) => {
    const pipeline = window[pipelineName];
    const passes = pipeline?.graph?.passes || [];
    for (const pass of passes) {
        if (!pass.uniforms) pass.uniforms = {};
        pass.uniforms.seed = seed;
    }
    return passes.length;
}
"""

_PAUSE_JS = """
({pausedName, timeName, paused, time}) => {
    if (window[pausedName]) window[pausedName](paused);
    if (time !== null && window[timeName]) window[timeName](time);
}
"""

_FRAME_COUNT_JS = "(name) => window[name] || 0"

_FRAMES_REACHED_JS = "({name, target}) => (window[name] || 0) >= target"

# Reads the canvas into base64 RGBA. The GL readback is bottom-up; the 2D
# snapshot used for other backends is top-down.
_CAPTURE_PIXELS_JS = """
({rendererName, pipelineName, time}) => {
    const renderer = window[rendererName];
    const pipeline = window[pipelineName];
    if (!renderer || !renderer.canvas) return { error: 'No renderer found' };
    if (time !== null && typeof renderer.render === 'function') renderer.render(time);

    const canvas = renderer.canvas;
    const width = canvas.width, height = canvas.height;
    const encode = (bytes) => {
        let binary = '';
        for (let i = 0; i < bytes.length; i += 0x8000) {
            binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 0x8000));
        }
        return btoa(binary);
    };

    const gl = pipeline && pipeline.backend && pipeline.backend.gl;
    if (gl) {
        const pixels = new Uint8Array(width * height * 4);
        gl.bindFramebuffer(gl.FRAMEBUFFER, null);
        gl.readPixels(0, 0, width, height, gl.RGBA, gl.UNSIGNED_BYTE, pixels);
        return { data: encode(pixels), width, height, bottomUp: true, source: 'readback' };
    }

    const tmp = document.createElement('canvas');
    tmp.width = width;
    tmp.height = height;
    const ctx = tmp.getContext('2d');
    if (!ctx) return { error: 'No readback surface available' };
    ctx.drawImage(canvas, 0, 0);
    const image = ctx.getImageData(0, 0, width, height);
    return {
        data: encode(new Uint8Array(image.data.buffer)),
        width, height, bottomUp: false, source: 'snapshot'
    };
}
"""


def decode_capture(payload: Optional[dict[str, Any]]) -> CapturedFrame:
    """Turn the in-page capture payload into a top-down ``CapturedFrame``.

    Raises:
        CaptureError: If the page reported no renderer or readback surface
    """
    if not payload:
        raise CaptureError("No renderer found")
    if payload.get("error"):
        raise CaptureError(payload["error"])

    width, height = int(payload["width"]), int(payload["height"])
    raw = base64.b64decode(payload["data"])
    if len(raw) != width * height * 4:
        raise CaptureError(f"Capture holds {len(raw)} bytes, expected {width * height * 4}")

    pixels = np.frombuffer(raw, dtype=np.uint8).reshape(height, width, 4)
    if payload.get("bottomUp"):
        pixels = pixels[::-1]
    return CapturedFrame(np.ascontiguousarray(pixels), width, height, payload.get("source", "readback"))


class BrowserSession:
    """Owns one Chromium browser, context and page bound to a backend.

    The session moves through ``UNINITIALIZED -> READY -> TORN_DOWN``.
    ``setup()`` twice without ``teardown()`` raises ``SetupError``; a torn
    down session may be set up again.
    """

    def __init__(
        self,
        backend: Optional[Backend] = None,
        headless: bool = True,
        viewer_port: Optional[int] = None,
        viewer_root: Optional[Path] = None,
        effects_dir: Optional[Path] = None,
        viewer_path: Optional[str] = None,
        viewer_globals: Optional[ViewerGlobals] = None,
        server_manager: Optional[ContentServerManager] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
        launch_backend: Optional[Backend] = None,
    ):
        settings = settings or get_settings()
        self.backend: Backend = backend or settings.BACKEND
        self.headless = headless
        # Backend whose Chromium flags are used at launch, defaults to backend
        self.launch_backend: Optional[Backend] = launch_backend
        self.viewer_port = viewer_port or settings.VIEWER_PORT
        self.viewer_root = Path(viewer_root) if viewer_root else settings.viewer_root
        self.effects_dir = Path(effects_dir) if effects_dir else settings.effects_dir
        self.viewer_path = viewer_path or settings.VIEWER_PATH
        self.globals = viewer_globals or settings.globals
        self.timeout = timeout or settings.STATUS_TIMEOUT
        self.server_manager = server_manager or get_server_manager()

        self.state = SessionState.UNINITIALIZED
        self.base_url = ""
        self.page: Optional[Page] = None
        self.context: Optional[BrowserContext] = None
        self.browser: Optional[Browser] = None
        self._playwright: Optional[Playwright] = None
        self._holds_server = False
        self._console: deque[ConsoleEntry] = deque(maxlen=CONSOLE_BUFFER_SIZE)

    async def __aenter__(self) -> "BrowserSession":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    # ===== Lifecycle =====

    async def setup(self) -> None:
        """Start the browser and wait for the viewer's renderer.

        Raises:
            SetupError: If the session is already set up
            HarnessTimeoutError: If the renderer does not appear in time
        """
        if self.state is SessionState.READY or self._holds_server:
            raise SetupError("Session already set up. Call teardown() first.")

        self.base_url = await self.server_manager.acquire(
            self.viewer_port, self.viewer_root, self.effects_dir
        )
        self._holds_server = True

        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=get_browser_launch_args(self.launch_backend or self.backend),
            )
            self.context = await self.browser.new_context(
                viewport=CI_VIEWPORT if os.environ.get("CI") else DEFAULT_VIEWPORT,
                ignore_https_errors=True,
            )
            self.page = await self.context.new_page()
            self.page.set_default_timeout(self.timeout * 1000)
            self.page.set_default_navigation_timeout(self.timeout * 1000)

            self._console.clear()
            self.page.on("console", self._on_console)
            self.page.on("pageerror", self._on_page_error)

            url = f"{self.base_url}{self.viewer_path}"
            logger.debug(f"Opening viewer at {url} ({self.backend})")
            await self.page.goto(url, wait_until="networkidle")
            await self._poll(_RENDERER_READY_JS, self.globals.canvas_renderer, description="renderer")
        except BaseException:
            await self.teardown()
            raise

        self.state = SessionState.READY

    async def teardown(self) -> None:
        """Close the browser and release the content server.

        Safe to call on a partially set up or already torn down session;
        failures while closing are logged and do not stop the remaining
        cleanup.
        """
        for name in ("page", "context", "browser"):
            resource = getattr(self, name)
            setattr(self, name, None)
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning(f"Failed to close {name}: {e}")

        if self._playwright is not None:
            playwright, self._playwright = self._playwright, None
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"Failed to stop playwright: {e}")

        try:
            if self._holds_server:
                self._holds_server = False
                await self.server_manager.release()
        finally:
            self._console.clear()
            self.state = SessionState.TORN_DOWN

    # ===== Console capture =====

    def _on_console(self, message: ConsoleMessage) -> None:
        kind, text = message.type, message.text
        if is_diagnostic(kind, text):
            self._console.append(ConsoleEntry(kind, text))

    def _on_page_error(self, error: Any) -> None:
        self._console.append(ConsoleEntry("pageerror", getattr(error, "message", str(error))))

    def clear_console_messages(self) -> None:
        self._console.clear()

    def get_console_messages(self) -> list[ConsoleEntry]:
        return list(self._console)

    async def run_with_console_capture(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` and attach console diagnostics logged meanwhile.

        If the browser logged anything relevant while ``fn`` ran, the result
        gets a ``console_errors`` list (dataclass field or dict key).
        """
        self.clear_console_messages()
        result = await fn()
        if not self._console:
            return result

        errors = [entry.text for entry in self._console]
        if dataclasses.is_dataclass(result) and not isinstance(result, type):
            return dataclasses.replace(result, console_errors=errors)
        if isinstance(result, dict):
            return {**result, "console_errors": errors}
        return result

    # ===== Polling =====

    def _require_page(self) -> Page:
        if self.state is not SessionState.READY or self.page is None:
            raise SetupError("Session is not set up. Call setup() first.")
        return self.page

    async def _poll(
        self,
        expression: str,
        arg: Any = None,
        *,
        timeout: Optional[float] = None,
        polling: Any = POLL_INTERVAL_MS,
        description: str = "condition",
    ) -> None:
        timeout = timeout or self.timeout
        try:
            await self.page.wait_for_function(
                expression, arg=arg, timeout=timeout * 1000, polling=polling
            )
        except PlaywrightTimeoutError as e:
            raise HarnessTimeoutError(
                f"Timed out after {timeout:g}s waiting for {description}"
            ) from e

    async def wait_for(
        self,
        expression: str,
        arg: Any = None,
        *,
        timeout: Optional[float] = None,
        description: str = "condition",
    ) -> None:
        """Poll a JS predicate until it is truthy, bounded by the session timeout."""
        self._require_page()
        await self._poll(expression, arg, timeout=timeout, description=description)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        """Evaluate JavaScript in the viewer page."""
        return await self._require_page().evaluate(expression, arg)

    # ===== Backend =====

    async def get_active_backend(self) -> str:
        """Shader language the viewer currently renders with (``glsl``/``wgsl``)."""
        return await self.evaluate(_GET_BACKEND_JS, self.globals.current_backend)

    async def set_backend(self, backend: Backend) -> None:
        """Switch the viewer to ``backend`` through its backend radio control.

        Raises:
            HarnessTimeoutError: If the viewer does not report the backend in time
        """
        target = BACKEND_LANGUAGES[backend]
        current = await self.get_active_backend()
        if current != target:
            clicked = await self.evaluate(_CLICK_BACKEND_JS, target)
            if not clicked:
                logger.warning(f"No backend control for {target} found in viewer")
            await self.wait_for(
                _BACKEND_IS_JS,
                {"name": self.globals.current_backend, "target": target},
                description=f"backend {backend}",
            )
        self.backend = backend

    # ===== Effect and uniforms =====

    async def select_effect(self, effect_id: str) -> None:
        """Choose ``effect_id`` in the viewer's effect selector."""
        found = await self.evaluate(_SELECT_EFFECT_JS, effect_id)
        if not found:
            logger.warning("Viewer has no #effect-select control")

    async def wait_for_compile(self, accept_error: bool = True) -> str:
        """Wait until the status indicator reports the effect compiled.

        Args:
            accept_error: Also stop waiting when the status reports an error

        Returns:
            The status text
        """
        markers = list(READY_MARKERS) + (list(FAILURE_MARKERS) if accept_error else [])
        await self.wait_for(_STATUS_REACHED_JS, markers, description="effect compile")
        return await self.evaluate(_STATUS_TEXT_JS)

    async def get_effect_globals(self) -> dict[str, Any]:
        """Uniform specification of the currently loaded effect."""
        return await self.evaluate(_EFFECT_GLOBALS_JS, self.globals.current_effect)

    async def reset_uniforms_to_defaults(self) -> int:
        """Write each uniform's default (or minimum) into the pipeline.

        Returns:
            Number of uniforms written
        """
        return await self.evaluate(_RESET_UNIFORMS_JS, {
            "pipelineName": self.globals.rendering_pipeline,
            "effectName": self.globals.current_effect,
        })

    async def set_uniforms(self, uniforms: dict[str, float]) -> None:
        await self.evaluate(_SET_UNIFORMS_JS, {
            "pipelineName": self.globals.rendering_pipeline,
            "uniforms": uniforms,
        })

    async def set_seed(self, seed: int) -> int:
        """Force ``seed`` into the uniforms of every pass of the pipeline."""
        return await self.evaluate(_SET_SEED_JS, {
            "pipelineName": self.globals.rendering_pipeline,
            "seed": seed,
        })

    # ===== Animation clock =====

    async def pause_at(self, time: float = 0.0) -> None:
        """Pause the animation clock at a fixed instant."""
        await self.evaluate(_PAUSE_JS, {
            "pausedName": self.globals.set_paused,
            "timeName": self.globals.set_paused_time,
            "paused": True,
            "time": time,
        })

    async def resume(self) -> None:
        await self.evaluate(_PAUSE_JS, {
            "pausedName": self.globals.set_paused,
            "timeName": self.globals.set_paused_time,
            "paused": False,
            "time": None,
        })

    async def get_frame_count(self) -> int:
        return int(await self.evaluate(_FRAME_COUNT_JS, self.globals.frame_count))

    async def wait_for_frames(self, frames: int) -> None:
        """Wait until the viewer rendered ``frames`` more frames."""
        if frames <= 0:
            return
        start = await self.get_frame_count()
        await self.wait_for(
            _FRAMES_REACHED_JS,
            {"name": self.globals.frame_count, "target": start + frames},
            description=f"{frames} frames",
        )

    # ===== Capture =====

    async def capture_pixels(self, render_time: Optional[float] = 0.0) -> CapturedFrame:
        """Capture the full resolution canvas as top-down RGBA.

        Args:
            render_time: Render a frame at this time before reading back,
                ``None`` reads the current frame

        Raises:
            CaptureError: If no renderer or readback surface is available, or
                the page threw while rendering or reading back
        """
        try:
            payload = await self.evaluate(_CAPTURE_PIXELS_JS, {
                "rendererName": self.globals.canvas_renderer,
                "pipelineName": self.globals.rendering_pipeline,
                "time": render_time,
            })
        except PlaywrightError as e:
            raise CaptureError(f"Capture failed in page: {e.message}") from e
        return decode_capture(payload)


__all__ = [
    "BrowserSession",
    "SessionState",
    "ConsoleEntry",
    "CapturedFrame",
    "CONSOLE_MARKERS",
    "decode_capture",
    "get_browser_launch_args",
    "is_diagnostic",
]
