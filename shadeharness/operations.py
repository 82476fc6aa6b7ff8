"""Browser-level effect checks built on ``BrowserSession``.

Each operation runs inside ``session.run_with_console_capture`` so browser
diagnostics end up in the result. Timeouts and capture failures are reported
as ``status="error"`` results rather than raised, so a batch over many
effects continues past a broken one.
"""
import base64
import logging
from io import BytesIO
from typing import Any, Optional

import numpy as np
from PIL import Image

from .errors import CaptureError, HarnessTimeoutError
from .metrics import compute_image_metrics
from .results import (
    BenchmarkResult,
    BenchmarkStats,
    CompileResult,
    FrameInfo,
    PassResult,
    PassthroughResult,
    RenderResult,
    UniformResult,
)
from .session import FAILURE_MARKERS, BrowserSession

logger = logging.getLogger(__name__)

DEFAULT_WARMUP_FRAMES = 10
DEFAULT_TARGET_FPS = 60
DEFAULT_BENCHMARK_SECONDS = 5.0

# Passthrough detection: mean temporal difference and sampled color count
PASSTHROUGH_SAMPLE_TARGET = 1000
PASSTHROUGH_MIN_TEMPORAL_DIFF = 0.01
PASSTHROUGH_MIN_COLORS = 5

# Minimum change of mean RGB that counts as a uniform response
UNIFORM_RESPONSE_THRESHOLD = 0.002

_PASS_NAMES_JS = """
(name) => {
    const passes = window[name]?.graph?.passes || [];
    return passes.map((p, i) => p.name || `pass_${i}`);
}
"""

_IS_FILTER_EFFECT_JS = """
(name) => {
    const passes = window[name]?.graph?.passes || [];
    return passes.some((p) => Object.values(p.inputs || {}).some((v) => String(v).includes('input')));
}
"""

_HAS_EFFECT_JS = "({pipelineName, effectName}) => !!(window[pipelineName] && window[effectName])"

# Per-frame timing with requestAnimationFrame for a fixed duration
_BENCHMARK_JS = """
(duration) => new Promise((resolve) => {
    const frameTimes = [];
    let last = performance.now();
    let running = true;
    const onFrame = () => {
        if (!running) return;
        const now = performance.now();
        frameTimes.push(now - last);
        last = now;
        requestAnimationFrame(onFrame);
    };
    requestAnimationFrame(onFrame);
    setTimeout(() => { running = false; resolve(frameTimes); }, duration * 1000);
})
"""


def frame_to_data_uri(pixels: np.ndarray) -> str:
    """Encode a (H, W, 4) uint8 frame as a PNG data URI."""
    buffer = BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def summarize_frame_times(frame_times: list[float]) -> tuple[float, BenchmarkStats]:
    """Compute the achieved FPS and timing stats of a list of frame times (ms)."""
    times = np.asarray(frame_times, dtype=np.float64)
    count = len(times)
    if count == 0:
        return 0.0, BenchmarkStats(0, 0.0, 0.0, 0.0, 0.0)

    total_ms = float(times.sum())
    fps = count / (total_ms / 1000) if total_ms > 0 else 0.0
    # Jitter is the sample standard deviation of the frame times
    jitter = float(times.std(ddof=1)) if count > 1 else 0.0

    stats = BenchmarkStats(
        frame_count=count,
        avg_frame_time_ms=round(total_ms / count, 2),
        jitter_ms=round(jitter, 2),
        min_frame_time_ms=round(float(times.min()), 2),
        max_frame_time_ms=round(float(times.max()), 2),
    )
    return round(fps, 2), stats


def temporal_difference(a: np.ndarray, b: np.ndarray) -> tuple[float, int]:
    """Mean normalized RGB difference of two frames and the colors of ``a``.

    Both measures use a strided sample of about ``PASSTHROUGH_SAMPLE_TARGET``
    pixels.
    """
    flat_a = a.reshape(-1, 4)
    flat_b = b.reshape(-1, 4)
    stride = max(1, len(flat_a) // PASSTHROUGH_SAMPLE_TARGET)
    rgb_a = flat_a[::stride, :3].astype(np.int32)
    rgb_b = flat_b[::stride, :3].astype(np.int32)
    if len(rgb_a) == 0:
        return 0.0, 0

    diff = float(np.abs(rgb_a - rgb_b).sum()) / (len(rgb_a) * 3 * 255)
    unique_colors = len(np.unique(rgb_a, axis=0))
    return diff, unique_colors


def mean_rgb(pixels: np.ndarray) -> np.ndarray:
    return pixels.reshape(-1, 4)[:, :3].mean(axis=0) / 255.0


async def compile_effect(session: BrowserSession, effect_id: str) -> CompileResult:
    """Select ``effect_id`` and report per-pass compile status."""

    async def run() -> CompileResult:
        await session.select_effect(effect_id)
        try:
            status_text = await session.wait_for_compile(accept_error=True)
        except HarnessTimeoutError:
            return CompileResult("error", session.backend, [], "Compile timeout")

        pass_names = await session.evaluate(_PASS_NAMES_JS, session.globals.rendering_pipeline)
        if any(marker in status_text.lower() for marker in FAILURE_MARKERS):
            logger.info(f"Compile of {effect_id} failed on {session.backend}: {status_text}")
            passes = [PassResult(name, "error") for name in pass_names]
            return CompileResult("error", session.backend, passes, status_text or "Compilation failed")

        passes = [PassResult(name, "ok") for name in pass_names] or [PassResult("main", "ok")]
        return CompileResult("ok", session.backend, passes, "Compiled successfully")

    return await session.run_with_console_capture(run)


async def render_effect_frame(
    session: BrowserSession,
    effect_id: str,
    warmup_frames: int = DEFAULT_WARMUP_FRAMES,
    capture_image: bool = False,
    uniforms: Optional[dict[str, float]] = None,
) -> RenderResult:
    """Render ``effect_id`` and compute image metrics of the frame.

    Args:
        session: A set up browser session
        effect_id: Effect to render
        warmup_frames: Frames to wait for before the capture
        capture_image: Also return the frame as a PNG data URI
        uniforms: Uniform overrides applied before warming up
    """

    async def run() -> RenderResult:
        try:
            await session.select_effect(effect_id)
            await session.wait_for_compile(accept_error=True)
            if uniforms:
                await session.set_uniforms(uniforms)
            await session.wait_for_frames(warmup_frames)
            frame = await session.capture_pixels(render_time=None)
        except (HarnessTimeoutError, CaptureError) as e:
            return RenderResult("error", session.backend, error=str(e))

        metrics = compute_image_metrics(frame.pixels, frame.width, frame.height)
        image_uri = frame_to_data_uri(frame.pixels) if capture_image else None
        return RenderResult(
            "ok",
            session.backend,
            frame=FrameInfo(frame.width, frame.height, image_uri),
            metrics=metrics,
        )

    return await session.run_with_console_capture(run)


async def benchmark_effect_fps(
    session: BrowserSession,
    effect_id: str,
    target_fps: float = DEFAULT_TARGET_FPS,
    duration_seconds: float = DEFAULT_BENCHMARK_SECONDS,
) -> BenchmarkResult:
    """Measure the frame rate ``effect_id`` achieves in the viewer."""

    async def run() -> BenchmarkResult:
        try:
            await session.select_effect(effect_id)
            await session.wait_for_compile(accept_error=True)
        except HarnessTimeoutError as e:
            return BenchmarkResult("error", session.backend, error=str(e))

        frame_times = await session.evaluate(_BENCHMARK_JS, duration_seconds)
        fps, stats = summarize_frame_times(frame_times)
        return BenchmarkResult(
            "ok",
            session.backend,
            achieved_fps=fps,
            meets_target=fps >= target_fps,
            stats=stats,
        )

    return await session.run_with_console_capture(run)


async def check_no_passthrough(session: BrowserSession, effect_id: str) -> PassthroughResult:
    """Verify a filter effect actually modifies its input.

    Renders the effect at time 0 and time 1 and flags it as ``passthrough``
    when the output neither varies over time nor shows more than a handful
    of colors. Effects without an input texture are ``skipped``.
    """

    async def run() -> PassthroughResult:
        try:
            await session.select_effect(effect_id)
            await session.wait_for_compile(accept_error=True)
        except HarnessTimeoutError as e:
            return PassthroughResult("error", details=str(e))

        loaded = await session.evaluate(_HAS_EFFECT_JS, {
            "pipelineName": session.globals.rendering_pipeline,
            "effectName": session.globals.current_effect,
        })
        if not loaded:
            return PassthroughResult("error", details="No effect loaded")

        is_filter = await session.evaluate(_IS_FILTER_EFFECT_JS, session.globals.rendering_pipeline)
        if not is_filter:
            return PassthroughResult("skipped", details="Not a filter effect")

        try:
            frame0 = await session.capture_pixels(render_time=0.0)
            frame1 = await session.capture_pixels(render_time=1.0)
        except CaptureError as e:
            return PassthroughResult("error", is_filter_effect=True, details=str(e))

        diff, unique_colors = temporal_difference(frame0.pixels, frame1.pixels)
        modifying = diff > PASSTHROUGH_MIN_TEMPORAL_DIFF or unique_colors > PASSTHROUGH_MIN_COLORS
        return PassthroughResult(
            "ok" if modifying else "passthrough",
            is_filter_effect=True,
            temporal_diff=diff,
            unique_colors=unique_colors,
            details="Effect modifies input" if modifying else "Effect may be passing through unchanged",
        )

    return await session.run_with_console_capture(run)


def _testable_uniforms(effect_globals: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Uniforms with a numeric, non-empty range."""
    testable = []
    for name, spec in effect_globals.items():
        if not isinstance(spec, dict) or not spec.get("uniform"):
            continue
        if spec.get("type") in ("boolean", "button"):
            continue
        low, high = spec.get("min"), spec.get("max")
        if not isinstance(low, (int, float)) or not isinstance(high, (int, float)) or low == high:
            continue
        testable.append((name, spec))
    return testable


def probe_value(spec: dict[str, Any]) -> float:
    """Value a quarter into the range, or three quarters if the default is the minimum."""
    low, high = spec["min"], spec["max"]
    default = spec.get("default", low)
    value = low + (high - low) * (0.75 if default == low else 0.25)
    if spec.get("type") == "int":
        value = round(value)
    return value


async def check_uniform_responsiveness(session: BrowserSession, effect_id: str) -> UniformResult:
    """Check that moving each ranged uniform changes the rendered output."""

    async def run() -> UniformResult:
        try:
            await session.select_effect(effect_id)
            await session.wait_for_compile(accept_error=False)
        except HarnessTimeoutError as e:
            return UniformResult("error", details=str(e))

        effect_globals = await session.get_effect_globals()
        if not effect_globals:
            return UniformResult("error", details="No effect loaded")

        tested: list[str] = []
        responded = False
        await session.reset_uniforms_to_defaults()
        await session.pause_at(0.0)
        try:
            try:
                baseline = mean_rgb((await session.capture_pixels(render_time=0.0)).pixels)
            except CaptureError:
                return UniformResult("error", details="Failed to capture baseline")

            for name, spec in _testable_uniforms(effect_globals):
                uniform = spec["uniform"]
                await session.set_uniforms({uniform: probe_value(spec)})
                try:
                    probe = mean_rgb((await session.capture_pixels(render_time=0.0)).pixels)
                except CaptureError:
                    tested.append(f"{name}:error")
                else:
                    luma_diff = abs(probe.mean() - baseline.mean())
                    channel_diff = float(np.abs(probe - baseline).max())
                    if luma_diff > UNIFORM_RESPONSE_THRESHOLD or channel_diff > UNIFORM_RESPONSE_THRESHOLD:
                        responded = True
                        tested.append(f"{name}:pass")
                    else:
                        tested.append(f"{name}:fail")
                await session.set_uniforms({uniform: spec.get("default", spec["min"])})
        finally:
            await session.resume()

        if responded:
            return UniformResult("ok", tested, "Uniforms affect output")
        if not tested:
            return UniformResult("skipped", tested, "No testable uniforms")
        return UniformResult("error", tested, "No uniforms affected output")

    return await session.run_with_console_capture(run)


__all__ = [
    "compile_effect",
    "render_effect_frame",
    "benchmark_effect_fps",
    "check_no_passthrough",
    "check_uniform_responsiveness",
    "frame_to_data_uri",
    "summarize_frame_times",
    "temporal_difference",
]
