"""Cross-backend pixel parity.

Renders one effect through two backends at the same paused instant and
compares every channel of every pixel. Unlike ``compute_image_metrics`` the
comparison is exhaustive: a parity check must not miss a single divergent
pixel.

Usage:
    async with BrowserSession(backend="webgl2") as session:
        result = await check_pixel_parity(session, "synth/noise", seed=1)
        print(result.details)
"""
import logging
from dataclasses import dataclass, asdict
from typing import Any, Literal, Optional

import numpy as np

from .config import Backend
from .errors import CaptureError, HarnessTimeoutError
from .metrics import as_pixel_array
from .session import BrowserSession, CapturedFrame

logger = logging.getLogger(__name__)

# Allowed per-channel difference on the 0-255 scale
DEFAULT_EPSILON = 1.0

# Percentage of differing channels from which a comparison is a mismatch
MISMATCH_THRESHOLD_PERCENT = 1.0

DEFAULT_BACKENDS: tuple[Backend, Backend] = ("webgl2", "webgpu")

ParityStatus = Literal["ok", "mismatch", "error"]


@dataclass(frozen=True)
class ParityResult:
    """Result of comparing the same frame rendered by two backends."""
    status: ParityStatus
    max_diff: float
    mean_diff: float
    mismatch_count: int
    mismatch_percent: float
    resolution: tuple[int, int]
    details: str
    console_errors: Optional[list[str]] = None

    @classmethod
    def error(cls, details: str, resolution: tuple[int, int] = (0, 0)) -> "ParityResult":
        return cls("error", 0, 0.0, 0, 0.0, resolution, details)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["resolution"] = list(self.resolution)
        if self.console_errors is None:
            del data["console_errors"]
        return data


def _to_255_scale(data: np.ndarray) -> np.ndarray:
    if np.issubdtype(data.dtype, np.floating):
        return data.astype(np.float64) * 255.0
    return data.astype(np.int32)


def compare_pixel_buffers(
    a: Any,
    b: Any,
    width: int,
    height: int,
    epsilon: float = DEFAULT_EPSILON,
    mismatch_threshold: float = MISMATCH_THRESHOLD_PERCENT,
) -> ParityResult:
    """Compare two RGBA buffers channel by channel.

    Args:
        a: First RGBA buffer (8-bit, or float normalized to 0.0-1.0)
        b: Second RGBA buffer of the same size
        width: Image width in pixels
        height: Image height in pixels
        epsilon: Channel differences above this (0-255 scale) count as mismatches
        mismatch_threshold: Percentage of mismatching channels from which the
            result is ``mismatch``

    Returns:
        ParityResult with ``ok`` or ``mismatch`` status, or ``error`` if the
        buffers differ in size
    """
    left = as_pixel_array(a)
    right = as_pixel_array(b)
    resolution = (width, height)

    if left.size != right.size:
        return ParityResult.error(
            f"Buffer size mismatch: {left.size} vs {right.size} channels",
            resolution,
        )

    total_channels = left.size
    if total_channels == 0:
        return ParityResult.error("Empty capture", resolution)

    diff = np.abs(_to_255_scale(left) - _to_255_scale(right))
    max_diff = diff.max().item()
    mean_diff = float(diff.sum()) / total_channels
    mismatch_count = int(np.count_nonzero(diff > epsilon))
    mismatch_percent = mismatch_count / total_channels * 100

    if mismatch_percent < mismatch_threshold:
        status = "ok"
        details = f"Pixel parity OK (maxDiff={max_diff}, meanDiff={mean_diff:.2f})"
    else:
        status = "mismatch"
        details = f"Pixel mismatch: {mismatch_percent:.1f}% channels differ by >{epsilon:g}"

    return ParityResult(
        status=status,
        max_diff=max_diff,
        mean_diff=round(mean_diff, 2),
        mismatch_count=mismatch_count,
        mismatch_percent=round(mismatch_percent, 2),
        resolution=resolution,
        details=details,
    )


async def _capture_paused(
    session: BrowserSession,
    backend: Backend,
    seed: Optional[int],
) -> CapturedFrame:
    """Switch to ``backend`` and capture the frame at time 0."""
    await session.set_backend(backend)
    await session.pause_at(0.0)
    if seed is not None:
        await session.set_seed(seed)
    return await session.capture_pixels(render_time=0.0)


async def check_pixel_parity(
    session: BrowserSession,
    effect_id: str,
    epsilon: float = DEFAULT_EPSILON,
    seed: Optional[int] = None,
    backends: tuple[Backend, Backend] = DEFAULT_BACKENDS,
    mismatch_threshold: float = MISMATCH_THRESHOLD_PERCENT,
) -> ParityResult:
    """Render ``effect_id`` on two backends and compare pixel by pixel.

    The animation clock is paused at time 0 for both captures and resumed
    afterwards, also when a capture fails.

    Args:
        session: A set up browser session
        effect_id: Effect to compare (e.g. ``synth/noise``)
        epsilon: Allowed per-channel difference (0-255)
        seed: Fixed random seed forced into every pass, for stochastic effects
        backends: The two backends to compare

    Returns:
        ParityResult; capture failures and timeouts yield ``status="error"``
    """
    backend_a, backend_b = backends

    async def run() -> ParityResult:
        first: Optional[CapturedFrame] = None
        try:
            await session.set_backend(backend_a)
            await session.select_effect(effect_id)
            await session.wait_for_compile(accept_error=False)

            try:
                first = await _capture_paused(session, backend_a, seed)
            except CaptureError as e:
                return ParityResult.error(f"Failed to capture {backend_a}: {e}")

            try:
                second = await _capture_paused(session, backend_b, seed)
            except CaptureError as e:
                return ParityResult.error(
                    f"Failed to capture {backend_b}: {e}",
                    (first.width, first.height),
                )
        except HarnessTimeoutError as e:
            resolution = (first.width, first.height) if first else (0, 0)
            return ParityResult.error(str(e), resolution)
        finally:
            await session.resume()

        if (first.width, first.height) != (second.width, second.height):
            return ParityResult.error(
                f"Resolution mismatch: {backend_a} {first.width}x{first.height}, "
                f"{backend_b} {second.width}x{second.height}",
                (first.width, first.height),
            )

        result = compare_pixel_buffers(
            first.pixels, second.pixels, first.width, first.height,
            epsilon=epsilon, mismatch_threshold=mismatch_threshold,
        )
        logger.info(f"Parity {effect_id} {backend_a}/{backend_b}: {result.details}")
        return result

    return await session.run_with_console_capture(run)


__all__ = [
    "ParityResult",
    "compare_pixel_buffers",
    "check_pixel_parity",
    "DEFAULT_EPSILON",
    "MISMATCH_THRESHOLD_PERCENT",
]
