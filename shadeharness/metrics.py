"""Statistical fingerprint of a rendered frame.

The metrics are computed from a strided sample of roughly ``SAMPLE_TARGET``
pixels, so the cost is bounded regardless of the render size. All statistics
are computed in normalized float space (0.0-1.0) to allow comparing u8 and
f32 readbacks fairly.
"""
from dataclasses import dataclass, asdict
from typing import Any

import numpy as np

# Number of pixels the strided sampler aims for
SAMPLE_TARGET = 1000

# Channel values at or below this count as zero / transparent
ZERO_EPSILON = 0.001

# Defaults for the "essentially blank" heuristic
BLANK_MEAN_THRESHOLD = 0.01
BLANK_MAX_COLORS = 10

# Rec. 601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


@dataclass(frozen=True)
class ImageMetrics:
    """Summary statistics of a single RGBA capture."""
    mean_rgb: tuple[float, float, float]
    std_rgb: tuple[float, float, float]
    mean_alpha: float
    luma_mean: float
    luma_variance: float
    unique_sampled_colors: int
    is_all_zero: bool
    is_all_transparent: bool
    is_essentially_blank: bool
    is_monochrome: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mean_rgb"] = list(self.mean_rgb)
        data["std_rgb"] = list(self.std_rgb)
        return data


def as_pixel_array(buffer: Any) -> np.ndarray:
    """View a raw RGBA buffer as a flat numpy array without copying it.

    Accepts numpy arrays, ``bytes``/``bytearray``/``memoryview`` (8-bit) and
    plain sequences of numbers.
    """
    if isinstance(buffer, np.ndarray):
        return buffer.reshape(-1)
    if isinstance(buffer, (bytes, bytearray, memoryview)):
        return np.frombuffer(buffer, dtype=np.uint8)
    return np.asarray(buffer).reshape(-1)


def _channel_scale(data: np.ndarray) -> float:
    """Scale that maps the buffer's representation into [0, 1]."""
    if np.issubdtype(data.dtype, np.floating):
        return 1.0
    if np.issubdtype(data.dtype, np.integer) or data.dtype == np.bool_:
        return 1.0 / 255.0
    raise ValueError(f"Unsupported dtype for pixel metrics: {data.dtype}")


def compute_image_metrics(
    buffer: Any,
    width: int,
    height: int,
    *,
    blank_mean: float = BLANK_MEAN_THRESHOLD,
    blank_max_colors: int = BLANK_MAX_COLORS,
) -> ImageMetrics:
    """Compute statistical metrics from RGBA pixel data.

    Args:
        buffer: RGBA pixels, row-major. Integer data is treated as 8-bit
            (0-255), floating point data as already normalized (0.0-1.0).
        width: Image width in pixels
        height: Image height in pixels
        blank_mean: Every mean RGB channel must be below this for a frame to
            count as essentially blank
        blank_max_colors: Maximum distinct sampled colors of a blank frame

    Returns:
        ImageMetrics of the sampled pixels
    """
    data = as_pixel_array(buffer)
    scale = _channel_scale(data)

    pixel_count = width * height
    if data.size < pixel_count * 4:
        raise ValueError(
            f"Buffer holds {data.size} values, expected {pixel_count * 4} for {width}x{height} RGBA"
        )

    stride = max(1, pixel_count // SAMPLE_TARGET)
    # Only the sampled pixels are converted to float
    samples = data[:pixel_count * 4].reshape(-1, 4)[::stride].astype(np.float64) * scale
    n = max(len(samples), 1)

    rgb = samples[:, :3]
    alpha = samples[:, 3]
    luma = rgb @ LUMA_WEIGHTS

    mean_rgb = rgb.sum(axis=0) / n
    var_rgb = np.maximum(0.0, (rgb * rgb).sum(axis=0) / n - mean_rgb * mean_rgb)
    mean_alpha = float(alpha.sum() / n)
    luma_mean = float(luma.sum() / n)
    luma_variance = max(0.0, float((luma * luma).sum() / n - luma_mean * luma_mean))

    all_zero = not bool((rgb > ZERO_EPSILON).any())
    all_transparent = not bool((alpha > ZERO_EPSILON).any())

    # 6 bits per channel -> 18 bit color key
    quantized = np.clip(np.floor(rgb * 63), 0, 63).astype(np.int64)
    keys = (quantized[:, 0] << 12) | (quantized[:, 1] << 6) | quantized[:, 2]
    unique_colors = int(len(np.unique(keys)))

    is_blank = bool((mean_rgb < blank_mean).all()) and unique_colors <= blank_max_colors

    return ImageMetrics(
        mean_rgb=tuple(float(v) for v in mean_rgb),
        std_rgb=tuple(float(v) for v in np.sqrt(var_rgb)),
        mean_alpha=mean_alpha,
        luma_mean=luma_mean,
        luma_variance=luma_variance,
        unique_sampled_colors=unique_colors,
        is_all_zero=all_zero,
        is_all_transparent=all_transparent,
        is_essentially_blank=is_blank,
        is_monochrome=unique_colors <= 1,
    )


__all__ = [
    "ImageMetrics",
    "compute_image_metrics",
    "as_pixel_array",
    "SAMPLE_TARGET",
    "ZERO_EPSILON",
    "BLANK_MEAN_THRESHOLD",
    "BLANK_MAX_COLORS",
]
