"""Result types of the browser-level effect operations.

Every result carries a ``status`` and, when the browser logged diagnostics
while the operation ran, the captured ``console_errors``. Results are
immutable; ``BrowserSession.run_with_console_capture`` attaches console
output by building a copy.
"""
from dataclasses import dataclass, field, asdict
from typing import Any, Literal, Optional

from .metrics import ImageMetrics

Status = Literal["ok", "error"]


def _drop_empty(data: dict[str, Any]) -> dict[str, Any]:
    """Remove optional fields that were never set."""
    return {key: value for key, value in data.items() if value is not None}


@dataclass(frozen=True)
class PassResult:
    id: str
    status: Status
    errors: Optional[list[str]] = None


@dataclass(frozen=True)
class CompileResult:
    status: Status
    backend: str
    passes: list[PassResult] = field(default_factory=list)
    message: str = ""
    console_errors: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        data = _drop_empty(asdict(self))
        data["passes"] = [_drop_empty(p) for p in data["passes"]]
        return data


@dataclass(frozen=True)
class FrameInfo:
    width: int
    height: int
    image_uri: Optional[str] = None


@dataclass(frozen=True)
class RenderResult:
    status: Status
    backend: str
    frame: Optional[FrameInfo] = None
    metrics: Optional[ImageMetrics] = None
    error: Optional[str] = None
    console_errors: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "backend": self.backend}
        if self.frame is not None:
            data["frame"] = _drop_empty(asdict(self.frame))
        if self.metrics is not None:
            data["metrics"] = self.metrics.to_dict()
        if self.error is not None:
            data["error"] = self.error
        if self.console_errors is not None:
            data["console_errors"] = self.console_errors
        return data


@dataclass(frozen=True)
class BenchmarkStats:
    frame_count: int
    avg_frame_time_ms: float
    jitter_ms: float
    min_frame_time_ms: float
    max_frame_time_ms: float


@dataclass(frozen=True)
class BenchmarkResult:
    status: Status
    backend: str
    achieved_fps: float = 0.0
    meets_target: bool = False
    stats: Optional[BenchmarkStats] = None
    error: Optional[str] = None
    console_errors: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_empty(asdict(self))


@dataclass(frozen=True)
class PassthroughResult:
    status: Literal["ok", "passthrough", "skipped", "error"]
    is_filter_effect: bool = False
    temporal_diff: Optional[float] = None
    unique_colors: Optional[int] = None
    details: str = ""
    console_errors: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_empty(asdict(self))


@dataclass(frozen=True)
class UniformResult:
    status: Literal["ok", "skipped", "error"]
    tested_uniforms: list[str] = field(default_factory=list)
    details: str = ""
    console_errors: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_empty(asdict(self))


__all__ = [
    "PassResult",
    "CompileResult",
    "FrameInfo",
    "RenderResult",
    "BenchmarkStats",
    "BenchmarkResult",
    "PassthroughResult",
    "UniformResult",
]
