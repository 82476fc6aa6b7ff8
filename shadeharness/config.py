"""Harness configuration.

Settings are read from ``SHADE_*`` environment variables:

    SHADE_PROJECT_ROOT: Root of the project under test (default: cwd)
    SHADE_EFFECTS_DIR: Effects tree (default: <root>/effects)
    SHADE_VIEWER_ROOT: Viewer application (default: <root>/viewer)
    SHADE_VIEWER_PORT: Port of the local content server (default: 4173)
    SHADE_BACKEND: Default rendering backend, "webgl2" or "webgpu"
    SHADE_GLOBALS_PREFIX: Prefix of the viewer's global hooks (default: __shade)
    SHADE_VIEWER_PATH: Path of the viewer page (default: /)
"""
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

Backend = Literal["webgl2", "webgpu"]

VALID_BACKENDS: tuple[str, ...] = ("webgl2", "webgpu")

# Shader language the viewer reports for each backend
BACKEND_LANGUAGES: dict[str, str] = {
    "webgl2": "glsl",
    "webgpu": "wgsl",
}

DEFAULT_GLOBALS_PREFIX = "__shade"


class ViewerGlobals(BaseModel):
    """Names of the global hooks the viewer exposes on ``window``."""

    model_config = ConfigDict(frozen=True)

    canvas_renderer: str
    rendering_pipeline: str
    current_backend: str
    current_effect: str
    set_paused: str
    set_paused_time: str
    frame_count: str

    @classmethod
    def with_prefix(cls, prefix: str) -> "ViewerGlobals":
        """Build the hook names for a viewer deployment using ``prefix``.

        Example:
            >>> ViewerGlobals.with_prefix("__nm").canvas_renderer
            '__nmCanvasRenderer'
        """
        return cls(
            canvas_renderer=f"{prefix}CanvasRenderer",
            rendering_pipeline=f"{prefix}RenderingPipeline",
            current_backend=f"{prefix}CurrentBackend",
            current_effect=f"{prefix}CurrentEffect",
            set_paused=f"{prefix}SetPaused",
            set_paused_time=f"{prefix}SetPausedTime",
            frame_count=f"{prefix}FrameCount",
        )


DEFAULT_GLOBALS = ViewerGlobals.with_prefix(DEFAULT_GLOBALS_PREFIX)


class Settings(BaseSettings):
    """Harness settings."""

    # Paths
    PROJECT_ROOT: Path = Field(default_factory=Path.cwd)
    EFFECTS_DIR: Optional[Path] = None
    VIEWER_ROOT: Optional[Path] = None

    # Viewer
    VIEWER_PORT: int = 4173
    VIEWER_PATH: str = "/"
    BACKEND: Backend = "webgl2"
    GLOBALS_PREFIX: Optional[str] = None

    # Bounded polls (seconds)
    STATUS_TIMEOUT: float = 30.0

    model_config = {"env_prefix": "SHADE_"}

    @field_validator("BACKEND", mode="before")
    @classmethod
    def _fallback_backend(cls, value):
        if value in VALID_BACKENDS:
            return value
        return "webgl2"

    @property
    def effects_dir(self) -> Path:
        return (self.EFFECTS_DIR or self.PROJECT_ROOT / "effects").resolve()

    @property
    def viewer_root(self) -> Path:
        return (self.VIEWER_ROOT or self.PROJECT_ROOT / "viewer").resolve()

    @property
    def globals(self) -> ViewerGlobals:
        if self.GLOBALS_PREFIX:
            return ViewerGlobals.with_prefix(self.GLOBALS_PREFIX)
        return DEFAULT_GLOBALS


def get_settings() -> Settings:
    """Read the settings from the current environment."""
    return Settings()


__all__ = [
    "Backend",
    "VALID_BACKENDS",
    "BACKEND_LANGUAGES",
    "ViewerGlobals",
    "DEFAULT_GLOBALS",
    "Settings",
    "get_settings",
]
