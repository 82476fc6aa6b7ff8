"""Rendering test harness for shader effects.

Drives a web-based effect viewer in a headless Chromium, captures rendered
frames and computes the signals used to pass or fail an effect:

- ``compute_image_metrics``: blank / monochrome / transparent detection
- ``check_pixel_parity``: WebGL2 vs WebGPU pixel divergence
- ``compile_effect``, ``render_effect_frame``, ``benchmark_effect_fps``,
  ``check_no_passthrough``, ``check_uniform_responsiveness``

## Usage

```python
from shadeharness import BrowserSession, check_pixel_parity

async with BrowserSession(backend="webgl2") as session:
    result = await check_pixel_parity(session, "synth/noise", seed=1)
    assert result.status == "ok", result.details
```

The viewer and the effects tree are served by a shared, reference counted
local HTTP server (``ContentServerManager``); every session acquires it on
``setup()`` and releases it on ``teardown()``.
"""

from .config import (
    BACKEND_LANGUAGES,
    DEFAULT_GLOBALS,
    VALID_BACKENDS,
    Backend,
    Settings,
    ViewerGlobals,
    get_settings,
)
from .effects import find_effects, is_flat_layout, resolve_effect_ids
from .errors import (
    CaptureError,
    ForbiddenPathError,
    HarnessError,
    HarnessTimeoutError,
    PortConflictError,
    SetupError,
)
from .metrics import ImageMetrics, compute_image_metrics
from .operations import (
    benchmark_effect_fps,
    check_no_passthrough,
    check_uniform_responsiveness,
    compile_effect,
    render_effect_frame,
)
from .parity import ParityResult, check_pixel_parity, compare_pixel_buffers
from .results import (
    BenchmarkResult,
    CompileResult,
    PassthroughResult,
    RenderResult,
    UniformResult,
)
from .server import ContentServerManager, create_content_app, get_server_manager
from .session import BrowserSession, CapturedFrame, ConsoleEntry, SessionState

__version__ = "0.1.0"

__all__ = [
    # Config
    "Backend",
    "VALID_BACKENDS",
    "BACKEND_LANGUAGES",
    "ViewerGlobals",
    "DEFAULT_GLOBALS",
    "Settings",
    "get_settings",
    # Errors
    "HarnessError",
    "SetupError",
    "PortConflictError",
    "HarnessTimeoutError",
    "ForbiddenPathError",
    "CaptureError",
    # Server
    "ContentServerManager",
    "create_content_app",
    "get_server_manager",
    # Session
    "BrowserSession",
    "SessionState",
    "ConsoleEntry",
    "CapturedFrame",
    # Metrics and parity
    "ImageMetrics",
    "compute_image_metrics",
    "ParityResult",
    "compare_pixel_buffers",
    "check_pixel_parity",
    # Operations
    "CompileResult",
    "RenderResult",
    "BenchmarkResult",
    "PassthroughResult",
    "UniformResult",
    "compile_effect",
    "render_effect_frame",
    "benchmark_effect_fps",
    "check_no_passthrough",
    "check_uniform_responsiveness",
    # Effects
    "find_effects",
    "is_flat_layout",
    "resolve_effect_ids",
]
