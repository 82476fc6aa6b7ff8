"""Command line entry point.

Usage:
    python -m shadeharness list
    python -m shadeharness compile --effect synth/noise
    python -m shadeharness render --effects synth/noise,filter/blur --backend webgpu --capture-image
    python -m shadeharness parity --effect synth/noise --epsilon 2 --seed 1

Results are printed as JSON; a single effect prints one object, several
effects print a list.
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError

from .config import VALID_BACKENDS, get_settings
from .effects import find_effects, is_flat_layout, resolve_effect_ids
from .errors import HarnessError
from .operations import (
    benchmark_effect_fps,
    check_no_passthrough,
    check_uniform_responsiveness,
    compile_effect,
    render_effect_frame,
)
from .parity import check_pixel_parity
from .session import BrowserSession

logger = logging.getLogger(__name__)

Operation = Callable[[BrowserSession, str], Awaitable[Any]]


def _to_dict(result: Any) -> dict[str, Any]:
    return result.to_dict() if hasattr(result, "to_dict") else dict(result)


def build_operation(args: argparse.Namespace) -> Operation:
    """Bind the command line options of a sub-command to its operation."""
    if args.command == "compile":
        return compile_effect
    if args.command == "render":
        return lambda s, e: render_effect_frame(
            s, e,
            warmup_frames=args.warmup_frames,
            capture_image=args.capture_image,
        )
    if args.command == "benchmark":
        return lambda s, e: benchmark_effect_fps(
            s, e,
            target_fps=args.target_fps,
            duration_seconds=args.duration,
        )
    if args.command == "parity":
        return lambda s, e: check_pixel_parity(s, e, epsilon=args.epsilon, seed=args.seed)
    if args.command == "passthrough":
        return check_no_passthrough
    if args.command == "uniforms":
        return check_uniform_responsiveness
    raise ValueError(f"Unknown command: {args.command}")


async def run_effects(
    operation: Operation,
    effect_ids: list[str],
    backend: str,
    headless: bool = True,
    launch_backend: Optional[str] = None,
) -> list[dict[str, Any]]:
    """Run ``operation`` for each effect in one shared browser session.

    Harness and in-page failures of one effect are reported as an error
    entry; the remaining effects still run.
    """
    results = []
    async with BrowserSession(
        backend=backend, headless=headless, launch_backend=launch_backend
    ) as session:
        for effect_id in effect_ids:
            try:
                result = _to_dict(await operation(session, effect_id))
            except (HarnessError, PlaywrightError) as e:
                logger.error(f"{effect_id}: {e}")
                result = {"status": "error", "error": str(e)}
            results.append({"effect_id": effect_id, **result})
    return results


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shade-harness",
        description="Drive the effect viewer in a headless browser and check rendered output.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List effects in the effects directory")

    def add_effect_command(name: str, help_text: str) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--effect", dest="effect_id", help="Single effect id (e.g. synth/noise)")
        cmd.add_argument("--effects", help="Comma separated effect ids")
        cmd.add_argument("--backend", choices=VALID_BACKENDS, help="Rendering backend")
        cmd.add_argument("--headed", action="store_true", help="Show the browser window")
        return cmd

    add_effect_command("compile", "Compile effects and report per-pass status")

    render = add_effect_command("render", "Render a frame and compute image metrics")
    render.add_argument("--warmup-frames", type=int, default=10)
    render.add_argument("--capture-image", action="store_true", help="Include a PNG data URI")

    benchmark = add_effect_command("benchmark", "Measure achieved FPS")
    benchmark.add_argument("--target-fps", type=float, default=60)
    benchmark.add_argument("--duration", type=float, default=5.0, help="Seconds")

    parity = add_effect_command("parity", "Compare WebGL2 and WebGPU output pixel by pixel")
    parity.add_argument("--epsilon", type=float, default=1.0, help="Allowed channel difference (0-255)")
    parity.add_argument("--seed", type=int, default=None, help="Fixed random seed for all passes")

    add_effect_command("passthrough", "Verify filter effects modify their input")
    add_effect_command("uniforms", "Verify uniforms affect the output")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()

    if args.command == "list":
        effects_dir = settings.effects_dir
        if is_flat_layout(effects_dir):
            effects = [effects_dir.name]
        elif effects_dir.is_dir():
            effects = find_effects(effects_dir)
        else:
            print(f"Effects directory not found: {effects_dir}", file=sys.stderr)
            return 1
        print(json.dumps(effects, indent=2))
        return 0

    try:
        effect_ids = resolve_effect_ids(settings.effects_dir, args.effect_id, args.effects)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    results = asyncio.run(run_effects(
        build_operation(args),
        effect_ids,
        backend=args.backend or settings.BACKEND,
        headless=not args.headed,
        launch_backend="webgpu" if args.command == "parity" else None,
    ))
    print(json.dumps(results[0] if len(results) == 1 else results, indent=2))
    return 0 if all(r.get("status") in ("ok", "skipped") for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
