"""Discovery of effects in an effects directory.

Two layouts are supported:

- nested: ``<effects_dir>/<namespace>/<effect>/definition.json``, effect ids
  are ``namespace/effect``
- flat: ``<effects_dir>/definition.json``, the directory is a single effect
"""
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFINITION_FILES = ("definition.json", "definition.js")


def has_definition(directory: Path) -> bool:
    """Check whether ``directory`` contains an effect definition file."""
    return any((directory / name).is_file() for name in DEFINITION_FILES)


def is_flat_layout(effects_dir: Path) -> bool:
    """Check whether ``effects_dir`` itself is a single effect."""
    return has_definition(Path(effects_dir))


def find_effects(effects_dir: Path) -> list[str]:
    """List the ``namespace/effect`` ids of a nested effects directory."""
    effects_dir = Path(effects_dir)
    found = []
    for ns_dir in sorted(effects_dir.iterdir()):
        if ns_dir.name.startswith(".") or not ns_dir.is_dir():
            continue
        for effect_dir in sorted(ns_dir.iterdir()):
            if effect_dir.name.startswith(".") or not effect_dir.is_dir():
                continue
            if has_definition(effect_dir):
                found.append(f"{ns_dir.name}/{effect_dir.name}")
    return found


def resolve_effect_ids(
    effects_dir: Path,
    effect_id: Optional[str] = None,
    effects: Optional[str] = None,
) -> list[str]:
    """Resolve which effects an operation should run on.

    Args:
        effects_dir: Effects directory used for auto-detection
        effect_id: Single effect id (e.g. ``synth/noise``)
        effects: Comma separated effect ids, takes precedence over ``effect_id``

    Returns:
        List of effect ids

    Raises:
        ValueError: If nothing was given and auto-detection does not find
            exactly one effect
    """
    if effects:
        return [e.strip() for e in effects.split(",") if e.strip()]

    if effect_id:
        return [effect_id]

    effects_dir = Path(effects_dir)
    if not effects_dir.is_dir():
        raise ValueError(
            f"Effects directory not found: {effects_dir}. Specify effect_id or set SHADE_EFFECTS_DIR."
        )

    try:
        found = find_effects(effects_dir)
    except OSError as e:
        raise ValueError(f"Failed to scan effects directory: {effects_dir}") from e

    if not found:
        raise ValueError(f"No effects found in {effects_dir}. Specify effect_id.")

    if len(found) == 1:
        logger.warning(f"Auto-detected single effect: {found[0]}")
        return found

    listed = ", ".join(found[:10]) + ("..." if len(found) > 10 else "")
    raise ValueError(
        f"Multiple effects found ({len(found)}). Please specify effect_id or effects parameter. "
        f"Available: {listed}"
    )


__all__ = [
    "DEFINITION_FILES",
    "has_definition",
    "is_flat_layout",
    "find_effects",
    "resolve_effect_ids",
]
