"""Shared builders for shade-harness tests."""

from .frames import make_frame, solid_frame

__all__ = ["make_frame", "solid_frame"]
