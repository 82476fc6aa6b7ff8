"""Tests for cross-backend pixel parity."""

import numpy as np
import pytest

from helpers import make_frame, solid_frame
from shadeharness.errors import CaptureError, HarnessTimeoutError
from shadeharness.parity import ParityResult, check_pixel_parity, compare_pixel_buffers


class TestComparePixelBuffers:
    """Exhaustive channel comparison."""

    def test_identical_buffers(self):
        rng = np.random.default_rng(3)
        image = rng.integers(0, 256, size=(16, 16, 4), dtype=np.uint8)
        result = compare_pixel_buffers(image, image.copy(), 16, 16)
        assert result.status == "ok"
        assert result.max_diff == 0
        assert result.mean_diff == 0.0
        assert result.mismatch_count == 0
        assert result.mismatch_percent == 0.0
        assert result.resolution == (16, 16)
        assert result.details.startswith("Pixel parity OK")

    def test_difference_within_epsilon(self):
        """Off-by-one rounding between backends passes with the default epsilon."""
        a = np.full((8, 8, 4), 100, dtype=np.uint8)
        b = np.full((8, 8, 4), 101, dtype=np.uint8)
        result = compare_pixel_buffers(a, b, 8, 8)
        assert result.status == "ok"
        assert result.max_diff == 1
        assert result.mean_diff == 1.0
        assert result.mismatch_count == 0

    def test_mismatch_over_threshold(self):
        """2 of 64 pixels fully different: 8 of 256 channels = 3.125%."""
        a = np.zeros((8, 8, 4), dtype=np.uint8)
        b = a.copy()
        b[0, 0] = (255, 255, 255, 255)
        b[7, 7] = (255, 255, 255, 255)
        result = compare_pixel_buffers(a, b, 8, 8)
        assert result.status == "mismatch"
        assert result.max_diff == 255
        assert result.mismatch_count == 8
        assert result.mismatch_percent == pytest.approx(3.125, abs=0.01)
        assert "channels differ by >1" in result.details

    def test_every_pixel_is_compared(self):
        """A single divergent channel is counted; no sampling."""
        a = np.zeros((100, 100, 4), dtype=np.uint8)
        b = a.copy()
        b[57, 33, 2] = 9
        result = compare_pixel_buffers(a, b, 100, 100)
        assert result.mismatch_count == 1
        assert result.max_diff == 9
        assert result.status == "ok"

    def test_mismatch_threshold_is_configurable(self):
        a = np.zeros((10, 10, 4), dtype=np.uint8)
        b = a.copy()
        b[0, 0, 0] = 200
        result = compare_pixel_buffers(a, b, 10, 10, mismatch_threshold=0.1)
        assert result.status == "mismatch"

    def test_float_buffers_use_255_scale(self):
        a = np.zeros((4, 4, 4), dtype=np.float32)
        b = np.full((4, 4, 4), 0.5, dtype=np.float32)
        result = compare_pixel_buffers(a, b, 4, 4)
        assert result.max_diff == pytest.approx(127.5)
        assert result.status == "mismatch"

    def test_size_mismatch_is_error(self):
        result = compare_pixel_buffers(bytes(64), bytes(60), 4, 4)
        assert result.status == "error"
        assert "size mismatch" in result.details

    def test_empty_buffers_are_error(self):
        result = compare_pixel_buffers(b"", b"", 0, 0)
        assert result.status == "error"

    def test_to_dict(self):
        data = ParityResult.error("boom", (4, 2)).to_dict()
        assert data["status"] == "error"
        assert data["resolution"] == [4, 2]
        assert "console_errors" not in data


class TestCheckPixelParity:
    """The browser flow around the comparison, with a mocked session."""

    async def test_identical_backends_ok(self, mock_session):
        frame = solid_frame((10, 20, 30, 255))
        mock_session.capture_pixels.side_effect = [frame, frame]

        result = await check_pixel_parity(mock_session, "synth/noise")

        assert result.status == "ok"
        assert result.resolution == (8, 8)
        backends = [c.args[0] for c in mock_session.set_backend.await_args_list]
        assert backends == ["webgl2", "webgl2", "webgpu"]
        mock_session.select_effect.assert_awaited_once_with("synth/noise")
        mock_session.wait_for_compile.assert_awaited_once_with(accept_error=False)
        mock_session.resume.assert_awaited_once()

    async def test_captures_happen_paused_at_zero(self, mock_session):
        frame = solid_frame((0, 0, 0, 255))
        mock_session.capture_pixels.side_effect = [frame, frame]

        await check_pixel_parity(mock_session, "synth/noise")

        assert mock_session.pause_at.await_count == 2
        for call in mock_session.pause_at.await_args_list:
            assert call.args == (0.0,)
        for call in mock_session.capture_pixels.await_args_list:
            assert call.kwargs == {"render_time": 0.0}

    async def test_seed_is_forced_for_both_backends(self, mock_session):
        frame = solid_frame((0, 0, 0, 255))
        mock_session.capture_pixels.side_effect = [frame, frame]

        await check_pixel_parity(mock_session, "synth/noise", seed=42)

        assert [c.args for c in mock_session.set_seed.await_args_list] == [(42,), (42,)]

    async def test_no_seed_leaves_uniforms_alone(self, mock_session):
        frame = solid_frame((0, 0, 0, 255))
        mock_session.capture_pixels.side_effect = [frame, frame]

        await check_pixel_parity(mock_session, "synth/noise")

        mock_session.set_seed.assert_not_awaited()

    async def test_divergent_backends_mismatch(self, mock_session):
        mock_session.capture_pixels.side_effect = [
            solid_frame((0, 0, 0, 255)),
            solid_frame((255, 0, 0, 255)),
        ]
        result = await check_pixel_parity(mock_session, "synth/noise")
        assert result.status == "mismatch"
        assert result.mismatch_percent == 25.0

    async def test_second_capture_failure_resumes(self, mock_session):
        """A failed capture reports the first frame's resolution and unpauses."""
        mock_session.capture_pixels.side_effect = [
            solid_frame((0, 0, 0, 255), width=12, height=6),
            CaptureError("No renderer found"),
        ]
        result = await check_pixel_parity(mock_session, "synth/noise")
        assert result.status == "error"
        assert "webgpu" in result.details
        assert result.resolution == (12, 6)
        mock_session.resume.assert_awaited_once()

    async def test_compile_timeout_is_error(self, mock_session):
        mock_session.wait_for_compile.side_effect = HarnessTimeoutError("Timed out")
        result = await check_pixel_parity(mock_session, "synth/noise")
        assert result.status == "error"
        assert result.resolution == (0, 0)
        mock_session.capture_pixels.assert_not_awaited()
        mock_session.resume.assert_awaited_once()

    async def test_resolution_mismatch_is_error(self, mock_session):
        mock_session.capture_pixels.side_effect = [
            make_frame(np.zeros((4, 4, 4), dtype=np.uint8)),
            make_frame(np.zeros((8, 8, 4), dtype=np.uint8)),
        ]
        result = await check_pixel_parity(mock_session, "synth/noise")
        assert result.status == "error"
        assert "Resolution mismatch" in result.details
