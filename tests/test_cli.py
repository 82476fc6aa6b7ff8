"""Tests for the command line interface."""

import json
from unittest.mock import AsyncMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError

from shadeharness import cli
from shadeharness.errors import HarnessTimeoutError
from shadeharness.parity import ParityResult


class TestParser:

    def test_render_options(self):
        args = cli.create_parser().parse_args(
            ["render", "--effect", "synth/noise", "--backend", "webgpu", "--capture-image"]
        )
        assert args.command == "render"
        assert args.effect_id == "synth/noise"
        assert args.backend == "webgpu"
        assert args.capture_image
        assert args.warmup_frames == 10

    def test_invalid_backend(self):
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args(["compile", "--backend", "metal"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.create_parser().parse_args([])


class TestMain:

    def test_list(self, monkeypatch, effects_dir, capsys):
        monkeypatch.setenv("SHADE_EFFECTS_DIR", str(effects_dir))
        assert cli.main(["list"]) == 0
        assert json.loads(capsys.readouterr().out) == ["filter/blur", "synth/noise"]

    def test_list_flat(self, monkeypatch, flat_effect_dir, capsys):
        monkeypatch.setenv("SHADE_EFFECTS_DIR", str(flat_effect_dir))
        assert cli.main(["list"]) == 0
        assert json.loads(capsys.readouterr().out) == ["my-effect"]

    def test_ambiguous_effects(self, monkeypatch, effects_dir, capsys):
        monkeypatch.setenv("SHADE_EFFECTS_DIR", str(effects_dir))
        assert cli.main(["compile"]) == 1
        assert "Multiple effects found" in capsys.readouterr().err

    def test_parity_prints_results(self, monkeypatch, effects_dir, capsys):
        monkeypatch.setenv("SHADE_EFFECTS_DIR", str(effects_dir))
        results = [{"effect_id": "synth/noise", "status": "ok"}]
        with patch.object(cli, "run_effects", AsyncMock(return_value=results)) as run:
            code = cli.main(["parity", "--effect", "synth/noise", "--seed", "3"])
        assert code == 0
        assert json.loads(capsys.readouterr().out) == results[0]
        assert run.await_args.args[1] == ["synth/noise"]
        assert run.await_args.kwargs == {"backend": "webgl2", "headless": True, "launch_backend": "webgpu"}

    def test_failed_effect_sets_exit_code(self, monkeypatch, effects_dir, capsys):
        monkeypatch.setenv("SHADE_EFFECTS_DIR", str(effects_dir))
        results = [
            {"effect_id": "synth/noise", "status": "ok"},
            {"effect_id": "filter/blur", "status": "mismatch"},
        ]
        with patch.object(cli, "run_effects", AsyncMock(return_value=results)):
            code = cli.main(["parity", "--effects", "synth/noise,filter/blur"])
        assert code == 1
        assert len(json.loads(capsys.readouterr().out)) == 2


class TestRunEffects:

    async def test_errors_do_not_stop_the_batch(self, fake_playwright, mock_server_manager, settings):
        async def operation(session, effect_id):
            if effect_id == "bad/one":
                raise HarnessTimeoutError("Timed out")
            return ParityResult.error("skipped on purpose")

        with patch("shadeharness.session.get_server_manager", return_value=mock_server_manager), \
                patch("shadeharness.session.get_settings", return_value=settings):
            results = await cli.run_effects(operation, ["bad/one", "good/two"], backend="webgl2")

        assert [r["effect_id"] for r in results] == ["bad/one", "good/two"]
        assert results[0] == {"effect_id": "bad/one", "status": "error", "error": "Timed out"}
        assert results[1]["details"] == "skipped on purpose"
        mock_server_manager.release.assert_awaited_once()

    async def test_page_errors_do_not_stop_the_batch(self, fake_playwright, mock_server_manager, settings):
        seen = []

        async def operation(session, effect_id):
            seen.append(effect_id)
            if effect_id == "bad/one":
                raise PlaywrightError("Evaluation failed: ReferenceError: uTime is not defined")
            return ParityResult.error("skipped on purpose")

        with patch("shadeharness.session.get_server_manager", return_value=mock_server_manager), \
                patch("shadeharness.session.get_settings", return_value=settings):
            results = await cli.run_effects(operation, ["bad/one", "good/two"], backend="webgl2")

        assert seen == ["bad/one", "good/two"]
        assert results[0]["status"] == "error"
        assert "uTime is not defined" in results[0]["error"]
        assert results[1]["effect_id"] == "good/two"
        mock_server_manager.release.assert_awaited_once()

    async def test_launch_backend_sets_browser_flags(self, fake_playwright, mock_server_manager, settings):
        async def operation(session, effect_id):
            return ParityResult.error("skipped on purpose")

        with patch("shadeharness.session.get_server_manager", return_value=mock_server_manager), \
                patch("shadeharness.session.get_settings", return_value=settings):
            await cli.run_effects(operation, ["synth/noise"], backend="webgl2", launch_backend="webgpu")

        launch = fake_playwright.playwright.chromium.launch.await_args
        assert "--enable-unsafe-webgpu" in launch.kwargs["args"]
