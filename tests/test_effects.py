"""Tests for effect discovery."""

import logging

import pytest

from shadeharness.effects import find_effects, has_definition, is_flat_layout, resolve_effect_ids


class TestDiscovery:

    def test_find_nested_effects(self, effects_dir):
        assert find_effects(effects_dir) == ["filter/blur", "synth/noise"]

    def test_ignores_hidden_and_incomplete(self, effects_dir):
        (effects_dir / ".cache" / "x").mkdir(parents=True)
        (effects_dir / ".cache" / "x" / "definition.json").write_text("{}")
        (effects_dir / "synth" / "draft").mkdir()
        (effects_dir / "README.md").write_text("effects")
        assert find_effects(effects_dir) == ["filter/blur", "synth/noise"]

    def test_js_definition_counts(self, effects_dir):
        legacy = effects_dir / "synth" / "legacy"
        legacy.mkdir()
        (legacy / "definition.js").write_text("export default {}")
        assert "synth/legacy" in find_effects(effects_dir)

    def test_flat_layout(self, flat_effect_dir, effects_dir):
        assert is_flat_layout(flat_effect_dir)
        assert not is_flat_layout(effects_dir)
        assert has_definition(effects_dir / "synth" / "noise")


class TestResolveEffectIds:

    def test_csv_takes_precedence(self, effects_dir):
        ids = resolve_effect_ids(effects_dir, "synth/noise", " a/b, c/d ,")
        assert ids == ["a/b", "c/d"]

    def test_single_effect_id(self, tmp_path):
        assert resolve_effect_ids(tmp_path / "missing", "synth/noise") == ["synth/noise"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValueError, match="Effects directory not found"):
            resolve_effect_ids(tmp_path / "missing")

    def test_empty_directory(self, tmp_path):
        with pytest.raises(ValueError, match="No effects found"):
            resolve_effect_ids(tmp_path)

    def test_multiple_effects_need_a_choice(self, effects_dir):
        with pytest.raises(ValueError, match=r"Multiple effects found \(2\)") as exc:
            resolve_effect_ids(effects_dir)
        assert "filter/blur, synth/noise" in str(exc.value)

    def test_auto_detect_single_effect(self, effects_dir, caplog):
        import shutil
        shutil.rmtree(effects_dir / "filter")
        with caplog.at_level(logging.WARNING, logger="shadeharness.effects"):
            assert resolve_effect_ids(effects_dir) == ["synth/noise"]
        assert "Auto-detected single effect" in caplog.text
