"""Tests for configuration values and their loaders."""

import pytest

from driftsense.config import FilterConfig, SmartDiagnosticsConfig


class TestDefaults:
    def test_defaults(self):
        config = SmartDiagnosticsConfig()
        assert config.idle_ms == 400
        assert config.enabled is True
        assert config.filter == FilterConfig(True, True, True)

    def test_negative_idle_rejected(self):
        with pytest.raises(ValueError):
            SmartDiagnosticsConfig(idle_ms=-5)


class TestFromSettings:
    def test_reads_editor_keys(self):
        config = SmartDiagnosticsConfig.from_settings(
            {
                "diagnostics.debounceMs": 250,
                "diagnostics.enabled": False,
                "filter.ignoreComments": False,
                "unrelated.key": "whatever",
            }
        )
        assert config.idle_ms == 250
        assert config.enabled is False
        assert config.filter == FilterConfig(ignore_comments=False)

    def test_invalid_values_fall_back(self, caplog):
        config = SmartDiagnosticsConfig.from_settings(
            {"diagnostics.debounceMs": "soon", "filter.ignoreWhitespace": "maybe"}
        )
        assert config == SmartDiagnosticsConfig()
        assert "diagnostics.debounceMs" in caplog.text


class TestFromEnv:
    def test_reads_environment(self):
        config = SmartDiagnosticsConfig.from_env(
            {
                "DRIFTSENSE_IDLE_MS": "120",
                "DRIFTSENSE_ENABLED": "yes",
                "DRIFTSENSE_IGNORE_FORMATTING": "0",
            }
        )
        assert config.idle_ms == 120
        assert config.enabled is True
        assert config.filter.ignore_formatting is False
        assert config.filter.ignore_comments is True

    def test_blank_values_ignored(self):
        assert SmartDiagnosticsConfig.from_env({"DRIFTSENSE_IDLE_MS": "  "}).idle_ms == 400

    def test_negative_idle_falls_back(self):
        assert SmartDiagnosticsConfig.from_env({"DRIFTSENSE_IDLE_MS": "-1"}).idle_ms == 400

    def test_process_environment(self, monkeypatch):
        monkeypatch.setenv("DRIFTSENSE_IGNORE_COMMENTS", "false")
        assert SmartDiagnosticsConfig.from_env().filter.ignore_comments is False
