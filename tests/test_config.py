"""Tests for TOML-backed settings."""

from pathlib import Path

import toml

from phasegraph.config_manager import (
    DEFAULT_CONFIG,
    Settings,
    load_full_config,
    load_settings,
    save_settings,
)


class TestLoadSettings:
    """Tests for resolving settings."""

    def test_defaults_without_file(self, temp_dir: Path):
        settings = load_settings(temp_dir / "missing.toml")
        assert settings == Settings()
        assert settings.detection.min_confidence == 0.7
        assert settings.storage.backup_retention == 5
        assert settings.impact.max_traversal_depth == 5
        assert settings.orchestrator.timeout_ms == 15000

    def test_file_values_merge_over_defaults(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text(
            "[detection]\nmin_confidence = 0.5\n\n"
            "[impact.impact_weights]\nmentions = 0.0\n\n"
            "[orchestrator]\nmax_concurrency = 2\n",
            encoding="utf-8",
        )
        settings = load_settings(path)

        assert settings.detection.min_confidence == 0.5
        assert settings.detection.max_evidence == 10
        assert settings.impact.impact_weights["mentions"] == 0.0
        assert settings.impact.impact_weights["depends_on"] == 0.9
        assert settings.orchestrator.max_concurrency == 2

    def test_unknown_keys_ignored(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text("[storage]\nflavour = 'json'\n", encoding="utf-8")
        assert load_settings(path).storage == Settings().storage

    def test_unreadable_file_falls_back(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text("[detection\nbroken", encoding="utf-8")
        assert load_full_config(path) == {}
        assert load_settings(path) == Settings()

    def test_overrides_win(self, temp_dir: Path):
        settings = load_settings(temp_dir / "missing.toml", {"orchestrator": {"timeout_ms": 250}})
        assert settings.orchestrator.timeout_ms == 250

    def test_environment_overrides(self, temp_dir: Path, monkeypatch):
        monkeypatch.setenv("PHASEGRAPH_TIMEOUT_MS", "1234")
        monkeypatch.setenv("PHASEGRAPH_PARALLEL", "0")
        settings = load_settings(temp_dir / "missing.toml")
        assert settings.orchestrator.timeout_ms == 1234
        assert settings.orchestrator.enable_parallel_detection is False

    def test_bad_environment_value_ignored(self, temp_dir: Path, monkeypatch):
        monkeypatch.setenv("PHASEGRAPH_TIMEOUT_MS", "soon")
        assert load_settings(temp_dir / "missing.toml").orchestrator.timeout_ms == 15000

    def test_default_config_file_is_used(self):
        from phasegraph import config

        config.CONFIG_FILE.write_text("[storage]\nbackup_retention = 9\n", encoding="utf-8")
        assert load_settings().storage.backup_retention == 9


class TestSaveSettings:
    """Tests for writing settings."""

    def test_round_trip(self, temp_dir: Path):
        path = temp_dir / "nested" / "config.toml"
        settings = Settings()
        settings.detection.case_sensitive = True

        assert save_settings(settings, path) is True
        assert load_settings(path).detection.case_sensitive is True

    def test_foreign_sections_preserved(self, temp_dir: Path):
        path = temp_dir / "config.toml"
        path.write_text("[ui]\ntheme = 'dark'\n", encoding="utf-8")

        save_settings(Settings(), path)
        data = toml.load(path)
        assert data["ui"] == {"theme": "dark"}
        assert set(DEFAULT_CONFIG) <= set(data)
