"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from quest.config import QuestSettings, load_config, require_secrets
from quest.errors import ConfigError


def _write_config(config_dir: Path, settings: str, env: str = "") -> None:
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "settings.yaml").write_text(settings, encoding="utf-8")
    if env:
        (config_dir / ".env").write_text(env, encoding="utf-8")


def test_load_config_merges_yaml_and_env(tmp_path: Path, monkeypatch):
    for name in ("X_BEARER_TOKEN", "X_USER_ACCESS_TOKEN", "ANTHROPIC_API_KEY"):
        # setenv first so monkeypatch also removes what load_dotenv adds
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    _write_config(
        tmp_path,
        "quest:\n  chapter_count: 4\n",
        "X_BEARER_TOKEN=app-token\nANTHROPIC_API_KEY=sk-test\n",
    )
    cfg = load_config(tmp_path)
    assert cfg["quest"]["chapter_count"] == 4
    assert cfg["_secrets"]["x_bearer_token"] == "app-token"
    assert cfg["_secrets"]["anthropic_api_key"] == "sk-test"
    assert cfg["_secrets"]["x_user_access_token"] == ""


def test_load_config_requires_settings_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="Config not found"):
        load_config(tmp_path / "missing")


def test_require_secrets_names_missing_credentials():
    cfg = {"_secrets": {"x_bearer_token": "t", "anthropic_api_key": ""}}
    require_secrets(cfg, "x_bearer_token")
    with pytest.raises(ConfigError, match="ANTHROPIC_API_KEY"):
        require_secrets(cfg, "x_bearer_token", "anthropic_api_key")


class TestQuestSettings:
    def test_defaults(self):
        settings = QuestSettings.from_config({})
        assert settings.chapter_count == 5
        assert settings.voting_window_seconds == 120
        assert settings.collection_delay_seconds == 180

    def test_overrides(self):
        settings = QuestSettings.from_config({
            "quest": {"chapter_count": 3, "voting_window_seconds": 60, "collection_delay_seconds": 90}
        })
        assert settings.chapter_count == 3
        assert settings.voting_window_seconds == 60.0
        assert settings.collection_delay_seconds == 90.0

    def test_rejects_too_few_chapters(self):
        with pytest.raises(ConfigError):
            QuestSettings.from_config({"quest": {"chapter_count": 1}})

    def test_rejects_collection_before_deadline(self):
        with pytest.raises(ConfigError):
            QuestSettings.from_config({"quest": {"voting_window_seconds": 300}})

    def test_posting_claim_window(self):
        assert QuestSettings.from_config({}).posting_claim_seconds == 300
        settings = QuestSettings.from_config({"quest": {"posting_claim_seconds": 45}})
        assert settings.posting_claim_seconds == 45.0
        with pytest.raises(ConfigError):
            QuestSettings.from_config({"quest": {"posting_claim_seconds": 0}})
