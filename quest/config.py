"""Configuration loading from settings.yaml and .env."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .errors import ConfigError


def load_config(
    config_dir: str | Path | None = None,
) -> dict:
    """Load settings.yaml and .env, return merged config dict."""
    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    config_dir = Path(config_dir)

    # Load .env (silently skip if missing)
    env_path = config_dir / ".env"
    load_dotenv(env_path)

    settings_path = config_dir / "settings.yaml"
    if not settings_path.exists():
        raise ConfigError(f"Config not found: {settings_path}")

    with open(settings_path, encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    cfg["_secrets"] = {
        "x_bearer_token": os.getenv("X_BEARER_TOKEN", ""),
        "x_user_access_token": os.getenv("X_USER_ACCESS_TOKEN", ""),
        "anthropic_api_key": os.getenv("ANTHROPIC_API_KEY", ""),
    }

    return cfg


def require_secrets(cfg: dict, *names: str) -> None:
    """Fail fast when a credential the process needs is not configured."""
    secrets = cfg.get("_secrets", {})
    missing = [name for name in names if not secrets.get(name)]
    if missing:
        env_names = ", ".join(name.upper() for name in missing)
        raise ConfigError(f"Missing credentials: {env_names}")


@dataclass(frozen=True)
class QuestSettings:
    """Timing and size constants for quest progression."""

    chapter_count: int = 5
    voting_window_seconds: float = 120
    # The collection task fires after the advertised deadline.
    collection_delay_seconds: float = 180
    recovery_grace_seconds: float = 60
    # A chapter claimed for posting longer ago than this may be claimed again.
    posting_claim_seconds: float = 300
    evaluate_seeds: bool = False
    public_url: str = ""

    @classmethod
    def from_config(cls, cfg: dict | None) -> QuestSettings:
        quest_cfg = (cfg or {}).get("quest", {}) or {}
        settings = cls(
            chapter_count=int(quest_cfg.get("chapter_count", cls.chapter_count)),
            voting_window_seconds=float(
                quest_cfg.get("voting_window_seconds", cls.voting_window_seconds)
            ),
            collection_delay_seconds=float(
                quest_cfg.get("collection_delay_seconds", cls.collection_delay_seconds)
            ),
            recovery_grace_seconds=float(
                quest_cfg.get("recovery_grace_seconds", cls.recovery_grace_seconds)
            ),
            posting_claim_seconds=float(
                quest_cfg.get("posting_claim_seconds", cls.posting_claim_seconds)
            ),
            evaluate_seeds=bool(quest_cfg.get("evaluate_seeds", cls.evaluate_seeds)),
            public_url=str(quest_cfg.get("public_url", cls.public_url) or ""),
        )
        if settings.chapter_count < 2:
            raise ConfigError("quest.chapter_count must be at least 2")
        if settings.collection_delay_seconds < settings.voting_window_seconds:
            raise ConfigError("quest.collection_delay_seconds must not precede the voting deadline")
        if settings.posting_claim_seconds <= 0:
            raise ConfigError("quest.posting_claim_seconds must be positive")
        return settings
