"""
Service configuration
=====================
Every tunable is read from the environment once, at startup.

Secrets default to empty strings so the module always imports; a
collaborator that needs a missing secret fails at call time instead.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    public_url: str = "http://localhost:3000"

    # hCaptcha
    hcaptcha_secret_key: str = ""
    hcaptcha_site_key: str = ""
    hcaptcha_verify_url: str = "https://api.hcaptcha.com/siteverify"

    # Discord
    bot_token: str = ""
    application_id: str = ""
    discord_public_key: str = ""
    guild_id: str = ""
    role_id: str = ""
    discord_api_base: str = "https://discord.com/api/v10"

    # Challenge lifecycle
    challenge_ttl_seconds: int = 600  # 10 minutes
    min_confidence: float = 0.5
    http_timeout_seconds: float = 5.0
    redeem_lock_seconds: float = 30.0

    trust_forwarded_for: bool = False
    register_commands: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            redis_url=os.environ.get("REDIS_URL", cls.redis_url),
            public_url=os.environ.get("PUBLIC_URL", cls.public_url).rstrip("/"),
            hcaptcha_secret_key=os.environ.get("HCAPTCHA_SECRET_KEY", ""),
            hcaptcha_site_key=os.environ.get("HCAPTCHA_SITE_KEY", ""),
            hcaptcha_verify_url=os.environ.get(
                "HCAPTCHA_VERIFY_URL", cls.hcaptcha_verify_url
            ),
            bot_token=os.environ.get("BOT_TOKEN", ""),
            application_id=os.environ.get("APPLICATION_ID", ""),
            discord_public_key=os.environ.get("DISCORD_PUBLIC_KEY", ""),
            guild_id=os.environ.get("GUILD_ID", ""),
            role_id=os.environ.get("ROLE_ID", ""),
            discord_api_base=os.environ.get(
                "DISCORD_API_BASE", cls.discord_api_base
            ).rstrip("/"),
            challenge_ttl_seconds=int(
                os.environ.get("CHALLENGE_TTL_SECONDS", cls.challenge_ttl_seconds)
            ),
            min_confidence=float(os.environ.get("MIN_CONFIDENCE", cls.min_confidence)),
            http_timeout_seconds=float(
                os.environ.get("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds)
            ),
            redeem_lock_seconds=float(
                os.environ.get("REDEEM_LOCK_SECONDS", cls.redeem_lock_seconds)
            ),
            trust_forwarded_for=_env_bool("TRUST_FORWARDED_FOR"),
            register_commands=_env_bool("REGISTER_COMMANDS"),
            log_level=os.environ.get("LOG_LEVEL", cls.log_level).upper(),
        )
