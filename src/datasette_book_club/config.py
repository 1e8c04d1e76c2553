"""
Configuration for datasette-book-club.

Read from the ``datasette-book-club`` section of datasette.yaml, either via
Datasette's plugin_config() at request time or directly from the YAML file
for the command-line scripts.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-book-club"


@dataclass
class RateLimitRule:
    """Fixed-window limit: at most max_attempts per window_seconds."""

    max_attempts: int = 10
    window_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, default: "RateLimitRule") -> "RateLimitRule":
        if not data:
            return default
        return cls(
            max_attempts=int(data.get("max_attempts", default.max_attempts)),
            window_seconds=int(data.get("window_seconds", default.window_seconds)),
        )


@dataclass
class RulesConfig:
    """Rate limit rules for the password-checking endpoints."""

    verify_password_rate_limit: RateLimitRule = field(default_factory=RateLimitRule)
    login_rate_limit: RateLimitRule = field(default_factory=RateLimitRule)


@dataclass
class EventbriteConfig:
    """Eventbrite API connection configuration."""

    api_base: str = "https://www.eventbriteapi.com/v3"
    private_token: str | None = None
    organization_id: str | None = None
    default_country: str = "AU"
    timeout_seconds: float = 30.0

    def get_private_token(self) -> str | None:
        """Get the API token from config or environment."""
        return self.private_token or os.environ.get("EVENTBRITE_PRIVATE_TOKEN") or None

    def get_organization_id(self) -> str | None:
        """Get the organization ID from config or environment."""
        return self.organization_id or os.environ.get("EVENTBRITE_ORGANIZATION_ID") or None

    @property
    def is_configured(self) -> bool:
        return bool(self.get_private_token() and self.get_organization_id())


@dataclass
class BookClubConfig:
    """Complete datasette-book-club configuration."""

    db_path: Path = field(default_factory=lambda: Path("book_club.db"))
    max_suggestions_per_visitor: int = 2
    comment_max_length: int = 350
    top_suggestions_limit: int = 6
    status_max_cache_seconds: int = 60

    rules: RulesConfig = field(default_factory=RulesConfig)
    eventbrite: EventbriteConfig = field(default_factory=EventbriteConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BookClubConfig":
        """Create config from a dictionary (e.g., from plugin_config())."""
        config = cls()
        if not data:
            return config

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        for key in (
            "max_suggestions_per_visitor",
            "comment_max_length",
            "top_suggestions_limit",
            "status_max_cache_seconds",
        ):
            if key in data:
                setattr(config, key, int(data[key]))

        if "rules" in data:
            rules = data["rules"] or {}
            config.rules = RulesConfig(
                verify_password_rate_limit=RateLimitRule.from_dict(
                    rules.get("verify_password_rate_limit"),
                    config.rules.verify_password_rate_limit,
                ),
                login_rate_limit=RateLimitRule.from_dict(
                    rules.get("login_rate_limit"),
                    config.rules.login_rate_limit,
                ),
            )

        if "eventbrite" in data:
            eb = data["eventbrite"] or {}
            config.eventbrite = EventbriteConfig(
                api_base=eb.get("api_base", config.eventbrite.api_base),
                private_token=eb.get("private_token"),
                organization_id=eb.get("organization_id"),
                default_country=eb.get("default_country", "AU"),
                timeout_seconds=float(eb.get("timeout_seconds", 30.0)),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "BookClubConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data.get("plugins", {}).get(PLUGIN_NAME, {}))

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization (secrets omitted)."""
        return {
            "db_path": str(self.db_path),
            "max_suggestions_per_visitor": self.max_suggestions_per_visitor,
            "comment_max_length": self.comment_max_length,
            "top_suggestions_limit": self.top_suggestions_limit,
            "status_max_cache_seconds": self.status_max_cache_seconds,
            "rules": {
                "verify_password_rate_limit": {
                    "max_attempts": self.rules.verify_password_rate_limit.max_attempts,
                    "window_seconds": self.rules.verify_password_rate_limit.window_seconds,
                },
                "login_rate_limit": {
                    "max_attempts": self.rules.login_rate_limit.max_attempts,
                    "window_seconds": self.rules.login_rate_limit.window_seconds,
                },
            },
            "eventbrite": {
                "api_base": self.eventbrite.api_base,
                "default_country": self.eventbrite.default_country,
                "configured": self.eventbrite.is_configured,
            },
        }
