"""
Configuration loader for the allocation engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./allocation.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class LockConfig:
    backend: str = "store"              # "store" (document store lease rows) | "redis"
    lease_ttl_seconds: int = 120        # a drain holding a lease longer than this is considered dead
    redis_url: str = "redis://localhost:6379"


@dataclass
class EscalationConfig:
    reminder_after_hours: float = 3
    chase_after_hours: float = 24
    escalate_after_hours: float = 72
    quiet_hours_start: int = 21         # local hour, inclusive
    quiet_hours_end: int = 9            # local hour, exclusive
    timezone: str = "Europe/London"
    sweep_interval_seconds: int = 300
    batch_size: int = 200
    enabled: bool = True


@dataclass
class BadgeConfig:
    max_deputies: int = 3
    lead_roles: list[str] = field(default_factory=lambda: [
        "lead vocal", "lead male vocal", "lead female vocal", "vocalist-guitarist",
    ])


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class TwilioConfig:
    account_sid: str = ""
    auth_token: str = ""
    whatsapp_sender: str = ""           # e.g. "whatsapp:+441234567890"
    sms_from: str = ""
    messaging_service_sid: str = ""
    status_callback_url: str = ""
    content_sids: dict[str, str] = field(default_factory=dict)   # message kind -> content SID


@dataclass
class CalendarConfig:
    provider: str = "none"              # "none" | "http"
    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 10.0


@dataclass
class Settings:
    app_name: str = "AllocationEngine"
    debug: bool = False
    public_site_url: str = "https://example.com"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    badge: BadgeConfig = field(default_factory=BadgeConfig)
    twilio: TwilioConfig = field(default_factory=TwilioConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} / ${VAR_NAME:-default} patterns with environment values.

    Unset variables without a default become an empty string so optional
    credentials read as "not configured".
    """
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        return os.environ.get(var_name, default if default is not None else "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ALLOCATION_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.public_site_url = raw.get("public_site_url", settings.public_site_url)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "locks" in raw:
            lk = raw["locks"]
            settings.locks = LockConfig(
                backend=lk.get("backend", "store"),
                lease_ttl_seconds=lk.get("lease_ttl_seconds", 120),
                redis_url=lk.get("redis_url", "redis://localhost:6379"),
            )

        if "escalation" in raw:
            esc = raw["escalation"]
            settings.escalation = EscalationConfig(
                reminder_after_hours=esc.get("reminder_after_hours", 3),
                chase_after_hours=esc.get("chase_after_hours", 24),
                escalate_after_hours=esc.get("escalate_after_hours", 72),
                quiet_hours_start=esc.get("quiet_hours_start", 21),
                quiet_hours_end=esc.get("quiet_hours_end", 9),
                timezone=esc.get("timezone", "Europe/London"),
                sweep_interval_seconds=esc.get("sweep_interval_seconds", 300),
                batch_size=esc.get("batch_size", 200),
                enabled=esc.get("enabled", True),
            )

        if "badge" in raw:
            b = raw["badge"]
            settings.badge = BadgeConfig(
                max_deputies=b.get("max_deputies", 3),
                lead_roles=b.get("lead_roles", BadgeConfig().lead_roles),
            )

        if "twilio" in raw:
            tw = raw["twilio"]
            settings.twilio = TwilioConfig(
                account_sid=tw.get("account_sid", ""),
                auth_token=tw.get("auth_token", ""),
                whatsapp_sender=tw.get("whatsapp_sender", ""),
                sms_from=tw.get("sms_from", ""),
                messaging_service_sid=tw.get("messaging_service_sid", ""),
                status_callback_url=tw.get("status_callback_url", ""),
                content_sids=tw.get("content_sids", {}) or {},
            )

        if "calendar" in raw:
            cal = raw["calendar"]
            settings.calendar = CalendarConfig(
                provider=cal.get("provider", "none"),
                base_url=cal.get("base_url", ""),
                api_key=cal.get("api_key", ""),
                timeout_seconds=cal.get("timeout_seconds", 10.0),
            )

        if "channels" in raw:
            for ch_name, ch_data in raw["channels"].items():
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings():
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
