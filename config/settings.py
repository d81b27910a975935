"""
Configuration loader for the QueueWatch system.
Reads settings from YAML file with environment variable substitution,
then applies direct environment overrides for deploy-time secrets.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class QueueWatchError(Exception):
    """Base exception for the QueueWatch service."""


class ConfigurationError(QueueWatchError):
    """Required configuration is missing or invalid. Fatal at startup."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


@dataclass
class LineConfig:
    channel_access_token: str = ""
    channel_secret: str = ""
    api_base_url: str = "https://api.line.me"
    timeout_seconds: float = 10.0
    rate_per_second: float = 50.0
    burst: int = 100


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"                      # "sql" | "memory" | "rest"
    url: str = "sqlite:///./queuewatch.db"             # postgresql:// | sqlite://
    supabase_url: str = ""                             # for rest backend
    supabase_service_key: str = ""


@dataclass
class DispatchConfig:
    scan_interval_seconds: float = 30.0
    near_threshold: int = 5             # notify when this many tickets or fewer remain
    dedup_retention_seconds: float = 1800.0
    eviction_interval_seconds: float = 60.0
    max_concurrency: int = 10           # concurrent subscriber evaluations per scan
    subscriber_timeout_seconds: float = 15.0
    locale: str = "th"                  # "th" | "en"


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    admin_token: str = ""               # guards the forced scan endpoint when set


@dataclass
class Settings:
    app_name: str = "QueueWatch"
    debug: bool = False
    line: LineConfig = field(default_factory=LineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    def validate(self) -> "Settings":
        """Raise ConfigurationError listing every missing or invalid value."""
        problems = []
        if not _is_set(self.line.channel_access_token):
            problems.append("LINE_CHANNEL_ACCESS_TOKEN is not set")
        if not _is_set(self.line.channel_secret):
            problems.append("LINE_CHANNEL_SECRET is not set")

        backend = self.database.store_backend
        if backend not in ("memory", "sql", "rest"):
            problems.append(f"unknown store_backend '{backend}'")
        if backend == "rest":
            if not _is_set(self.database.supabase_url):
                problems.append("SUPABASE_URL is not set")
            if not _is_set(self.database.supabase_service_key):
                problems.append("SUPABASE_SERVICE_KEY is not set")
        if backend == "sql" and not _is_set(self.database.url):
            problems.append("DATABASE_URL is not set")

        d = self.dispatch
        if d.near_threshold < 0:
            problems.append("near_threshold must be >= 0")
        if d.scan_interval_seconds <= 0:
            problems.append("scan_interval_seconds must be positive")
        if d.eviction_interval_seconds <= 0:
            problems.append("eviction_interval_seconds must be positive")
        if d.dedup_retention_seconds <= 0:
            problems.append("dedup_retention_seconds must be positive")
        if d.max_concurrency < 1:
            problems.append("max_concurrency must be at least 1")
        if d.locale not in ("th", "en"):
            problems.append(f"unsupported locale '{d.locale}'")

        if problems:
            raise ConfigurationError(problems)
        return self


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)\}')


def _is_set(value: str) -> bool:
    """A value is unset when empty or still an unresolved ${VAR} placeholder."""
    return bool(value) and not _ENV_PATTERN.fullmatch(value)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _apply_env_overrides(settings: Settings) -> None:
    env = os.environ
    if env.get("LINE_CHANNEL_ACCESS_TOKEN"):
        settings.line.channel_access_token = env["LINE_CHANNEL_ACCESS_TOKEN"]
    if env.get("LINE_CHANNEL_SECRET"):
        settings.line.channel_secret = env["LINE_CHANNEL_SECRET"]
    if env.get("STORE_BACKEND"):
        settings.database.store_backend = env["STORE_BACKEND"]
    if env.get("DATABASE_URL"):
        settings.database.url = env["DATABASE_URL"]
    if env.get("SUPABASE_URL"):
        settings.database.supabase_url = env["SUPABASE_URL"]
    if env.get("SUPABASE_SERVICE_KEY"):
        settings.database.supabase_service_key = env["SUPABASE_SERVICE_KEY"]
    if env.get("NEAR_THRESHOLD"):
        settings.dispatch.near_threshold = int(env["NEAR_THRESHOLD"])
    if env.get("ADMIN_TOKEN"):
        settings.api.admin_token = env["ADMIN_TOKEN"]
    if env.get("PORT"):
        settings.api.port = int(env["PORT"])


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML file, then apply environment overrides."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "QUEUEWATCH_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "line" in raw:
            ln = raw["line"]
            settings.line = LineConfig(
                channel_access_token=ln.get("channel_access_token", ""),
                channel_secret=ln.get("channel_secret", ""),
                api_base_url=ln.get("api_base_url", settings.line.api_base_url),
                timeout_seconds=float(ln.get("timeout_seconds", settings.line.timeout_seconds)),
                rate_per_second=float(ln.get("rate_per_second", settings.line.rate_per_second)),
                burst=int(ln.get("burst", settings.line.burst)),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                store_backend=db.get("store_backend", settings.database.store_backend),
                url=db.get("url", settings.database.url),
                supabase_url=db.get("supabase_url", ""),
                supabase_service_key=db.get("supabase_service_key", ""),
            )

        if "dispatch" in raw:
            dp = raw["dispatch"]
            defaults = DispatchConfig()
            settings.dispatch = DispatchConfig(
                scan_interval_seconds=float(dp.get("scan_interval_seconds", defaults.scan_interval_seconds)),
                near_threshold=int(dp.get("near_threshold", defaults.near_threshold)),
                dedup_retention_seconds=float(dp.get("dedup_retention_seconds", defaults.dedup_retention_seconds)),
                eviction_interval_seconds=float(dp.get("eviction_interval_seconds", defaults.eviction_interval_seconds)),
                max_concurrency=int(dp.get("max_concurrency", defaults.max_concurrency)),
                subscriber_timeout_seconds=float(dp.get("subscriber_timeout_seconds", defaults.subscriber_timeout_seconds)),
                locale=dp.get("locale", defaults.locale),
            )

        if "api" in raw:
            ap = raw["api"]
            settings.api = ApiConfig(
                host=ap.get("host", settings.api.host),
                port=int(ap.get("port", settings.api.port)),
                cors_origins=ap.get("cors_origins", settings.api.cors_origins),
                admin_token=ap.get("admin_token", ""),
            )
            if not _is_set(settings.api.admin_token):
                settings.api.admin_token = ""

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
