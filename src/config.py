"""Parcel Tracker — Configuration Loader.

Loads and validates application configuration from config/settings.yaml.
Resolves environment variables referenced via ${VAR_NAME} syntax, with
an optional ${VAR_NAME:-default} fallback. Uses frozen dataclasses for
type-safe configuration access.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Path Constants ────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
SETTINGS_PATH = CONFIG_DIR / "settings.yaml"

# ── Environment Variable Pattern ─────────────────────────
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?}")

_KNOWN_PROVIDERS = ("tracking_api", "spx_page", "rendered_page")
_KNOWN_BACKENDS = ("json", "sqlite")


# ═══════════════════════════════════════════════════════════
# Configuration Dataclasses
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PollConfig:
    """Configuration for the reconciliation poll cycle."""

    interval_seconds: int
    startup_delay_seconds: int
    max_concurrency: int
    notify_timeout_seconds: float


@dataclass(frozen=True)
class ProvidersConfig:
    """Configuration for the ranked status provider chain."""

    order: list[str]
    timeout_seconds: float
    user_agent: str
    failure_threshold: int
    cooldown_seconds: float
    tracking_api_url: str
    spx_page_url: str
    spx_min_interval_seconds: float
    render_url: str = ""


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration for Telegram notifications and commands."""

    bot_token: str
    enabled: bool = True


@dataclass(frozen=True)
class HttpConfig:
    """Configuration for the inbound HTTP API."""

    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the subscription store."""

    backend: str
    path: str


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration container."""

    poll: PollConfig
    providers: ProvidersConfig
    telegram: TelegramConfig
    http: HttpConfig
    storage: StorageConfig
    log_level: str
    min_code_length: int = 10
    max_code_length: int = 20
    status_keywords: dict[str, list[str]] = field(default_factory=dict)


# ═══════════════════════════════════════════════════════════
# YAML Loading & Environment Variable Resolution
# ═══════════════════════════════════════════════════════════


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${VAR_NAME} references in YAML values.

    Args:
        value: A string, dict, list, or primitive from parsed YAML.

    Returns:
        The same structure with placeholders replaced by environment
        values (or their inline defaults).

    Raises:
        ValueError: If a referenced variable is unset and has no default.
    """
    if isinstance(value, str):
        def _substitute(match: re.Match[str]) -> str:
            var_name, default = match.group(1), match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is None:
                if default is None:
                    raise ValueError(
                        f"Environment variable '${{{var_name}}}' is required but not set. "
                        f"Add it to your .env file or export it in your shell."
                    )
                return default
            return env_value

        return ENV_VAR_PATTERN.sub(_substitute, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file with UTF-8 encoding.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        ValueError: If the file is empty.
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        raise ValueError(f"Configuration file is empty: {path}")

    logger.debug("Loaded configuration from %s", path)
    return data


def _as_bool(value: Any) -> bool:
    """Interpret YAML booleans and env-substituted strings."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# ═══════════════════════════════════════════════════════════
# Dataclass Builders
# ═══════════════════════════════════════════════════════════


def _build_poll_config(data: dict[str, Any]) -> PollConfig:
    _validate_keys(data, ["interval_seconds"], "poll")

    config = PollConfig(
        interval_seconds=int(data["interval_seconds"]),
        startup_delay_seconds=int(data.get("startup_delay_seconds", 10)),
        max_concurrency=int(data.get("max_concurrency", 1)),
        notify_timeout_seconds=float(data.get("notify_timeout_seconds", 20)),
    )
    if config.interval_seconds <= 0:
        raise ValueError("poll.interval_seconds must be positive")
    if config.max_concurrency < 1:
        raise ValueError("poll.max_concurrency must be at least 1")
    return config


def _build_providers_config(data: dict[str, Any]) -> ProvidersConfig:
    """Build a ProvidersConfig from the 'providers' section.

    Raises:
        ValueError: If the order names an unknown provider or is empty.
    """
    _validate_keys(data, ["order", "timeout_seconds", "tracking_api", "spx_page"], "providers")

    order = list(data["order"])
    unknown = [name for name in order if name not in _KNOWN_PROVIDERS]
    if unknown:
        raise ValueError(
            f"Unknown providers in 'providers.order': {', '.join(unknown)}. "
            f"Known: {', '.join(_KNOWN_PROVIDERS)}"
        )
    if not order:
        raise ValueError("'providers.order' must list at least one provider")

    api_data = data["tracking_api"]
    _validate_keys(api_data, ["base_url"], "providers.tracking_api")
    spx_data = data["spx_page"]
    _validate_keys(spx_data, ["url"], "providers.spx_page")
    rendered = data.get("rendered_page") or {}

    return ProvidersConfig(
        order=order,
        timeout_seconds=float(data["timeout_seconds"]),
        user_agent=data.get(
            "user_agent",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
        ),
        failure_threshold=int(data.get("failure_threshold", 5)),
        cooldown_seconds=float(data.get("cooldown_seconds", 300)),
        tracking_api_url=str(api_data["base_url"]).rstrip("/"),
        spx_page_url=str(spx_data["url"]),
        spx_min_interval_seconds=float(spx_data.get("min_interval_seconds", 2)),
        render_url=str(rendered.get("url", "") or ""),
    )


def _build_telegram_config(data: dict[str, Any]) -> TelegramConfig:
    _validate_keys(data, ["bot_token"], "telegram")
    enabled = _as_bool(data.get("enabled", True))
    token = str(data["bot_token"] or "").strip()
    if enabled and not token:
        raise ValueError(
            "telegram.bot_token is empty. Set TELEGRAM_BOT_TOKEN or TELEGRAM_ENABLED=false."
        )
    return TelegramConfig(bot_token=token, enabled=enabled)


def _build_http_config(data: dict[str, Any]) -> HttpConfig:
    _validate_keys(data, ["port"], "http")
    return HttpConfig(
        enabled=_as_bool(data.get("enabled", True)),
        host=str(data.get("host", "0.0.0.0")),
        port=int(data["port"]),
    )


def _build_storage_config(data: dict[str, Any]) -> StorageConfig:
    _validate_keys(data, ["backend", "path"], "storage")
    backend = str(data["backend"]).lower()
    if backend not in _KNOWN_BACKENDS:
        raise ValueError(
            f"Unknown storage backend '{backend}'. Known: {', '.join(_KNOWN_BACKENDS)}"
        )
    return StorageConfig(backend=backend, path=str(data["path"]))


def _validate_keys(data: dict[str, Any], required: list[str], section: str) -> None:
    """Validate that all required keys exist in a config section.

    Raises:
        ValueError: If any required key is missing.
    """
    missing = [key for key in required if key not in data]
    if missing:
        raise ValueError(
            f"Missing required configuration keys in '{section}': {', '.join(missing)}"
        )


# ═══════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════


def load_config(
    settings_path: Path | None = None,
    env_path: Path | None = None,
) -> AppConfig:
    """Load the complete application configuration.

    Args:
        settings_path: Override path to settings.yaml. Defaults to config/settings.yaml.
        env_path: Override path to .env file. Defaults to project root .env.

    Returns:
        A fully validated AppConfig instance.

    Raises:
        FileNotFoundError: If the settings file is missing.
        ValueError: If required fields are missing or env vars are unset.
    """
    env_file = env_path or (PROJECT_ROOT / ".env")
    load_dotenv(env_file)
    logger.debug("Loaded environment from %s", env_file)

    settings = _resolve_env_vars(_load_yaml(settings_path or SETTINGS_PATH))

    _validate_keys(
        settings,
        ["poll", "providers", "telegram", "http", "storage", "logging"],
        "settings",
    )

    tracking = settings.get("tracking", {}) or {}
    config = AppConfig(
        poll=_build_poll_config(settings["poll"]),
        providers=_build_providers_config(settings["providers"]),
        telegram=_build_telegram_config(settings["telegram"]),
        http=_build_http_config(settings["http"]),
        storage=_build_storage_config(settings["storage"]),
        log_level=str(settings["logging"]["level"]).upper(),
        min_code_length=int(tracking.get("min_code_length", 10)),
        max_code_length=int(tracking.get("max_code_length", 20)),
        status_keywords=tracking.get("status_keywords", {}) or {},
    )

    logger.info("Configuration loaded successfully")
    logger.debug("Provider order: %s", ", ".join(config.providers.order))
    logger.debug("Storage: %s (%s)", config.storage.backend, config.storage.path)
    logger.debug("Poll interval: %ds", config.poll.interval_seconds)

    return config
