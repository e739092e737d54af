"""Application configuration loading and validation.

Reads an optional ``parallel_task.toml`` (path from the argument or the
``PARALLEL_TASK_CONFIG`` environment variable), resolves ``${VAR}`` references
in string values, lets plain environment variables fill or override each
setting, and returns a validated ``AppConfig`` dataclass.

Example ``parallel_task.toml``::

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"

    [calendar]
    timezone = "Europe/Paris"
    http_timeout_seconds = 15

    [logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Matches ${VAR_NAME}: letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_ENV_VAR = "PARALLEL_TASK_CONFIG"
DEFAULT_CONFIG_FILENAME = "parallel_task.toml"
DEFAULT_APP_URL = "http://localhost:3000"
DEFAULT_TIMEZONE = "Europe/Paris"
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0

_VALID_LOG_FORMATS = frozenset({"text", "json"})


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass
class GoogleConfig:
    """OAuth client settings for Google Calendar from the [google] section."""

    client_id: str
    client_secret: str
    redirect_uri: str

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, "
            f"client_secret='***', redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class CalendarConfig:
    """Calendar sync settings from the [calendar] section.

    ``timezone`` is the IANA zone in which task due dates and times are
    interpreted when building timed events.
    """

    timezone: str = DEFAULT_TIMEZONE
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass
class AuthConfig:
    """User identity verification against the hosted auth service."""

    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    oauth_state_secret: str = ""

    def __repr__(self) -> str:
        return (
            f"AuthConfig(supabase_url={self.supabase_url!r}, "
            "supabase_anon_key='***', oauth_state_secret='***')"
        )


@dataclass
class AppConfig:
    """Top-level validated configuration."""

    google: GoogleConfig
    app_url: str = DEFAULT_APP_URL
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
        )
    return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def _setting(section: dict[str, Any], key: str, env_var: str, default: Any = None) -> Any:
    """Environment wins over the file; empty environment values are ignored."""
    env_value = os.environ.get(env_var)
    if env_value not in (None, ""):
        return env_value
    value = section.get(key)
    if value in (None, ""):
        return default
    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _parse_timeout(raw: Any) -> float:
    try:
        timeout = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"http_timeout_seconds must be a number, got {raw!r}") from exc
    if timeout <= 0:
        raise ConfigError(f"http_timeout_seconds must be positive, got {timeout}")
    return timeout


def _validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown calendar timezone: {name!r}") from exc
    return name


# ---------------------------------------------------------------------------
# load_config()
# ---------------------------------------------------------------------------


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load, resolve, and validate application configuration.

    Parameters
    ----------
    path:
        Explicit TOML file.  When omitted, ``$PARALLEL_TASK_CONFIG`` is used,
        then ``./parallel_task.toml`` if it exists.  A missing default file is
        not an error: configuration may come entirely from the environment.

    Raises
    ------
    ConfigError
        If the file is unreadable, a ``${VAR}`` is unresolved, a required
        Google OAuth setting is missing, or a value fails validation.
    """
    explicit = path or os.environ.get(CONFIG_ENV_VAR)
    data: dict[str, Any] = {}
    if explicit:
        config_path = Path(explicit)
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        data = _read_toml(config_path)
    else:
        default_path = Path.cwd() / DEFAULT_CONFIG_FILENAME
        if default_path.is_file():
            data = _read_toml(default_path)

    data = resolve_env_vars(data)

    app_section = _section(data, "app")
    google_section = _section(data, "google")
    calendar_section = _section(data, "calendar")
    auth_section = _section(data, "auth")
    logging_section = _section(data, "logging")

    app_url = str(_setting(app_section, "url", "APP_URL", DEFAULT_APP_URL)).rstrip("/")

    client_id = _setting(google_section, "client_id", "GOOGLE_CLIENT_ID")
    client_secret = _setting(google_section, "client_secret", "GOOGLE_CLIENT_SECRET")
    missing = [
        name
        for name, value in (
            ("GOOGLE_CLIENT_ID", client_id),
            ("GOOGLE_CLIENT_SECRET", client_secret),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Missing required Google OAuth setting(s): {', '.join(missing)}")

    redirect_uri = _setting(
        google_section,
        "redirect_uri",
        "GOOGLE_REDIRECT_URI",
        f"{app_url}/api/auth/callback/google",
    )

    calendar = CalendarConfig(
        timezone=_validate_timezone(
            str(_setting(calendar_section, "timezone", "CALENDAR_TIMEZONE", DEFAULT_TIMEZONE))
        ),
        http_timeout_seconds=_parse_timeout(
            _setting(
                calendar_section,
                "http_timeout_seconds",
                "HTTP_TIMEOUT_SECONDS",
                DEFAULT_HTTP_TIMEOUT_SECONDS,
            )
        ),
    )

    auth = AuthConfig(
        supabase_url=_setting(auth_section, "supabase_url", "SUPABASE_URL"),
        supabase_anon_key=_setting(auth_section, "supabase_anon_key", "SUPABASE_ANON_KEY"),
        oauth_state_secret=str(
            _setting(auth_section, "oauth_state_secret", "OAUTH_STATE_SECRET", client_secret)
        ),
    )

    log_format = str(_setting(logging_section, "format", "LOG_FORMAT", "text")).lower()
    if log_format not in _VALID_LOG_FORMATS:
        raise ConfigError(f"logging.format must be 'text' or 'json', got {log_format!r}")
    logging_config = LoggingConfig(
        level=str(_setting(logging_section, "level", "LOG_LEVEL", "INFO")).upper(),
        format=log_format,
    )

    return AppConfig(
        google=GoogleConfig(
            client_id=str(client_id),
            client_secret=str(client_secret),
            redirect_uri=str(redirect_uri),
        ),
        app_url=app_url,
        calendar=calendar,
        auth=auth,
        logging=logging_config,
    )
