"""
Configuration Dataclasses

Client identity, connection options and the reserved metadata keys
written alongside decrypted settings.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .logging_setup import get_service_logger

logger = get_service_logger("config")

DEFAULT_CONFIG_PATHS = [
    "/etc/configur/config.yaml",
    "configur.yaml",
]

_CONNECTION_SEGMENT = re.compile(r"^[^=]+=[^=]+$")
_INTERVAL_PATTERN = re.compile(
    r"^(?:(\d+)\.)?(\d{1,2}):(\d{2}):(\d{2})(?:\.(\d{1,7}))?$"
)

# Intervals are written at 100 ns resolution
TICKS_PER_SECOND = 10_000_000


class ConfigurKeys:
    """Reserved registry keys for static metadata"""
    API_HOST = "__Configur_ApiHost"
    APP_ID = "__Configur_AppId"
    IDENTITY_SERVER_AUTHORITY = "__Configur_IdentityServerAuthority"
    IS_DEVELOPMENT = "__Configur_IsDevelopment"
    IS_FILE_CACHE_ENABLED = "__Configur_IsFileCacheEnabled"
    SIGNALR_ACCESS_TOKEN = "__Configur_SignalRAccessToken"
    SIGNALR_URL = "__Configur_SignalRUrl"
    REFRESH_INTERVAL = "__Configur_RefreshInterval"


@dataclass(frozen=True)
class Identity:
    """Application identity, fixed for the process lifetime"""
    app_id: str
    app_secret: str = field(repr=False)
    # Local only, never sent over the wire
    app_password: str = field(repr=False)


@dataclass
class ConfigurOptions:
    """Client options"""
    api_host: str = "api.configur.it"
    identity_server_authority: str = "https://id.configur.it"
    is_development: bool = False
    is_file_cache_enabled: bool = True
    file_cache_dir: str = "."
    refresh_interval_s: float = 300.0
    request_timeout_s: float = 5.0
    settings_path: str = "app-settings/find"  # or "valuables/find"
    push_enabled: bool = True


def parse_connection_string(value: str | None) -> Identity | None:
    """
    Parse an `AppId=...;AppSecret=...;AppPassword=...` connection string.

    Malformed segments are ignored and key names are case-insensitive.

    Returns:
        Identity, or None if the string is blank or incomplete
    """
    if not value or not value.strip():
        return None

    chunks: dict[str, str] = {}
    for segment in value.split(";"):
        if not segment.strip() or not _CONNECTION_SEGMENT.match(segment):
            continue
        key, chunk_value = segment.split("=")
        chunks[key.strip().lower()] = chunk_value.strip()

    app_id = chunks.get("appid")
    app_secret = chunks.get("appsecret")
    app_password = chunks.get("apppassword")

    if not app_id or not app_secret or not app_password:
        return None

    return Identity(app_id=app_id, app_secret=app_secret, app_password=app_password)


def parse_interval(value: str | int | float) -> float:
    """Parse a refresh interval given as seconds or `[d.]hh:mm:ss[.fffffff]`"""
    if isinstance(value, bool):
        raise ValueError(f"Invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        match = _INTERVAL_PATTERN.match(text)
        if match:
            days, hours, minutes, secs, fraction = match.groups()
            whole = int(days or 0) * 86400 + int(hours) * 3600 + int(minutes) * 60 + int(secs)
            ticks = whole * TICKS_PER_SECOND + int((fraction or "").ljust(7, "0"))
            seconds = ticks / TICKS_PER_SECOND
        else:
            seconds = float(text)

    if seconds <= 0:
        raise ValueError(f"Interval must be positive: {value!r}")
    return seconds


def format_interval(seconds: float) -> str:
    """
    Format seconds as `[d.]hh:mm:ss[.fffffff]`.

    Days appear once the interval reaches 24 hours and the fraction only
    when there is one, so parse_interval reads every output back.
    """
    total, ticks = divmod(round(seconds * TICKS_PER_SECOND), TICKS_PER_SECOND)
    days, remainder = divmod(total, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    text = f"{hours:02d}:{minutes:02d}:{secs:02d}"
    if days:
        text = f"{days}.{text}"
    if ticks:
        text = f"{text}.{ticks:07d}"
    return text


def format_bool(value: bool) -> str:
    """Render booleans the way registry readers expect them"""
    return "True" if value else "False"


def _parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _find_config_path() -> str | None:
    """Find options file"""
    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return path
    return None


def _load_yaml_section(config_path: str) -> dict:
    """Load the `configur` section of a YAML file"""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file not found: {config_path}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing config: {e}")
        return {}

    if not isinstance(data, dict):
        logger.error(f"Config file is not a mapping: {config_path}")
        return {}

    section = data.get("configur", data)
    return section if isinstance(section, dict) else {}


def load_options(config_path: str | None = None) -> ConfigurOptions:
    """
    Load client options from YAML, then apply environment overrides.

    Args:
        config_path: Explicit options file, or None to search the defaults

    Returns:
        ConfigurOptions with every unset field at its default
    """
    options = ConfigurOptions()

    path = config_path or _find_config_path()
    section = _load_yaml_section(path) if path else {}

    known = {f.name for f in fields(ConfigurOptions)}
    for key, value in section.items():
        if key not in known:
            logger.warning(f"Ignoring unknown option: {key}")
            continue
        _apply_option(options, key, value)

    env_overrides = {
        "CONFIGUR_API_HOST": "api_host",
        "CONFIGUR_IDENTITY_AUTHORITY": "identity_server_authority",
        "CONFIGUR_IS_DEVELOPMENT": "is_development",
        "CONFIGUR_FILE_CACHE_ENABLED": "is_file_cache_enabled",
        "CONFIGUR_FILE_CACHE_DIR": "file_cache_dir",
        "CONFIGUR_REFRESH_INTERVAL": "refresh_interval_s",
    }
    for env_name, option_name in env_overrides.items():
        env_value = os.environ.get(env_name)
        if env_value is not None and env_value != "":
            _apply_option(options, option_name, env_value)

    return options


def _apply_option(options: ConfigurOptions, key: str, value) -> None:
    """Coerce and set one option, keeping the default on bad input"""
    try:
        if key in ("is_development", "is_file_cache_enabled", "push_enabled"):
            coerced = _parse_bool(value)
        elif key == "refresh_interval_s":
            coerced = parse_interval(value)
        elif key == "request_timeout_s":
            coerced = float(value)
        else:
            coerced = str(value)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid value for option {key}: {e}")
        return

    setattr(options, key, coerced)
