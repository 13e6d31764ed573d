"""
Configuration loading for the language server.

Resolution order:
1. Environment variables ``WLS_HOST`` / ``WLS_PORT`` / ``WLS_PLUGIN_PATH``.
   Both host and port must be present for the environment to be used.
2. A local ``config.json`` holding ``host``, ``port`` and ``pluginPath``.

The file is read with a small tolerant scanner rather than a JSON parser:
it only understands flat string and bare-token values, which is all the
file is expected to hold.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5000
DEFAULT_PLUGIN_PATH = "./plugins/libextractor.so"
CONFIG_FILENAME = "config.json"

DEFAULT_BACKLOG = 10
DEFAULT_READ_SIZE = 8192
DEFAULT_MAX_HEADER_SIZE = 65536
DEFAULT_MAX_BODY_SIZE = 10 * 1024 * 1024  # 10MB

ENV_HOST = "WLS_HOST"
ENV_PORT = "WLS_PORT"
ENV_PLUGIN_PATH = "WLS_PLUGIN_PATH"

# Ambient settings: environment name -> config.json key
AMBIENT_KEYS = {
    "log_level": ("WLS_LOG_LEVEL", "logLevel"),
    "json_logs": ("WLS_JSON_LOGS", "jsonLogs"),
    "read_timeout": ("WLS_READ_TIMEOUT", "readTimeout"),
    "max_body_size": ("WLS_MAX_BODY_SIZE", "maxBodySize"),
    "enable_metrics": ("WLS_ENABLE_METRICS", "enableMetrics"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigError(Exception):
    """Raised when a configuration source holds an unusable value"""

    pass


@dataclass(frozen=True)
class ServerConfig:
    """Process-wide server settings, read-only once loaded.

    Attributes:
        host: Configured host string (only used for the bind policy)
        port: TCP port to listen on
        plugin_path: Path of the extraction module to load
        valid: False when no configuration source was found
        source: "env", "file" or None
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    plugin_path: str = DEFAULT_PLUGIN_PATH
    valid: bool = False
    source: Optional[str] = None
    log_level: str = "INFO"
    json_logs: bool = False
    backlog: int = DEFAULT_BACKLOG
    read_size: int = DEFAULT_READ_SIZE
    read_timeout: Optional[float] = None
    max_header_size: int = DEFAULT_MAX_HEADER_SIZE
    max_body_size: int = DEFAULT_MAX_BODY_SIZE
    enable_metrics: bool = False


def extract_json_value(text: str, key: str) -> str:
    """Pull the value of ``key`` out of a flat JSON document.

    Quoted values are returned without their quotes. Bare values (numbers,
    booleans) run until the next ``,``, ``}`` or newline. Returns an empty
    string when the key or its value cannot be found.
    """
    key_pos = text.find(f'"{key}"')
    if key_pos < 0:
        return ""

    colon_pos = text.find(":", key_pos)
    if colon_pos < 0:
        return ""

    value_start = colon_pos + 1
    while value_start < len(text) and text[value_start] in " \t\r\n":
        value_start += 1
    if value_start >= len(text):
        return ""

    if text[value_start] == '"':
        value_end = text.find('"', value_start + 1)
        if value_end < 0:
            return ""
        return text[value_start + 1:value_end]

    ends = [pos for pos in (text.find(c, value_start) for c in ",}\n") if pos >= 0]
    if not ends:
        return ""
    return text[value_start:min(ends)].strip()


def parse_port(raw: str, source: str) -> int:
    try:
        port = int(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid port {raw!r} in {source}")
    if port < 1 or port > 65535:
        raise ConfigError(f"Port {port} in {source} must be between 1 and 65535")
    return port


def _parse_bool(raw: str, name: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean {raw!r} for {name}")


def _parse_ambient(name: str, raw: str):
    if name == "log_level":
        return raw.strip().upper() or "INFO"
    if name in ("json_logs", "enable_metrics"):
        return _parse_bool(raw, name)
    if name == "read_timeout":
        if raw.strip() in ("", "null"):
            return None
        try:
            timeout = float(raw)
        except ValueError:
            raise ConfigError(f"Invalid read timeout {raw!r}")
        if timeout <= 0:
            raise ConfigError("Read timeout must be positive")
        return timeout
    if name == "max_body_size":
        try:
            size = int(raw)
        except ValueError:
            raise ConfigError(f"Invalid max body size {raw!r}")
        if size < 0:
            raise ConfigError("Max body size must not be negative")
        return size
    raise ConfigError(f"Unknown setting {name}")


def _ambient_from_environ(environ: Mapping[str, str]) -> dict:
    settings = {}
    for name, (env_name, _) in AMBIENT_KEYS.items():
        if env_name in environ:
            settings[name] = _parse_ambient(name, environ[env_name])
    return settings


def _ambient_from_text(text: str) -> dict:
    settings = {}
    for name, (_, json_key) in AMBIENT_KEYS.items():
        raw = extract_json_value(text, json_key)
        if raw:
            settings[name] = _parse_ambient(name, raw)
    return settings


def load_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Resolve the server configuration.

    Args:
        path: Configuration file to read when the environment is incomplete
              (defaults to ``config.json`` in the working directory)
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        ServerConfig; ``valid`` is False if neither source was usable

    Raises:
        ConfigError: If a source is present but holds an unusable value
    """
    if environ is None:
        environ = os.environ

    env_host = environ.get(ENV_HOST)
    env_port = environ.get(ENV_PORT)
    if env_host and env_port:
        return ServerConfig(
            host=env_host,
            port=parse_port(env_port, ENV_PORT),
            plugin_path=environ.get(ENV_PLUGIN_PATH) or DEFAULT_PLUGIN_PATH,
            valid=True,
            source="env",
            **_ambient_from_environ(environ),
        )

    config_path = Path(path) if path is not None else Path(CONFIG_FILENAME)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError:
        return ServerConfig(valid=False)
    except UnicodeDecodeError as e:
        raise ConfigError(f"{config_path} is not valid UTF-8") from e

    host = extract_json_value(text, "host")
    port = extract_json_value(text, "port")
    plugin_path = extract_json_value(text, "pluginPath")

    settings = _ambient_from_text(text)
    settings.update(_ambient_from_environ(environ))

    return ServerConfig(
        host=host or DEFAULT_HOST,
        port=parse_port(port, str(config_path)) if port else DEFAULT_PORT,
        plugin_path=plugin_path or DEFAULT_PLUGIN_PATH,
        valid=True,
        source="file",
        **settings,
    )
