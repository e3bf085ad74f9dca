"""
Configuration loading and persistence for webdisk
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import Config, LoggingConfig, User, WebDavConfig, parse_permissions
from .utils import atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("data/config.yaml")
CONFIG_ENV_VAR = "WEBDISK_CONFIG"


class ConfigError(Exception):
    """Raised when configuration is missing, malformed or invalid"""
    pass


class PersistenceError(Exception):
    """Raised when configuration could not be written to disk"""
    pass


def default_config() -> Config:
    """Return the configuration written on first run"""
    admin = User(name="admin", password="admin", permissions="rwx")
    return Config(webdav=WebDavConfig(enabled=False, users={admin.name: admin}))


def resolve_config_path(cli_value: Optional[str] = None) -> Path:
    """Pick the config file: command line, then environment, then default"""
    if cli_value and cli_value != "default":
        return Path(cli_value)
    env_value = os.getenv(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_CONFIG_PATH


def _require_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{where}' must be a mapping")
    return value


def _parse_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ConfigError(f"'{where}' must be true or false")


def parse_port(value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Port must be a number between 1 and 65535, got {value!r}")
    if isinstance(value, bool) or not 1 <= port <= 65535:
        raise ConfigError(f"Port must be a number between 1 and 65535, got {value!r}")
    return port


def validate_username(name: str) -> None:
    """Usernames must be non-empty and may not contain ':'"""
    if not name:
        raise ConfigError("Username must not be empty")
    if ":" in name:
        raise ConfigError(f"Username may not contain ':': {name!r}")


def _parse_user(name: Any, data: Any) -> User:
    name = str(name)
    validate_username(name)
    entry = _require_mapping(data, f"webdav.users.{name}")

    password = entry.get("password")
    if password is None:
        raise ConfigError(f"User '{name}' has no password")

    try:
        permissions = parse_permissions(str(entry.get("permissions", "r")))
    except ValueError as e:
        raise ConfigError(f"User '{name}': {e}")

    return User(name=name, password=str(password), permissions=permissions)


def parse_config(data: Dict[str, Any]) -> Config:
    """Parse configuration data into a Config snapshot"""
    data = _require_mapping(data, "<root>")
    defaults = Config()

    cwd = str(data.get("cwd", defaults.cwd) or "")
    if not cwd.strip():
        raise ConfigError("Storage root 'cwd' must not be empty")

    webdav_data = _require_mapping(data.get("webdav"), "webdav")
    users = {}
    for name, user_data in _require_mapping(webdav_data.get("users"), "webdav.users").items():
        user = _parse_user(name, user_data)
        users[user.name] = user

    logging_data = _require_mapping(data.get("logging"), "logging")
    log_defaults = LoggingConfig()
    try:
        logging_config = LoggingConfig(
            level=str(logging_data.get("level", log_defaults.level)),
            json=_parse_bool(logging_data.get("json", log_defaults.json), "logging.json"),
            file=str(logging_data.get("file", log_defaults.file) or ""),
            max_size_mb=int(logging_data.get("max_size_mb", log_defaults.max_size_mb)),
            backup_count=int(logging_data.get("backup_count", log_defaults.backup_count)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid logging configuration: {e}")

    ipv6 = data.get("ipv6", defaults.ipv6)
    return Config(
        ip=str(data.get("ip", defaults.ip)),
        ipv6="" if ipv6 is None else str(ipv6),
        port=parse_port(data.get("port", defaults.port)),
        cwd=cwd,
        webdav=WebDavConfig(
            enabled=_parse_bool(webdav_data.get("enabled", False), "webdav.enabled"),
            users=users,
        ),
        logging=logging_config,
    )


def ensure_storage_root(config: Config) -> Path:
    """Create the storage root if missing and check that it is a directory"""
    root = config.storage_root
    if root.exists() and not root.is_dir():
        raise ConfigError(f"Storage root is not a directory: {root}")
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Failed to create storage root {root}: {e}")
    return root


def dump_config(config: Config) -> str:
    """Render a Config as YAML text"""
    return yaml.safe_dump(
        config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False
    )


def save_config(config: Config, config_path: Path) -> None:
    """Persist configuration through an atomic replace"""
    try:
        atomic_write_text(config_path, dump_config(config))
    except OSError as e:
        raise PersistenceError(f"Failed to write configuration {config_path}: {e}")
    logger.info(f"Configuration saved to {config_path}")


def write_default_config(config_path: Path) -> Config:
    """Write (or overwrite) the default configuration"""
    config = default_config()
    save_config(config, config_path)
    logger.info(f"Default configuration written to {config_path}")
    return config


def load_config(
    config_path: Path,
    create_missing: bool = False,
    ensure_storage: bool = True,
) -> Config:
    """
    Load a configuration snapshot from a YAML file

    Args:
        config_path: Path of the YAML file
        create_missing: Write the default configuration if the file is absent
        ensure_storage: Create the storage root directory if it is absent

    Returns:
        Immutable Config

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        if not create_missing:
            raise ConfigError(f"Configuration file not found: {config_path}")
        try:
            write_default_config(config_path)
        except PersistenceError as e:
            raise ConfigError(str(e))

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read {config_path}: {e}")

    config = parse_config(data)
    if ensure_storage:
        ensure_storage_root(config)

    logger.debug(f"Configuration loaded from {config_path}")
    return config
