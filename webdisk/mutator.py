"""
Configuration mutations driven by the command line

Every public method performs one logical change: load the file (creating
the default one when missing), apply the change, validate the result, make sure the
storage root is a usable directory (creating it when missing) and persist
it through an atomic replace. A running server never sees these
changes; it keeps the snapshot it started with.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .config import (
    ConfigError,
    ensure_storage_root,
    load_config,
    parse_config,
    parse_port,
    save_config,
    validate_username,
    write_default_config,
)
from .models import Config, User, parse_permissions
from .utils import generate_password, is_valid_domain, is_valid_ipv4, is_valid_ipv6

logger = logging.getLogger(__name__)

HOST_KEYS = ("ip", "ipv6", "port", "cwd")
DEFAULT_PERMISSIONS = "r"


def _permissions(value: str):
    try:
        return parse_permissions(value)
    except ValueError as e:
        raise ConfigError(str(e))


def _require_password(password: str) -> str:
    if not password:
        raise ConfigError("Password must not be empty")
    return password


class ConfigMutator:
    """Applies single changes to a configuration file"""

    def __init__(self, config_path: Union[str, Path]):
        self.config_path = Path(config_path)

    def load(self) -> Config:
        return load_config(self.config_path, create_missing=True, ensure_storage=False)

    def _apply(self, change: Callable[[Config], Config]) -> Config:
        config = self.load()
        updated = change(config)
        # Round-trip through the parser so every load-time invariant holds
        parse_config(updated.to_dict())
        ensure_storage_root(updated)
        save_config(updated, self.config_path)
        return updated

    def _with_users(self, config: Config, users: Dict[str, User]) -> Config:
        webdav = dataclasses.replace(config.webdav, users=users)
        return dataclasses.replace(config, webdav=webdav)

    def set_host(self, key: str, value: str) -> Config:
        """
        Change one listener setting

        Args:
            key: One of ip, ipv6, port, cwd
            value: New value; ``no`` disables IPv6

        Raises:
            ConfigError: If the key is unknown or the value invalid
        """
        key = key.lower()
        value = value.strip()

        if key == "ip":
            if not (is_valid_ipv4(value) or is_valid_domain(value)):
                raise ConfigError(f"Invalid IPv4 address or domain name: {value!r}")
            changes = {"ip": value}
        elif key == "ipv6":
            if value.lower() == "no":
                changes = {"ipv6": ""}
            elif is_valid_ipv6(value):
                changes = {"ipv6": value.strip("[]")}
            else:
                raise ConfigError(f"Invalid IPv6 address: {value!r} (use 'no' to disable IPv6)")
        elif key == "port":
            changes = {"port": parse_port(value)}
        elif key == "cwd":
            if not value or not Path(value).is_dir():
                raise ConfigError(f"Storage root must be an existing directory: {value!r}")
            changes = {"cwd": value}
        else:
            raise ConfigError(f"Unknown host setting {key!r}: expected one of {', '.join(HOST_KEYS)}")

        updated = self._apply(lambda config: dataclasses.replace(config, **changes))
        logger.info(f"Host setting {key} updated")
        return updated

    def reset_default(self) -> Config:
        """Overwrite the file with the default configuration"""
        return write_default_config(self.config_path)

    def set_webdav_enabled(self, enabled: bool) -> Config:
        return self._apply(
            lambda config: dataclasses.replace(
                config, webdav=dataclasses.replace(config.webdav, enabled=enabled)
            )
        )

    def add_user(
        self,
        name: str,
        permissions: Optional[str] = None,
        password: Optional[str] = None,
    ) -> User:
        """
        Create a WebDAV user

        A random password is generated when none is given; the caller is
        responsible for showing it.

        Raises:
            ConfigError: If the user already exists or a value is invalid
        """
        validate_username(name)
        user = User(
            name=name,
            password=_require_password(password) if password is not None else generate_password(),
            permissions=_permissions(permissions or DEFAULT_PERMISSIONS),
        )

        def change(config: Config) -> Config:
            if name in config.webdav.users:
                raise ConfigError(f"User already exists: {name}")
            users = dict(config.webdav.users)
            users[name] = user
            return self._with_users(config, users)

        self._apply(change)
        return user

    def delete_user(self, name: str) -> None:
        def change(config: Config) -> Config:
            if name not in config.webdav.users:
                raise ConfigError(f"Unknown user: {name}")
            users = dict(config.webdav.users)
            del users[name]
            return self._with_users(config, users)

        self._apply(change)

    def set_user(self, name: str, permissions: str, password: Optional[str] = None) -> User:
        """
        Set a user's permissions, and password when given

        An unknown user is created only when a password is supplied.

        Raises:
            ConfigError: If the user is unknown and no password was given
        """
        validate_username(name)
        capabilities = _permissions(permissions)
        if password is not None:
            _require_password(password)
        result = {}

        def change(config: Config) -> Config:
            existing = config.webdav.get_user(name)
            if existing is None and password is None:
                raise ConfigError(f"Unknown user: {name} (give a password to create it)")
            user = User(
                name=name,
                password=password if password is not None else existing.password,
                permissions=capabilities,
            )
            users = dict(config.webdav.users)
            users[name] = user
            result["user"] = user
            return self._with_users(config, users)

        self._apply(change)
        return result["user"]

    def set_password(self, name: str, password: str) -> User:
        _require_password(password)
        result = {}

        def change(config: Config) -> Config:
            existing = config.webdav.get_user(name)
            if existing is None:
                raise ConfigError(f"Unknown user: {name}")
            user = dataclasses.replace(existing, password=password)
            users = dict(config.webdav.users)
            users[name] = user
            result["user"] = user
            return self._with_users(config, users)

        self._apply(change)
        return result["user"]
