"""
Data models and constants for webdisk
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional


class Capability(Enum):
    """Per-user capability bits"""
    READ = "r"
    WRITE = "w"
    EXECUTE = "x"


CAPABILITY_LETTERS = "".join(cap.value for cap in Capability)


def parse_permissions(value: str) -> FrozenSet[Capability]:
    """Parse a permission string such as ``"rw"`` into capabilities.

    Raises:
        ValueError: If the string contains anything but r, w and x
    """
    invalid = sorted({ch for ch in value if ch not in CAPABILITY_LETTERS})
    if invalid:
        raise ValueError(
            f"Invalid permission string {value!r}: only r, w and x are allowed"
        )
    return frozenset(Capability(ch) for ch in value)


def format_permissions(permissions: Iterable[Capability]) -> str:
    """Return the canonical ``rwx``-ordered string for a capability set"""
    granted = set(permissions)
    return "".join(cap.value for cap in Capability if cap in granted)


@dataclass(frozen=True)
class User:
    """WebDAV account"""
    name: str
    password: str
    permissions: FrozenSet[Capability] = frozenset()

    def __post_init__(self):
        if isinstance(self.permissions, str):
            object.__setattr__(self, "permissions", parse_permissions(self.permissions))
        else:
            object.__setattr__(self, "permissions", frozenset(self.permissions))

    def can(self, capability: Capability) -> bool:
        return capability in self.permissions

    @property
    def permission_string(self) -> str:
        return format_permissions(self.permissions)

    def __repr__(self) -> str:
        # Keep passwords out of logs and tracebacks
        return f"User(name={self.name!r}, permissions={self.permission_string!r})"


@dataclass(frozen=True)
class WebDavConfig:
    """WebDAV configuration"""
    enabled: bool = False
    users: Mapping[str, User] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "users", MappingProxyType(dict(self.users)))

    def get_user(self, name: str) -> Optional[User]:
        return self.users.get(name)


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    json: bool = False
    file: str = ""
    max_size_mb: int = 10
    backup_count: int = 3


@dataclass(frozen=True)
class Config:
    """Point-in-time configuration snapshot"""
    ip: str = "0.0.0.0"
    ipv6: str = "::"
    port: int = 8080
    cwd: str = "data/www"
    webdav: WebDavConfig = field(default_factory=WebDavConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def storage_root(self) -> Path:
        return Path(self.cwd).resolve()

    @property
    def ipv6_enabled(self) -> bool:
        return bool(self.ipv6)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the on-disk YAML layout"""
        return {
            "ip": self.ip,
            "ipv6": self.ipv6,
            "port": self.port,
            "cwd": self.cwd,
            "webdav": {
                "enabled": self.webdav.enabled,
                "users": {
                    name: {
                        "password": user.password,
                        "permissions": user.permission_string,
                    }
                    for name, user in sorted(self.webdav.users.items())
                },
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
                "file": self.logging.file,
                "max_size_mb": self.logging.max_size_mb,
                "backup_count": self.logging.backup_count,
            },
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of an authorization check"""
    allowed: bool
    status: int = 200
    reason: str = ""
    user: Optional[User] = None

    @classmethod
    def allow(cls, user: User) -> "Decision":
        return cls(allowed=True, status=200, reason="Access granted", user=user)

    @classmethod
    def deny(cls, status: int, reason: str) -> "Decision":
        return cls(allowed=False, status=status, reason=reason)


@dataclass(frozen=True)
class DaemonHandle:
    """Process recorded in a PID file"""
    pid: int
    pid_file_path: Path
    create_time: Optional[float] = None
