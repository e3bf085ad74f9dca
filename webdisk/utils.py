"""
Utility functions for webdisk
"""

import ipaddress
import logging
import os
import re
import secrets
import string
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

_DOMAIN_LABEL = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB", "PB"]
    i = 0
    size = float(size_bytes)

    while size >= 1024.0 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1

    if i == 0:
        return f"{int(size)} {size_names[i]}"
    else:
        return f"{size:.2f} {size_names[i]}"


def format_timestamp(timestamp: float, format_str: str = "%Y-%m-%d %H:%M:%S") -> str:
    """Format timestamp to readable string"""
    try:
        dt = datetime.fromtimestamp(timestamp)
        return dt.strftime(format_str)
    except (ValueError, OSError):
        return "Unknown"


def normalize_path(path: str) -> str:
    """Normalize path separators for cross-platform compatibility"""
    return path.replace('\\', '/')


def is_valid_ipv4(value: str) -> bool:
    """Check for a dotted-quad IPv4 address"""
    try:
        return isinstance(ipaddress.ip_address(value), ipaddress.IPv4Address)
    except ValueError:
        return False


def is_valid_ipv6(value: str) -> bool:
    """Check for an IPv6 address, with or without surrounding brackets"""
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    try:
        return isinstance(ipaddress.ip_address(value), ipaddress.IPv6Address)
    except ValueError:
        return False


def is_valid_domain(value: str) -> bool:
    """Check for a host name with at least two labels (e.g. example.com)"""
    if not value or len(value) > 253:
        return False

    labels = value.split(".")
    if len(labels) < 2:
        return False

    # Top-level labels are never all digits
    if labels[-1].isdigit():
        return False

    return all(_DOMAIN_LABEL.match(label) for label in labels)


def generate_password(length: int = 8) -> str:
    """Generate a random alphanumeric password"""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def atomic_write_text(path: Union[str, Path], content: str) -> None:
    """
    Replace a file's content without ever exposing a partial write

    The content goes to a temporary file in the target's directory, is
    flushed to disk and then renamed over the target. On any failure the
    temporary file is removed and the target is left untouched.

    Raises:
        OSError: If writing or renaming fails
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise
