"""
Safe filesystem path handling for webdisk
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

import aiofiles.os

from .utils import normalize_path

logger = logging.getLogger(__name__)


class PathSafetyError(Exception):
    """Raised when a path would escape the storage root"""
    status_code = 403


class MalformedPathError(PathSafetyError):
    """Raised when a request path cannot be decoded or contains forbidden bytes"""
    status_code = 400


class FileSystemError(Exception):
    """Generic filesystem error"""
    pass


@dataclass
class FileEntry:
    """Directory listing entry"""
    name: str
    size: int
    is_dir: bool
    is_symlink: bool
    modified: float


def decode_wsgi_path(raw_path: str) -> str:
    """
    Decode a WSGI ``PATH_INFO`` value into a text path

    WSGI servers hand over the URL-decoded path as latin-1 code points; the
    real bytes are UTF-8.

    Raises:
        MalformedPathError: If the bytes are not UTF-8 or contain NUL
    """
    try:
        path = raw_path.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        raise MalformedPathError(f"Request path is not valid UTF-8: {raw_path!r}")

    if "\x00" in path:
        raise MalformedPathError("Request path contains a NUL byte")

    return path


def safe_join(root_path: Path, rel_path: str) -> Path:
    """
    Safely join root path with relative path, preventing directory traversal

    Args:
        root_path: Root directory path
        rel_path: Relative path to join (already URL-decoded)

    Returns:
        Resolved absolute path within root

    Raises:
        PathSafetyError: If path contains '..' or resolves outside the root
        MalformedPathError: If path contains a NUL byte
    """

    if "\x00" in rel_path:
        raise MalformedPathError("Path contains a NUL byte")

    rel_path = normalize_path(rel_path.strip())

    base_path = Path(root_path).resolve()

    # Special cases that should map to the root itself
    if rel_path in {"", ".", "./", "/"}:
        return base_path

    # Split the path into components and validate each part
    parts = []
    for part in rel_path.split('/'):
        if not part or part == '.':
            # Skip empty or current-directory segments caused by // or ./
            continue
        if part == '..':
            raise PathSafetyError(f"Path traversal detected: {rel_path}")
        parts.append(part)

    full_path = base_path.joinpath(*parts) if parts else base_path

    # Resolve symlinks without requiring the target to exist
    try:
        resolved_path = full_path.resolve(strict=False)
    except (OSError, RuntimeError) as e:
        raise PathSafetyError(f"Failed to resolve path {rel_path}: {e}")

    # Ensure resolved path is within root
    try:
        resolved_path.relative_to(base_path)
    except ValueError:
        raise PathSafetyError(f"Path escapes storage root: {rel_path}")

    return resolved_path


async def list_directory(dir_path: Path) -> List[FileEntry]:
    """
    List directory contents, directories first, then files

    Raises:
        FileSystemError: If the directory cannot be read
    """
    try:
        names = await aiofiles.os.listdir(dir_path)
    except OSError as e:
        raise FileSystemError(f"Failed to list directory: {e}")

    entries = []
    for name in names:
        entry_path = dir_path / name
        try:
            stat = await aiofiles.os.stat(entry_path)
            is_symlink = await aiofiles.os.path.islink(entry_path)
        except OSError as e:
            # Dangling symlinks and racing deletes
            logger.warning(f"Failed to stat {entry_path}: {e}")
            continue

        is_dir = await aiofiles.os.path.isdir(entry_path)
        entries.append(FileEntry(
            name=name,
            size=0 if is_dir else stat.st_size,
            is_dir=is_dir,
            is_symlink=is_symlink,
            modified=stat.st_mtime,
        ))

    entries.sort(key=lambda x: (not x.is_dir, x.name.lower()))
    return entries
