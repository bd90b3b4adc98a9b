"""
Directory listing for deploy-destination and import path pickers.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from core.errors import CertManagerError, ErrorKind, InvalidRequestError, StorageError

logger = logging.getLogger(__name__)

CERT_FILE_SUFFIXES = {".pem", ".crt", ".cer", ".der", ".key", ".p12", ".pfx"}


class PathNotFoundError(CertManagerError):
    """Directory does not exist."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


def list_directory(path: str | Path, show_hidden: bool = False) -> dict[str, Any]:
    """
    List a directory's entries, directories first.

    Args:
        path: Absolute directory path
        show_hidden: Include dot-files

    Returns:
        Dict with the resolved path, its parent and the entries

    Raises:
        InvalidRequestError: If the path is relative or not a directory
        PathNotFoundError: If the path does not exist
    """
    directory = Path(path).expanduser()
    if not directory.is_absolute():
        raise InvalidRequestError(f"Path must be absolute: {path}")
    directory = directory.resolve()
    if not directory.exists():
        raise PathNotFoundError(f"Path not found: {directory}")
    if not directory.is_dir():
        raise InvalidRequestError(f"Not a directory: {directory}")

    entries = []
    try:
        children = list(directory.iterdir())
    except PermissionError:
        raise StorageError(f"Permission denied: {directory}", suggestion="Pick a directory the service can read")

    for child in children:
        if not show_hidden and child.name.startswith("."):
            continue
        try:
            stat = child.stat()
        except OSError:
            continue
        is_dir = child.is_dir()
        entries.append(
            {
                "name": child.name,
                "path": str(child),
                "is_dir": is_dir,
                "size": None if is_dir else stat.st_size,
                "modified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                "is_certificate_file": not is_dir and child.suffix.lower() in CERT_FILE_SUFFIXES,
            }
        )
    entries.sort(key=lambda e: (not e["is_dir"], e["name"].lower()))
    parent = directory.parent
    return {
        "path": str(directory),
        "parent": str(parent) if parent != directory else None,
        "entries": entries,
    }
