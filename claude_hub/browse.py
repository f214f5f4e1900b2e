"""Directory listing for the folder picker."""

import os
from typing import Optional


class BrowseError(Exception):
    """Raised when a path cannot be browsed."""


def _sort_key(entry: dict) -> str:
    return entry["name"].casefold()


def browse_directory(path: Optional[str] = None, include_files: bool = False) -> dict:
    """
    List the visible subdirectories (and optionally files) of a directory.

    Args:
        path: Directory to list; defaults to home, a leading ~ is expanded
        include_files: Also list regular files

    Returns:
        Dict with current path, parent path (None at the filesystem root),
        and folders/files as {"name", "mtime"} entries sorted by name

    Raises:
        BrowseError: path is not a readable directory
    """
    resolved = os.path.expanduser(path) if path else os.path.expanduser("~")
    if not os.path.isdir(resolved):
        raise BrowseError("Not a valid directory")

    folders = []
    files = []
    try:
        with os.scandir(resolved) as it:
            for entry in it:
                if entry.name.startswith("."):
                    continue
                try:
                    is_dir = entry.is_dir()
                    is_file = entry.is_file()
                    mtime = entry.stat().st_mtime
                except OSError:
                    # Broken symlink or entry removed mid-scan
                    continue
                if is_dir:
                    folders.append({"name": entry.name, "mtime": mtime})
                elif is_file and include_files:
                    files.append({"name": entry.name, "mtime": mtime})
    except OSError as e:
        raise BrowseError(str(e)) from e

    parent = os.path.dirname(resolved.rstrip(os.sep)) or os.sep
    return {
        "current": resolved,
        "parent": parent if parent != resolved else None,
        "folders": sorted(folders, key=_sort_key),
        "files": sorted(files, key=_sort_key),
    }
