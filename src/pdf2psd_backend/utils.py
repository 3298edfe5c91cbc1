"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing uploaded filenames for safe filesystem usage
- Ensuring directory creation with proper error handling
- Deleting job artifacts without letting cleanup errors escape
- Formatting byte counts for log messages
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9_-]+")


def sanitize_filename(filename: str, suffix: str = ".pdf", fallback: str = "document") -> str:
    """
    Generate a filesystem-safe filename from user input.

    Args:
        filename: The original (client supplied) filename
        suffix: Extension forced onto the result, including the dot
        fallback: Stem used when nothing safe remains

    Returns:
        A filesystem-safe filename ending in ``suffix``

    Example:
        >>> sanitize_filename("My Poster (final).pdf")
        "My-Poster-final.pdf"
        >>> sanitize_filename("@#$.pdf")
        "document.pdf"
    """
    stem = Path(filename).stem
    cleaned = SANITIZE_PATTERN.sub("-", stem.strip()).strip("-_")
    return f"{cleaned or fallback}{suffix}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove_file_quietly(path: Optional[Path]) -> bool:
    """
    Delete a file, treating a missing file as success.

    Any other OSError is logged and swallowed so that cleanup can never mask
    the outcome of the operation that triggered it.

    Returns:
        True if the file is gone afterwards, False if deletion failed
    """
    if path is None:
        return True
    try:
        path.unlink()
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning(f"Failed to delete {path}: {exc}")
        return False
    logger.debug(f"Deleted {path}")
    return True


def remove_empty_parent(path: Path, root: Path) -> None:
    """Remove ``path.parent`` if it is an empty directory strictly inside ``root``."""
    parent = path.parent
    if parent == root or root not in parent.parents:
        return
    try:
        parent.rmdir()
    except OSError:
        # not empty or already gone
        pass


def clear_directory(directory: Path, root: Path) -> bool:
    """
    Delete every file in a per-job ``directory`` and then the directory itself.

    Only directories strictly inside ``root`` are touched. Files that cannot
    be deleted are logged and left in place.

    Returns:
        True if the directory is gone afterwards
    """
    if directory == root or root not in directory.parents:
        return False
    try:
        entries = list(directory.iterdir())
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning(f"Failed to list {directory}: {exc}")
        return False
    for entry in entries:
        if entry.is_dir():
            clear_directory(entry, root)
        else:
            remove_file_quietly(entry)
    try:
        directory.rmdir()
    except OSError as exc:
        logger.warning(f"Failed to remove {directory}: {exc}")
        return False
    return True


def remove_part_files(output_path: Path) -> int:
    """Delete leftover ``<output>.<strategy>.part`` files next to ``output_path``."""
    removed = 0
    for part in output_path.parent.glob(f"{output_path.name}.*.part"):
        if remove_file_quietly(part):
            removed += 1
    return removed


def format_bytes(size: int) -> str:
    """Render a byte count as a short human readable string (e.g. ``2.0 MB``)."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"
