"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided filenames for use in storage keys
- Ensuring directory creation
- Ordering generated artifacts by the number embedded in their filename
- Best-effort deletion of scratch files and directories
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

# Anything that is not a letter or a digit becomes an underscore
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9]")


def sanitize_name(name: str, fallback: str = "document") -> str:
    """
    Turn an original filename stem into a storage-safe name.

    Args:
        name: The stem of the uploaded filename (without extension)
        fallback: Value returned when the name is empty

    Returns:
        The name with every non-alphanumeric character replaced by ``_``

    Example:
        >>> sanitize_name("Quarterly Report (v2)")
        "Quarterly_Report__v2_"
    """
    cleaned = SANITIZE_PATTERN.sub("_", name.strip())
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercased extension.

    Example:
        >>> split_extension("Deck.PPTX")
        ("Deck", ".pptx")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def number_token(name: str, pattern: re.Pattern[str], default: Optional[int] = None) -> Optional[int]:
    match = pattern.search(name)
    if match is None:
        return default
    return int(match.group(1))


def sort_by_number_token(paths: Iterable[Path], pattern: re.Pattern[str], default: int = 0) -> list[Path]:
    """
    Sort paths by the integer captured by ``pattern`` in each filename.

    The comparison is numeric, so ``page-10.png`` sorts after ``page-9.png``.
    Files without a token sort as ``default``; ties keep name order.

    Args:
        paths: Paths to order
        pattern: Regex whose first group captures the number
        default: Sort key for names where the pattern does not match

    Returns:
        A new, sorted list
    """
    return sorted(
        paths,
        key=lambda path: (number_token(path.name, pattern, default), path.name),
    )


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


async def retry_delete(
    path: Path,
    attempts: int = 5,
    delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """
    Delete a file or directory tree, retrying with a linearly growing delay.

    Failures are logged and never raised: cleanup must not mask the outcome
    of the pipeline step that created the files.

    Args:
        path: File or directory to delete; a missing path counts as deleted
        attempts: Maximum number of deletion attempts
        delay: Base delay; attempt ``n`` waits ``delay * n`` before retrying
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        True if the path is gone, False if every attempt failed
    """
    for attempt in range(1, attempts + 1):
        try:
            await asyncio.to_thread(_remove, path)
            logger.debug(f"Deleted: {path}")
            return True
        except FileNotFoundError:
            return True
        except OSError as exc:
            if attempt == attempts:
                logger.error(f"Failed to delete after {attempts} attempts: {path} ({exc})")
                return False
            logger.warning(f"Retrying deletion of {path} ({attempt}/{attempts}): {exc}")
            await sleep(delay * attempt)
    return False
