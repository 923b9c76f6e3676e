"""Utility functions for kiln.

String processing, path handling and date extraction helpers shared by the
loader, the asset pipeline and the reconciler.

Key functions:
    slugify: Convert file name stems to URL slugs.
    titleize: Convert file names to human-readable titles.
    extract_date_from_name: Extract a date from a file name prefix.
    is_content_document: Check if a path is a content document.
    is_hidden: Check if a relative path has an ignored component.
    ensure_clean_dir: Ensure a directory exists and is empty.
    remove_empty_parents: Remove directories emptied by a deletion.
    fenced_code_ranges: Locate fenced code blocks in markup source.
"""

from __future__ import annotations

import re
import shutil
from datetime import datetime
from pathlib import Path

CONTENT_SUFFIXES = (".dj", ".md")


def slugify(name: str) -> str:
    """Convert filename (without extension) to slug, dropping date prefix.

    Args:
        name: Filename stem.

    Returns:
        URL-friendly slug.
    """
    cleaned = name
    if "-" in cleaned:
        parts = cleaned.split("-")
        if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
            cleaned = "-".join(parts[3:])
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "-", cleaned)
    cleaned = cleaned.strip("-").lower()
    return cleaned or "index"


def slugify_path(relative: str) -> str:
    """Slugify each segment of a ``/``-separated path.

    Examples:
        >>> slugify_path("Blog/2024-01-15-Hello World")
        'blog/hello-world'
    """
    return "/".join(slugify(part) for part in relative.split("/") if part)


def titleize(filename: str) -> str:
    """Convert a filename to a human-readable title.

    Removes date prefixes (YYYY-MM-DD), replaces hyphens and underscores
    with spaces, and capitalizes each word.

    Args:
        filename: Filename with or without extension.

    Returns:
        Human-readable title string.

    Examples:
        >>> titleize("2024-01-15-hello-world.dj")
        'Hello World'

        >>> titleize("getting-started.md")
        'Getting Started'
    """
    base = Path(filename).stem
    if "-" in base:
        parts = base.split("-")
        if len(parts) >= 4 and all(p.isdigit() for p in parts[:3]):
            base = "-".join(parts[3:])
    words = re.split(r"[\s\-_]+", base)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def extract_date_from_name(name: str) -> datetime | None:
    """Extract a date from a filename with YYYY-MM-DD prefix.

    Args:
        name: Filename stem (without extension).

    Returns:
        datetime object if a valid date prefix is found, None otherwise.
    """
    parts = name.split("-")
    if len(parts) >= 3 and all(p.isdigit() for p in parts[:3]):
        try:
            return datetime(int(parts[0]), int(parts[1]), int(parts[2]))
        except ValueError:
            return None
    return None


def is_content_document(path: Path) -> bool:
    """Check if a path is a content document (``.dj`` or ``.md``)."""
    return path.suffix.lower() in CONTENT_SUFFIXES


def is_hidden(relative: Path) -> bool:
    """Check if any component of a relative path starts with ``_`` or ``.``."""
    return any(part.startswith(("_", ".")) for part in relative.parts)


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    If the directory exists, removes all contents. Creates the
    directory if it doesn't exist.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path))
    path.mkdir(parents=True, exist_ok=True)


def remove_empty_parents(path: Path, stop: Path) -> None:
    """Remove empty directories from ``path.parent`` up to (excluding) ``stop``."""
    current = path.parent
    while current != stop and stop in current.parents:
        try:
            next(current.iterdir())
        except StopIteration:
            current.rmdir()
            current = current.parent
            continue
        except FileNotFoundError:
            current = current.parent
            continue
        break


_FENCE_RE = re.compile(r"^ {0,3}(?P<fence>`{3,}|~{3,})")


def fenced_code_ranges(text: str) -> list[tuple[int, int]]:
    """Return the ``(start, end)`` offsets of fenced code blocks in markup.

    A block closes on a fence of the same character at least as long as its
    opener. An unclosed block runs to the end of the text.
    """
    ranges: list[tuple[int, int]] = []
    opener: str | None = None
    start = offset = 0
    for line in text.splitlines(keepends=True):
        match = _FENCE_RE.match(line)
        if opener is None:
            if match and not (match.group("fence")[0] == "`" and "`" in line[match.end():]):
                opener = match.group("fence")
                start = offset
        elif (
            match
            and match.group("fence")[0] == opener[0]
            and len(match.group("fence")) >= len(opener)
            and not line[match.end():].strip()
        ):
            ranges.append((start, offset + len(line)))
            opener = None
        offset += len(line)
    if opener is not None:
        ranges.append((start, len(text)))
    return ranges
