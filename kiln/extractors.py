"""Metadata extractors for kiln.

This module parses the frontmatter block of a content document and derives
the normalized metadata a ContentPage is built from. Each extractor handles
a single kind of metadata; ``CompositeMetadataExtractor`` runs them in order
and merges their results.

Key classes:
- FrontMatter: Explicit result of frontmatter parsing.
- TitleExtractor: Title from metadata or the file name.
- DateExtractor: Publish date from metadata or a file name prefix.
- WeightExtractor: Integer sort weight.
- TaxonomyExtractor: Normalized taxonomy terms.
- AssetReferenceExtractor: Relative asset references in the body.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from .html_utils import is_external_url, split_url
from .utils import extract_date_from_name, fenced_code_ranges, is_content_document, titleize

FRONTMATTER_FENCES = ("---", "+++")

_MD_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(\s*<?(?P<url>[^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_MD_LINK_RE = re.compile(r"(?<!!)\[[^\]]*\]\(\s*<?(?P<url>[^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_HTML_SRC_RE = re.compile(r"\bsrc=[\"'](?P<url>[^\"']+)[\"']", re.IGNORECASE)
_CODE_SPAN_RE = re.compile(r"(?<!`)(?P<ticks>`+)(?!`).+?(?<!`)(?P=ticks)(?!`)", re.DOTALL)
# Inline code spans never cross a blank line.
_CODE_SPAN_RE = re.compile(
    r"(?<!`)(?P<ticks>`+)(?!`)(?:(?!\n[ \t]*\n).)+?(?<!`)(?P=ticks)(?!`)", re.DOTALL
)

class MetadataError(ValueError):
    """Raised when a document's metadata block is present but invalid."""


@dataclass(frozen=True)
class FrontMatter:
    """Result of splitting a document into metadata and body.

    Attributes:
        data: Decoded metadata mapping (empty when absent).
        body: Document body after the metadata block.
        present: Whether the document had a metadata block at all.
    """

    data: dict[str, Any]
    body: str
    present: bool


@dataclass
class Document:
    """A source document handed to the extractors.

    Attributes:
        path: Absolute path to the source file.
        relative: Content-root relative path using ``/`` separators.
        meta: Lower-cased metadata; extractors may pop keys they own.
        body: Document body without its metadata block.
    """

    path: Path
    relative: str
    meta: dict[str, Any]
    body: str

    @property
    def directory(self) -> str:
        parent = PurePosixPath(self.relative).parent.as_posix()
        return "" if parent == "." else parent


def extract_frontmatter(text: str) -> FrontMatter:
    """Split a document into its frontmatter mapping and body.

    The metadata block is YAML fenced by ``---`` or ``+++`` lines at the very
    start of the document. A document without an opening fence has no
    metadata.

    Args:
        text: Raw file content.

    Returns:
        FrontMatter with the decoded mapping and remaining body.

    Raises:
        MetadataError: If the block is unterminated, is not valid YAML or does
            not decode to a mapping.
    """
    normalized = text.lstrip("\ufeff")
    lines = normalized.splitlines(keepends=True)
    if not lines or lines[0].strip() not in FRONTMATTER_FENCES:
        return FrontMatter({}, text, False)

    fence = lines[0].strip()
    for index in range(1, len(lines)):
        if lines[index].strip() == fence:
            block = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise MetadataError(f"unterminated '{fence}' metadata block")

    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as exc:
        raise MetadataError(f"invalid metadata block: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MetadataError("metadata block must be a mapping")
    return FrontMatter(data, body, True)


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Lower-case the top-level keys of a metadata mapping."""
    return {str(key).strip().lower(): value for key, value in data.items()}


def normalize_term(term: Any) -> str:
    return str(term).strip().lower()


class TitleExtractor:
    """Extracts the title from metadata, falling back to the file name."""

    def extract(self, document: Document) -> dict[str, Any]:
        title = document.meta.get("title")
        if isinstance(title, str) and title.strip():
            return {"title": title.strip()}
        if document.relative in ("index.dj", "index.md"):
            return {"title": "Home"}
        name = document.path.name
        if document.path.stem == "index" and document.directory:
            name = PurePosixPath(document.directory).name
        return {"title": titleize(name)}


class DateExtractor:
    """Extracts the publish date.

    Looks for a ``date`` metadata value, then a YYYY-MM-DD file name prefix.
    Pages with neither have no date.
    """

    def extract(self, document: Document) -> dict[str, Any]:
        value = document.meta.get("date")
        if value is None:
            return {"date": extract_date_from_name(document.path.stem)}
        return {"date": parse_date(value)}


def parse_date(value: Any) -> datetime:
    """Convert a metadata date value to a naive datetime.

    Raises:
        MetadataError: If the value cannot be read as a date.
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            return datetime.fromisoformat(text).replace(tzinfo=None)
        except ValueError as exc:
            raise MetadataError(f"invalid date '{value}'") from exc
    raise MetadataError(f"invalid date '{value}'")


class WeightExtractor:
    """Extracts the integer sort weight."""

    def extract(self, document: Document) -> dict[str, Any]:
        value = document.meta.get("weight")
        if value is None:
            return {"weight": None}
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise MetadataError(f"weight must be an integer, got '{value}'")
        try:
            return {"weight": int(value)}
        except ValueError as exc:
            raise MetadataError(f"weight must be an integer, got '{value}'") from exc


class TaxonomyExtractor:
    """Moves taxonomy fields out of the metadata into normalized term tuples.

    Attributes:
        taxonomies: Enabled taxonomy names.
    """

    def __init__(self, taxonomies: tuple[str, ...]):
        self.taxonomies = taxonomies

    def extract(self, document: Document) -> dict[str, Any]:
        result: dict[str, tuple[str, ...]] = {}
        for name in self.taxonomies:
            raw = document.meta.pop(name, None)
            if raw is None:
                result[name] = ()
                continue
            values = raw if isinstance(raw, list) else [raw]
            terms: list[str] = []
            for value in values:
                if isinstance(value, (dict, list)):
                    raise MetadataError(f"{name} terms must be strings")
                term = normalize_term(value)
                if term and term not in terms:
                    terms.append(term)
            result[name] = tuple(terms)
        return {"taxonomies": result}


class AssetReferenceExtractor:
    """Collects relative asset references from a document body.

    Images and ``src`` attributes are always collected. Plain links are only
    collected when they point at an existing non-document file.

    Attributes:
        content_dir: Content root used to check link targets.
    """

    def __init__(self, content_dir: Path):
        self.content_dir = content_dir

    def extract(self, document: Document) -> dict[str, Any]:
        found: list[str] = []

        def add(reference: str) -> None:
            path = resolve_reference(reference, document.directory)
            if path is not None and path not in found:
                found.append(path)

        body = strip_code(document.body)
        for regex in (_MD_IMAGE_RE, _HTML_SRC_RE):
            for match in regex.finditer(body):
                add(match.group("url"))
        for match in _MD_LINK_RE.finditer(body):
            url = match.group("url")
            path = resolve_reference(url, document.directory)
            if path is None or is_content_document(Path(path)):
                continue
            if (self.content_dir / path).is_file():
                add(url)
        return {"assets": tuple(found)}


def strip_code(body: str) -> str:
    """Remove fenced code blocks and inline code spans from a markup body."""
    parts: list[str] = []
    position = 0
    for start, end in fenced_code_ranges(body):
        parts.append(body[position:start])
        position = end
    parts.append(body[position:])
    return _CODE_SPAN_RE.sub("", "\n".join(parts))


def resolve_reference(reference: str, directory: str) -> str | None:
    """Resolve a relative reference against a content-relative directory.

    Returns:
        The content-relative path (``..`` segments kept when they would
        escape the root, so callers can report them), or None for external,
        root-relative and empty references.
    """
    if not reference or is_external_url(reference) or reference.startswith("/"):
        return None
    path, _, _ = split_url(reference)
    if not path:
        return None
    joined = f"{directory}/{path}" if directory else path
    parts: list[str] = []
    for part in joined.split("/"):
        if part in ("", "."):
            continue
        if part == ".." and parts and parts[-1] != "..":
            parts.pop()
            continue
        parts.append(part)
    return "/".join(parts)


class CompositeMetadataExtractor:
    """Combines multiple metadata extractors.

    Runs every extractor on the document and merges their results. Later
    extractors can override earlier ones.
    """

    def __init__(self, extractors: list | None = None):
        self._extractors = list(extractors or [])

    def extract(self, document: Document) -> dict[str, Any]:
        """Extract all metadata from a document.

        Args:
            document: Parsed source document.

        Returns:
            Dictionary with all extracted metadata.
        """
        result: dict[str, Any] = {}
        for extractor in self._extractors:
            result.update(extractor.extract(document))
        return result


def create_default_extractor(
    taxonomies: tuple[str, ...], content_dir: Path
) -> CompositeMetadataExtractor:
    """Create the extractor chain used by the content loader."""
    return CompositeMetadataExtractor(
        [
            TitleExtractor(),
            DateExtractor(),
            WeightExtractor(),
            TaxonomyExtractor(taxonomies),
            AssetReferenceExtractor(content_dir),
        ]
    )
