"""Content loading for kiln.

This module discovers content documents, parses their metadata and builds
immutable ContentPage records. It performs no writes and no rendering.

Key classes:
- ContentPage: Frozen dataclass representing one source document.
- FileContentLoader: Discovers document files under the content root.
- UrlDeriver: Derives slugs, URL paths and output paths.
- ContentTypeResolver: Matches pages to configured content types.
- DefaultPageBuilder: Builds a ContentPage from one file.
- ContentProcessor: Facade that loads and filters the full page set.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Any

from .config import BuildConfig, ContentType
from .errors import ContentError
from .extractors import (
    CompositeMetadataExtractor,
    Document,
    MetadataError,
    create_default_extractor,
    extract_frontmatter,
    normalize_keys,
)
from .utils import is_content_document, is_hidden, slugify, slugify_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentPage:
    """Represents one source document.

    Attributes:
        source_path: Absolute path to the source file.
        relative_path: Content-root relative path with ``/`` separators.
        slug: Output slug (``index`` for the site root).
        url_path: Root-relative URL, without the site base path.
        output_path: Output file path relative to the output root.
        title: Human-readable title.
        section: Section name ('' for root-level pages).
        type: Content type name, or None.
        draft: Whether the page is a draft.
        date: Publish date, or None.
        weight: Sort weight, or None.
        meta: Read-only metadata with lower-cased keys.
        taxonomies: Terms per enabled taxonomy name.
        body: Raw markup body.
        assets: Content-relative paths of locally referenced assets.
    """

    source_path: Path
    relative_path: str
    slug: str
    url_path: str
    output_path: str
    title: str
    section: str
    type: str | None
    draft: bool
    date: datetime | None
    weight: int | None
    meta: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    taxonomies: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    body: str = ""
    assets: tuple[str, ...] = ()

    @property
    def template(self) -> str | None:
        value = self.meta.get("template")
        return str(value) if value else None

    @property
    def description(self) -> str | None:
        value = self.meta.get("description")
        return str(value) if value else None

    @property
    def directory(self) -> str:
        """Content-relative directory holding the source file."""
        parent = PurePosixPath(self.relative_path).parent.as_posix()
        return "" if parent == "." else parent

    @property
    def is_index(self) -> bool:
        return PurePosixPath(self.relative_path).stem == "index"

    def terms(self, taxonomy: str) -> tuple[str, ...]:
        return self.taxonomies.get(taxonomy, ())

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a metadata value; dotted keys descend into mappings."""
        value: Any = self.meta
        for part in key.split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return default
        return value


class FileContentLoader:
    """Discovers content documents under the content root.

    Hidden files and directories (``_`` or ``.`` prefix) are skipped.
    Results are sorted by relative path.

    Attributes:
        content_dir: Directory containing content documents.
    """

    def __init__(self, content_dir: Path):
        self.content_dir = content_dir

    def iter_files(self) -> list[Path]:
        """Return every content document, sorted by relative path."""
        if not self.content_dir.is_dir():
            return []
        files: list[Path] = []
        for path in self.content_dir.rglob("*"):
            if not path.is_file():
                continue
            rel = path.relative_to(self.content_dir)
            if is_hidden(rel):
                continue
            if is_content_document(path):
                files.append(path)
        return sorted(files, key=lambda p: p.relative_to(self.content_dir).as_posix())


class UrlDeriver:
    """Derives slugs, URL paths and output paths for pages."""

    def slug(self, relative: str, override: Any = None) -> str:
        """Derive the slug from an explicit override or the relative path.

        Args:
            relative: Content-relative path of the source document.
            override: Value of the ``slug`` metadata field, if any.

        Returns:
            Slug without leading or trailing slashes (``index`` for the root).
        """
        if override is not None and str(override).strip("/ "):
            return str(override).strip().strip("/")
        stem = PurePosixPath(relative).with_suffix("").as_posix()
        slug = slugify_path(stem)
        if slug == "index":
            return "index"
        if slug.endswith("/index"):
            slug = slug[: -len("/index")]
        return slug or "index"

    def url_path(self, slug: str) -> str:
        return "/" if slug == "index" else f"/{slug}/"

    def output_path(self, slug: str) -> str:
        return "index.html" if slug == "index" else f"{slug}/index.html"


class ContentTypeResolver:
    """Resolves a page's content type from metadata or path rules.

    Attributes:
        content_types: Configured content types in declaration order.
    """

    def __init__(self, content_types: tuple[ContentType, ...]):
        self.content_types = content_types

    def resolve(self, relative: str, explicit: Any) -> ContentType | None:
        """Return the content type for a page.

        Raises:
            MetadataError: If ``explicit`` names an unconfigured type.
        """
        if explicit is not None:
            name = str(explicit).strip()
            for content_type in self.content_types:
                if content_type.name == name:
                    return content_type
            raise MetadataError(f"unknown content type '{name}'")
        for content_type in self.content_types:
            if content_type.matches(relative):
                return content_type
        return None


class DefaultPageBuilder:
    """Builds ContentPage records from source files.

    Attributes:
        content_dir: Directory containing content documents.
        metadata_extractor: Composite metadata extractor.
        type_resolver: Content type resolver.
        url_deriver: URL deriver instance.
    """

    def __init__(
        self,
        content_dir: Path,
        metadata_extractor: CompositeMetadataExtractor,
        type_resolver: ContentTypeResolver,
        url_deriver: UrlDeriver | None = None,
    ):
        self.content_dir = content_dir
        self.metadata_extractor = metadata_extractor
        self.type_resolver = type_resolver
        self.url_deriver = url_deriver or UrlDeriver()

    def build(self, path: Path) -> ContentPage:
        """Build a ContentPage from a source file.

        Args:
            path: Path to the source document.

        Returns:
            The page record.

        Raises:
            ContentError: If the file cannot be read or its metadata is invalid.
        """
        relative = path.relative_to(self.content_dir).as_posix()
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ContentError(path, f"Unable to read content file: {exc}", exc) from exc

        try:
            frontmatter = extract_frontmatter(raw)
            meta = normalize_keys(frontmatter.data)
            content_type = self.type_resolver.resolve(relative, meta.get("type"))
            if content_type is not None:
                meta = {**content_type.defaults, **meta}
            document = Document(path=path, relative=relative, meta=meta, body=frontmatter.body)
            extracted = self.metadata_extractor.extract(document)
        except MetadataError as exc:
            raise ContentError(path, str(exc), exc) from exc

        slug = self.url_deriver.slug(relative, meta.get("slug"))
        return ContentPage(
            source_path=path,
            relative_path=relative,
            slug=slug,
            url_path=self.url_deriver.url_path(slug),
            output_path=self.url_deriver.output_path(slug),
            title=extracted["title"],
            section=self._section(relative, meta),
            type=content_type.name if content_type else None,
            draft=_truthy(meta.get("draft", False)),
            date=extracted["date"],
            weight=extracted["weight"],
            meta=MappingProxyType(document.meta),
            taxonomies=MappingProxyType(extracted["taxonomies"]),
            body=frontmatter.body,
            assets=extracted["assets"],
        )

    def _section(self, relative: str, meta: dict[str, Any]) -> str:
        explicit = meta.get("section")
        if isinstance(explicit, str) and explicit.strip():
            return slugify(explicit.strip())
        parts = PurePosixPath(relative).parts
        return slugify(parts[0]) if len(parts) > 1 else ""


class ContentProcessor:
    """Facade for discovering content and building ContentPage records.

    Attributes:
        content_dir: Directory containing content documents.
    """

    def __init__(
        self,
        content_dir: Path,
        content_loader: FileContentLoader | None = None,
        page_builder: DefaultPageBuilder | None = None,
    ):
        self.content_dir = content_dir
        self._content_loader = content_loader or FileContentLoader(content_dir)
        self._page_builder = page_builder or DefaultPageBuilder(
            content_dir,
            create_default_extractor(("tags",), content_dir),
            ContentTypeResolver(()),
        )

    @classmethod
    def from_config(cls, config: BuildConfig) -> ContentProcessor:
        """Create a processor wired with the configured taxonomies and types."""
        builder = DefaultPageBuilder(
            config.content_dir,
            create_default_extractor(config.taxonomies, config.content_dir),
            ContentTypeResolver(config.content_types),
        )
        return cls(config.content_dir, page_builder=builder)

    def load(self, include_drafts: bool = False) -> list[ContentPage]:
        """Load all content documents and build ContentPage records.

        Drafts are dropped here, before anything is indexed.

        Args:
            include_drafts: Whether to keep draft pages.

        Returns:
            Pages sorted by relative path.
        """
        pages: list[ContentPage] = []
        for path in self._content_loader.iter_files():
            page = self._page_builder.build(path)
            if page.draft and not include_drafts:
                logger.debug("Skipping draft %s", page.relative_path)
                continue
            pages.append(page)
        logger.info("Discovered %d pages in %s", len(pages), self.content_dir)
        return pages


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
