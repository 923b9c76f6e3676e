"""Built-in feed extensions for kiln.

Feed generation runs as after_build extensions so it sees the final page
set and contributes its files as ordinary artifacts.

Classes:
    FeedExtension: Base class for single-file feed extensions.
    SitemapExtension: Generates sitemap.xml (``sitemap``).
    LlmsTxtExtension: Generates llms.txt (``llms-txt``).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from .artifacts import EXTENSION, OutputArtifact
from .content import ContentPage
from .extensions import BuildContext, Extension
from .extractors import MetadataError, parse_date
from .html_utils import escape_html

logger = logging.getLogger(__name__)

CHANGEFREQ_VALUES = ("always", "hourly", "daily", "weekly", "monthly", "yearly", "never")
LASTMOD_KEYS = ("lastmod", "lastmodified", "updatedat", "date")


class FeedExtension(Extension, ABC):
    """Base class for extensions that write one feed file after the build.

    Subclasses provide the filename and the feed content.
    """

    @property
    @abstractmethod
    def filename(self) -> str:
        """Return the output filename for this feed."""
        ...

    @abstractmethod
    def generate(self, pages: list[ContentPage], context: BuildContext) -> str | None:
        """Generate feed content, or None to skip the feed."""
        ...

    def __init__(self, options: Mapping[str, Any] | None = None):
        super().__init__(options)
        self.exclude = _string_tuple(self.options.get("exclude"), "exclude")

    def after_build(self, context: BuildContext) -> list[OutputArtifact]:
        pages = [p for p in context.pages if not _excluded(p.url_path, self.exclude)]
        pages.sort(key=lambda p: p.url_path)
        content = self.generate(pages, context)
        if content is None:
            return []
        return [
            OutputArtifact.from_text(
                self.filename, content, EXTENSION, f"extension '{self.name}'"
            )
        ]


class SitemapExtension(FeedExtension):
    """Generates sitemap.xml following the sitemaps.org protocol.

    Options:
        changefreq: One of ``CHANGEFREQ_VALUES``.
        priority: Number clamped to 0..1.
        exclude: URL prefixes left out of the sitemap.

    Requires ``site.base_url`` for absolute locations.
    """

    name = "sitemap"

    def __init__(self, options: Mapping[str, Any] | None = None):
        super().__init__(options)
        changefreq = self.options.get("changefreq")
        if changefreq is not None and str(changefreq) not in CHANGEFREQ_VALUES:
            raise ValueError(
                f"changefreq must be one of {', '.join(CHANGEFREQ_VALUES)}, got '{changefreq}'"
            )
        self.changefreq = str(changefreq) if changefreq is not None else None
        priority = self.options.get("priority")
        if priority is not None:
            try:
                priority = min(1.0, max(0.0, float(priority)))
            except (TypeError, ValueError) as exc:
                raise ValueError(f"priority must be a number, got '{priority}'") from exc
        self.priority = priority

    @property
    def filename(self) -> str:
        return "sitemap.xml"

    def generate(self, pages: list[ContentPage], context: BuildContext) -> str | None:
        site = context.site
        if not site.base_url:
            logger.warning("sitemap: site.base_url is not set; skipping sitemap.xml")
            return None

        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">',
        ]
        for page in pages:
            parts = [f"<loc>{escape_html(site.absolute_url(page.url_path))}</loc>"]
            lastmod = self._lastmod(page)
            if lastmod:
                parts.append(f"<lastmod>{lastmod}</lastmod>")
            if self.changefreq:
                parts.append(f"<changefreq>{self.changefreq}</changefreq>")
            if self.priority is not None:
                parts.append(f"<priority>{self.priority:.1f}</priority>")
            lines.append(f"  <url>{''.join(parts)}</url>")
        lines.append("</urlset>")
        return "\n".join(lines) + "\n"

    def _lastmod(self, page: ContentPage) -> str | None:
        for key in LASTMOD_KEYS:
            value = page.meta.get(key)
            if value is None:
                continue
            try:
                return parse_date(value).strftime("%Y-%m-%d")
            except MetadataError:
                logger.warning("sitemap: ignoring invalid %s in %s", key, page.relative_path)
        if page.date is not None:
            return page.date.strftime("%Y-%m-%d")
        return None


class LlmsTxtExtension(FeedExtension):
    """Generates llms.txt, a plain Markdown index of the site for LLMs.

    Options:
        title: Heading (defaults to the site title).
        pitch: One-line summary shown as a blockquote.
        context: Free text placed before the page list.
        exclude: URL prefixes left out of the list.
    """

    name = "llms-txt"

    @property
    def filename(self) -> str:
        return "llms.txt"

    def generate(self, pages: list[ContentPage], context: BuildContext) -> str | None:
        site = context.site
        title = self.options.get("title") or site.title or "Site"
        lines = [f"# {title}", ""]
        pitch = self.options.get("pitch") or site.description
        if pitch:
            lines.extend([f"> {pitch}", ""])
        extra = self.options.get("context")
        if extra:
            lines.extend([str(extra).strip(), ""])
        lines.extend(["## Pages", ""])
        for page in pages:
            entry = f"- [{page.title}]({site.absolute_url(page.url_path)})"
            if page.description:
                entry = f"{entry}: {page.description}"
            lines.append(entry)
        return "\n".join(lines) + "\n"


def _excluded(url_path: str, prefixes: Iterable[str]) -> bool:
    return any(url_path.startswith(prefix) for prefix in prefixes)


def _string_tuple(value: Any, key: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of URL prefixes")
    return tuple(value)
