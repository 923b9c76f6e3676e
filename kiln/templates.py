"""Template rendering bridge for kiln.

This module renders a page body through the markup renderer and then the
page through its Jinja2 template, with a read-only context describing the
page, the site and its collections.

Key classes:
- TemplateEngine: Resolves templates and renders pages.
- SiteContext: The ``site`` object templates see.
- MetaResolver: Resolves the meta tags of a page.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

from jinja2 import Environment, FileSystemLoader, Template, TemplateNotFound, select_autoescape
from markupsafe import Markup
from pygments.formatters import HtmlFormatter

from .asset_resolver import (
    AssetNotFoundError,
    ContentAssetCollection,
    ContentAssetResolver,
    normalize_asset_path,
)
from .collections import PageCollection, Pager, SiteIndex, TaxonomyCollection
from .config import BuildConfig, SiteConfig
from .content import ContentPage
from .errors import RenderError
from .extensions import ExtensionHost
from .html_utils import escape_html, is_external_url
from .renderers import Heading, RenderedMarkup, RendererRegistry, create_default_renderer_registry

__all__ = ["MetaResolver", "SiteContext", "TemplateEngine", "render_toc"]

BodyFilter = Callable[[ContentPage, str], str]


def render_toc(headings: Sequence[Heading] | None) -> Markup:
    """Render a table of contents as nested HTML from page headings.

    Generates properly nested `<ul><li><a href="#id">text</a></li></ul>` structure
    based on heading levels.

    Args:
        headings: Headings collected while rendering the page body.

    Returns:
        Markup-safe HTML string of the nested TOC, or empty Markup if no headings.
    """
    if not headings:
        return Markup("")

    html_parts: list[str] = []
    level_stack: list[int] = []

    for heading in headings:
        level = heading.level

        # Close nested lists if going to a shallower level
        while level_stack and level_stack[-1] > level:
            level_stack.pop()
            html_parts.append("</li></ul>")

        if level_stack and level_stack[-1] == level:
            html_parts.append("</li>")
        elif not level_stack or level > level_stack[-1]:  # pragma: no branch
            html_parts.append("<ul>")
            level_stack.append(level)

        html_parts.append(
            f'<li><a href="#{escape_html(heading.id)}">{escape_html(heading.text)}</a>'
        )

    while level_stack:
        level_stack.pop()
        html_parts.append("</li></ul>")

    return Markup("".join(html_parts))


class MetaResolver:
    """Resolves meta tags for a page.

    Order, later wins: site ``meta`` defaults, the site description as the
    description fallback, the page's ``meta`` mapping, the page's own
    ``description``.
    """

    def __init__(self, site: SiteConfig):
        self.site = site

    def resolve(self, page: ContentPage) -> dict[str, Any]:
        meta: dict[str, Any] = dict(self.site.meta)
        if self.site.description:
            meta.setdefault("description", self.site.description)
        overrides = page.meta.get("meta")
        if isinstance(overrides, Mapping):
            meta.update({str(k): v for k, v in overrides.items()})
        if page.description:
            meta["description"] = page.description
        return meta


class SiteContext:
    """Site-wide values and collections exposed to templates as ``site``.

    Unknown attributes fall through to extra values from ``kiln.yaml``.
    """

    def __init__(self, config: BuildConfig, index: SiteIndex):
        self._config = config
        self._site = config.site
        self._index = index

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._site.extra.get(name)

    @property
    def title(self) -> str | None:
        return self._site.title

    @property
    def description(self) -> str | None:
        return self._site.description

    @property
    def base_url(self) -> str | None:
        return self._site.base_url

    @property
    def base_path(self) -> str | None:
        return self._site.base_path

    @property
    def meta(self) -> dict[str, Any]:
        return dict(self._site.meta)

    @property
    def pages(self) -> PageCollection:
        return self._index.all()

    @property
    def taxonomies(self):
        return self._index.taxonomies

    def all(self) -> PageCollection:
        return self._index.all()

    def section(self, name: str) -> PageCollection:
        return self._index.section(name)

    def sections(self) -> list[str]:
        return self._index.sections()

    def section_index(self, name: str) -> ContentPage | None:
        return self._index.section_index(name)

    def type(self, name: str) -> PageCollection:
        return self._index.type(name)

    def taxonomy(self, name: str = "tags") -> TaxonomyCollection:
        return self._index.taxonomy(name)

    def count(self, section: str | None = None) -> int:
        """Count pages in a section, or in the whole site."""
        if section is None:
            return len(self._index.all())
        return len(self._index.section(section))

    def term_count(self, term: str, taxonomy: str = "tags") -> int:
        return self._index.taxonomy(taxonomy).count(term)

    def paginate(
        self,
        collection: Sequence[ContentPage],
        page_number: int = 1,
        page_size: int | None = None,
        base_path: str = "/",
    ) -> Pager:
        return self._index.paginate(
            collection, page_size or self._config.page_size, page_number, base_path
        )

    def by_slug(self, slug: str) -> ContentPage | None:
        return self._index.by_slug(slug)

    def by_url(self, url_path: str) -> ContentPage | None:
        return self._index.by_url(url_path)

    def previous(self, page: ContentPage) -> ContentPage | None:
        return self._index.previous(page)

    def next(self, page: ContentPage) -> ContentPage | None:
        return self._index.next(page)

    def previous_in_section(self, page: ContentPage) -> ContentPage | None:
        return self._index.previous_in_section(page)

    def next_in_section(self, page: ContentPage) -> ContentPage | None:
        return self._index.next_in_section(page)

    def url(self, path: str) -> str:
        return self._site.url(path)

    def absolute_url(self, path: str) -> str:
        return self._site.absolute_url(path)


class TemplateEngine:
    """Template rendering engine using Jinja2.

    Attributes:
        config: Build configuration.
        index: Site index the context is built from.
        env: Jinja2 environment over the template directory.
        renderers: Markup renderer registry.
        extensions: Extension host used by the ``ext`` helper.
        asset_resolver: Resolver for content-colocated assets.
    """

    def __init__(
        self,
        config: BuildConfig,
        index: SiteIndex,
        renderers: RendererRegistry | None = None,
        extensions: ExtensionHost | None = None,
        body_filter: BodyFilter | None = None,
    ):
        """Initialize the template engine.

        Args:
            config: Build configuration.
            index: Site index for the current build.
            renderers: Optional markup renderer registry.
            extensions: Optional extension host for ``ext()``.
            body_filter: Optional callable applied to each rendered body,
                used to rewrite relative references.
        """
        self.config = config
        self.index = index
        self.renderers = renderers or create_default_renderer_registry(config.markup)
        self.extensions = extensions or ExtensionHost()
        self.body_filter = body_filter
        self.site = SiteContext(config, index)
        self.meta_resolver = MetaResolver(config.site)
        self.asset_resolver = ContentAssetResolver(config.content_dir, config.site.url)
        self.env = Environment(
            loader=FileSystemLoader([str(config.template_dir)]),
            autoescape=select_autoescape(["html", "xml", "html.jinja"]),
            enable_async=False,
        )
        self._install_globals()

    def _install_globals(self) -> None:
        """Install global variables and functions in the Jinja environment."""
        self.env.globals["site"] = self.site
        self.env.globals["config"] = self.config.site
        self.env.globals["url"] = self._url
        self.env.globals["ext"] = self.extensions.helper
        self.env.globals["pygments_css"] = self._pygments_css

    def _pygments_css(self) -> str:
        """Return Pygments CSS for the configured highlight theme."""
        return HtmlFormatter(style=self.config.markup.highlight.theme).get_style_defs(
            ".highlight"
        )

    def _url(self, target: Any) -> str:
        """Return the site URL of a path or page, applying the base path."""
        if isinstance(target, ContentPage):
            return self.config.site.url(target.url_path)
        path = str(target)
        if is_external_url(path):
            return path
        return self.config.site.url(path)

    def render_markup(self, page: ContentPage) -> RenderedMarkup:
        """Render a page body to HTML.

        Raises:
            RenderError: If no renderer handles the page's source type.
        """
        renderer = self.renderers.get_renderer(page.source_path)
        if renderer is None:
            raise RenderError(page.source_path, "no markup renderer for this file type")
        rendered = renderer.render(page.body)
        if self.body_filter is not None:
            rendered = RenderedMarkup(self.body_filter(page, rendered.html), rendered.toc)
        return rendered

    def resolve_template(self, page: ContentPage) -> Template:
        """Return the template for a page.

        Raises:
            RenderError: If no candidate template exists.
        """
        name = page.template or self.config.page_template
        candidates = [f"{name}.html.jinja", f"{name}.jinja", f"{name}.html", name]
        for candidate in candidates:
            try:
                return self.env.get_template(candidate)
            except TemplateNotFound:
                continue
        raise RenderError(
            page.source_path,
            f"template '{name}' not found in {self.config.template_dir} "
            f"(tried {', '.join(candidates)})",
        )

    def build_context(
        self, page: ContentPage, markup: RenderedMarkup, pager: Pager | None = None
    ) -> dict[str, Any]:
        """Build the template context for one page."""

        def asset(name: str) -> str:
            return self._asset_url(page, name)

        def page_assets(subdirectory: str = "", recursive: bool = False) -> ContentAssetCollection:
            return self.asset_resolver.for_page(page, subdirectory, recursive)

        def toc(headings: Sequence[Heading] | None = None) -> Markup:
            return render_toc(markup.toc if headings is None else headings)

        return {
            "page": page,
            "meta": self.meta_resolver.resolve(page),
            "content": Markup(markup.html),
            "toc": markup.toc,
            "pager": pager,
            "asset": asset,
            "page_assets": page_assets,
            "render_toc": toc,
        }

    def _asset_url(self, page: ContentPage, name: str) -> str:
        """Resolve an asset name beside the page, then under the static root."""
        if is_external_url(name):
            return name
        if name.startswith("/"):
            return self.config.site.url(name)
        try:
            return self.asset_resolver.resolve(name, page.directory).url
        except AssetNotFoundError as exc:
            relative = normalize_asset_path(name)
            static = self.config.static_dir / relative
            if static.is_file():
                return self.config.site.url(f"/{relative}")
            raise AssetNotFoundError(name, [*exc.searched_paths, static]) from exc

    def render_page(self, page: ContentPage, pager: Pager | None = None) -> str:
        """Render a page with its template.

        Args:
            page: Page to render.
            pager: Pager slice when the page is a paginated listing.

        Returns:
            Rendered HTML string.
        """
        markup = self.render_markup(page)
        template = self.resolve_template(page)
        return template.render(**self.build_context(page, markup, pager))

    def render_string(self, source: str, context: dict[str, Any]) -> str:
        """Render a template string with the engine's globals."""
        return self.env.from_string(source).render(**context)

