"""Project configuration for kiln.

``kiln.yaml`` is decoded once with PyYAML and lowered into the frozen
records below. The build pipeline only ever sees ``BuildConfig``; the raw
mapping is not consulted after ``BuildConfig.from_mapping`` returns.

Key functions:
- load_config: Read ``kiln.yaml`` from a project root and lower it.
- BuildConfig.from_mapping: Validate and lower an already decoded mapping.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml
from pygments.styles import get_style_by_name
from pygments.util import ClassNotFound

from .errors import ConfigError

CONFIG_FILENAME = "kiln.yaml"
MANIFEST_FILENAME = "build-manifest.json"

FIT_MODES = ("contain", "max", "fill", "stretch", "crop")

# (open double, close double, open single, close single)
QUOTE_STYLES: dict[str, tuple[str, str, str, str]] = {
    "en": ("“", "”", "‘", "’"),
    "de": ("„", "“", "‚", "‘"),
    "fr": ("« ", " »", "‹ ", " ›"),
    "nl": ("“", "”", "‘", "’"),
    "sv": ("”", "”", "’", "’"),
}

_KNOWN_KEYS = {
    "content_dir",
    "template_dir",
    "static_dir",
    "output_dir",
    "cache_dir",
    "page_template",
    "page_size",
    "include_drafts",
    "continue_on_error",
    "workers",
    "taxonomies",
    "site",
    "content_types",
    "images",
    "markup",
    "extensions",
}


@dataclass(frozen=True)
class SiteConfig:
    """Site-wide values exposed to templates and extensions.

    Attributes:
        title: Site title.
        description: Default page description.
        base_url: Absolute origin such as ``https://example.com``.
        base_path: URL prefix the site is served under (``/docs``) or None.
        meta: Default meta tags merged under each page's meta.
        extra: Any other keys from the ``site`` block.
    """

    title: str | None = None
    description: str | None = None
    base_url: str | None = None
    base_path: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def url(self, path: str) -> str:
        """Prefix a root-relative path with the base path."""
        if not path.startswith("/"):
            path = f"/{path}"
        if not self.base_path or path == self.base_path or path.startswith(
            f"{self.base_path}/"
        ):
            return path
        return f"{self.base_path}{path}"

    def absolute_url(self, path: str) -> str:
        """Return an absolute URL for a root-relative path when base_url is set."""
        local = self.url(path)
        if not self.base_url:
            return local
        return f"{self.base_url.rstrip('/')}{local}"


@dataclass(frozen=True)
class ContentTypeRule:
    match: str
    create_pattern: str | None = None

    def matches(self, relative_path: str) -> bool:
        prefix = self.match.strip("/")
        if not prefix:
            return True
        return relative_path == prefix or relative_path.startswith(f"{prefix}/")


@dataclass(frozen=True)
class ContentType:
    """A named content type with path rules and metadata defaults."""

    name: str
    paths: tuple[ContentTypeRule, ...] = ()
    defaults: dict[str, Any] = field(default_factory=dict)

    def matches(self, relative_path: str) -> bool:
        return any(rule.matches(relative_path) for rule in self.paths)


@dataclass(frozen=True)
class ImageOptions:
    presets: dict[str, dict[str, str]] = field(default_factory=dict)
    quality: int = 85


@dataclass(frozen=True)
class HighlightOptions:
    enabled: bool = True
    theme: str = "nord"
    gutter: bool = False
    themes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HeaderAnchorOptions:
    enabled: bool = False
    symbol: str = "#"
    position: str = "after"
    css_class: str = "permalink-wrapper"
    aria_label: str = "Anchor link"
    levels: tuple[int, ...] = (1, 2, 3, 4, 5, 6)


@dataclass(frozen=True)
class AutolinkOptions:
    enabled: bool = False
    schemes: tuple[str, ...] = ("https", "http", "mailto")


@dataclass(frozen=True)
class ExternalLinkOptions:
    enabled: bool = False
    internal_hosts: tuple[str, ...] = ()
    target: str = "_blank"
    rel: str = "noopener noreferrer"
    nofollow: bool = False


@dataclass(frozen=True)
class SmartQuoteOptions:
    enabled: bool = False
    locale: str = "en"
    open_double: str = QUOTE_STYLES["en"][0]
    close_double: str = QUOTE_STYLES["en"][1]
    open_single: str = QUOTE_STYLES["en"][2]
    close_single: str = QUOTE_STYLES["en"][3]


@dataclass(frozen=True)
class MentionOptions:
    enabled: bool = False
    url_template: str = "/users/view/{username}"
    css_class: str = "mention"


@dataclass(frozen=True)
class MarkupOptions:
    """Settings handed to the markup renderer without interpretation here."""

    highlight: HighlightOptions = field(default_factory=HighlightOptions)
    header_anchors: HeaderAnchorOptions = field(default_factory=HeaderAnchorOptions)
    autolink: AutolinkOptions = field(default_factory=AutolinkOptions)
    external_links: ExternalLinkOptions = field(default_factory=ExternalLinkOptions)
    smart_quotes: SmartQuoteOptions = field(default_factory=SmartQuoteOptions)
    mentions: MentionOptions = field(default_factory=MentionOptions)
    default_attributes: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtensionConfig:
    """One enabled extension. ``options`` is None when none were given."""

    name: str
    options: dict[str, Any] | None = None


@dataclass(frozen=True)
class BuildConfig:
    """Typed build configuration, built once per build.

    Attributes:
        project_root: Directory holding ``kiln.yaml``.
        content_dir: Content documents and co-located assets.
        template_dir: Jinja templates.
        static_dir: Files copied verbatim to the output root.
        output_dir: Deployable output root.
        cache_dir: Build manifest and image transform cache.
        page_template: Template used when a page names none.
        page_size: Default page size for paginated listings.
        include_drafts: Whether draft pages are built.
        continue_on_error: Skip pages that fail to render instead of aborting.
        workers: Thread count for rendering and asset work.
        taxonomies: Enabled taxonomy names.
        site: Site-wide values.
        content_types: Configured content types, in declaration order.
        images: Image transform presets and defaults.
        markup: Markup renderer settings.
        extensions: Enabled extensions, in declaration order.
    """

    project_root: Path
    content_dir: Path
    template_dir: Path
    static_dir: Path
    output_dir: Path
    cache_dir: Path
    page_template: str = "page"
    page_size: int = 10
    include_drafts: bool = False
    continue_on_error: bool = False
    workers: int = 1
    taxonomies: tuple[str, ...] = ("tags",)
    site: SiteConfig = field(default_factory=SiteConfig)
    content_types: tuple[ContentType, ...] = ()
    images: ImageOptions = field(default_factory=ImageOptions)
    markup: MarkupOptions = field(default_factory=MarkupOptions)
    extensions: tuple[ExtensionConfig, ...] = ()

    @property
    def manifest_path(self) -> Path:
        return self.cache_dir / MANIFEST_FILENAME

    @property
    def image_cache_dir(self) -> Path:
        return self.cache_dir / "images"

    def content_type(self, name: str) -> ContentType | None:
        for content_type in self.content_types:
            if content_type.name == name:
                return content_type
        return None

    def with_overrides(self, **changes: Any) -> BuildConfig:
        """Return a copy with some fields replaced (e.g. ``include_drafts``)."""
        return replace(self, **changes)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], project_root: Path) -> BuildConfig:
        """Validate and lower a decoded configuration mapping.

        Args:
            raw: Mapping decoded from ``kiln.yaml`` (may be empty).
            project_root: Directory the relative paths are resolved against.

        Returns:
            The lowered configuration.

        Raises:
            ConfigError: If any value has the wrong shape.
        """
        if not isinstance(raw, dict):
            raise ConfigError("Configuration must be a mapping")
        root = project_root.resolve()

        def directory(key: str, default: str) -> Path:
            value = _as_str(raw.get(key, default), key)
            path = Path(value)
            return path if path.is_absolute() else root / path

        site_raw = _as_mapping(raw.get("site"), "site")
        extra = {k: v for k, v in raw.items() if k not in _KNOWN_KEYS}
        return cls(
            project_root=root,
            content_dir=directory("content_dir", "content"),
            template_dir=directory("template_dir", "templates"),
            static_dir=directory("static_dir", "static"),
            output_dir=directory("output_dir", "public"),
            cache_dir=directory("cache_dir", "tmp/cache"),
            page_template=_as_str(raw.get("page_template", "page"), "page_template"),
            page_size=_as_int(raw.get("page_size", 10), "page_size", minimum=1),
            include_drafts=_as_bool(raw.get("include_drafts", False), "include_drafts"),
            continue_on_error=_as_bool(
                raw.get("continue_on_error", False), "continue_on_error"
            ),
            workers=_as_int(raw.get("workers", 1), "workers", minimum=1),
            taxonomies=tuple(
                t.strip().lower()
                for t in _as_str_list(raw.get("taxonomies", ["tags"]), "taxonomies")
                if t.strip()
            ),
            site=_lower_site(site_raw, extra),
            content_types=_lower_content_types(raw.get("content_types")),
            images=_lower_images(_as_mapping(raw.get("images"), "images")),
            markup=_lower_markup(_as_mapping(raw.get("markup"), "markup")),
            extensions=_lower_extensions(raw.get("extensions")),
        )


def load_config(project_root: Path, filename: str = CONFIG_FILENAME) -> BuildConfig:
    """Load the project configuration from ``kiln.yaml``.

    A missing file yields the defaults.

    Args:
        project_root: Root directory of the project.
        filename: Configuration file name.

    Returns:
        The lowered BuildConfig.

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values.
    """
    config_path = project_root / filename
    raw: Any = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"{config_path}: invalid YAML: {exc}") from exc
    return BuildConfig.from_mapping(raw, project_root)


def normalize_base_path(value: Any) -> str | None:
    """Normalize a base path to ``/segment`` form, or None for the root."""
    if value is None:
        return None
    text = _as_str(value, "site.base_path").strip().strip("/")
    if not text:
        return None
    return f"/{text}"


def _lower_site(raw: dict[str, Any], extra: dict[str, Any]) -> SiteConfig:
    meta = dict(_as_mapping(raw.get("meta"), "site.meta"))
    reserved = {"title", "description", "base_url", "base_path", "meta"}
    site_extra = {k: v for k, v in raw.items() if k not in reserved}
    site_extra.update(extra)
    return SiteConfig(
        title=_optional_str(raw.get("title"), "site.title"),
        description=_optional_str(raw.get("description"), "site.description"),
        base_url=_optional_str(raw.get("base_url"), "site.base_url"),
        base_path=normalize_base_path(raw.get("base_path")),
        meta=meta,
        extra=site_extra,
    )


def _lower_content_types(raw: Any) -> tuple[ContentType, ...]:
    types: list[ContentType] = []
    for name, definition in _as_mapping(raw, "content_types").items():
        key = f"content_types.{name}"
        definition = _as_mapping(definition, key)
        rules: list[ContentTypeRule] = []
        paths = definition.get("paths", [])
        if not isinstance(paths, list):
            raise ConfigError(f"{key}.paths must be a list")
        for entry in paths:
            if isinstance(entry, str):
                rules.append(ContentTypeRule(match=entry))
                continue
            entry = _as_mapping(entry, f"{key}.paths[]")
            if "match" not in entry:
                raise ConfigError(f"{key}.paths entries need a 'match' value")
            rules.append(
                ContentTypeRule(
                    match=_as_str(entry["match"], f"{key}.paths.match"),
                    create_pattern=_optional_str(
                        entry.get("create_pattern"), f"{key}.paths.create_pattern"
                    ),
                )
            )
        defaults = {
            str(k).lower(): v
            for k, v in _as_mapping(definition.get("defaults"), f"{key}.defaults").items()
        }
        types.append(ContentType(name=str(name), paths=tuple(rules), defaults=defaults))
    return tuple(types)


def _lower_images(raw: dict[str, Any]) -> ImageOptions:
    presets: dict[str, dict[str, str]] = {}
    for name, params in _as_mapping(raw.get("presets"), "images.presets").items():
        params = _as_mapping(params, f"images.presets.{name}")
        presets[str(name)] = {str(k): str(v) for k, v in params.items()}
    return ImageOptions(
        presets=presets,
        quality=_as_int(raw.get("quality", 85), "images.quality", minimum=1, maximum=100),
    )


def _lower_markup(raw: dict[str, Any]) -> MarkupOptions:
    hl = _as_mapping(raw.get("highlight"), "markup.highlight")
    anchors = _as_mapping(raw.get("header_anchors"), "markup.header_anchors")
    autolink = _as_mapping(raw.get("autolink"), "markup.autolink")
    external = _as_mapping(raw.get("external_links"), "markup.external_links")
    quotes = _as_mapping(raw.get("smart_quotes"), "markup.smart_quotes")
    mentions = _as_mapping(raw.get("mentions"), "markup.mentions")

    theme = _highlight_theme(hl.get("theme", "nord"), "markup.highlight.theme")
    themes = {
        str(k): _highlight_theme(v, f"markup.highlight.themes.{k}")
        for k, v in _as_mapping(hl.get("themes"), "markup.highlight.themes").items()
    }

    position = _as_str(anchors.get("position", "after"), "markup.header_anchors.position")
    if position not in ("before", "after"):
        raise ConfigError("markup.header_anchors.position must be 'before' or 'after'")
    levels = tuple(
        _as_int(level, "markup.header_anchors.levels", minimum=1, maximum=6)
        for level in anchors.get("levels", [1, 2, 3, 4, 5, 6])
    )

    locale = _as_str(quotes.get("locale", "en"), "markup.smart_quotes.locale").lower()
    style = QUOTE_STYLES.get(locale.split("-")[0].split("_")[0], QUOTE_STYLES["en"])

    default_attributes: dict[str, dict[str, str]] = {}
    for element, attrs in _as_mapping(
        raw.get("default_attributes"), "markup.default_attributes"
    ).items():
        attrs = _as_mapping(attrs, f"markup.default_attributes.{element}")
        default_attributes[str(element).lower()] = {str(k): str(v) for k, v in attrs.items()}

    return MarkupOptions(
        highlight=HighlightOptions(
            enabled=_as_bool(hl.get("enabled", True), "markup.highlight.enabled"),
            theme=theme,
            gutter=_as_bool(hl.get("gutter", False), "markup.highlight.gutter"),
            themes=themes,
        ),
        header_anchors=HeaderAnchorOptions(
            enabled=_as_bool(anchors.get("enabled", False), "markup.header_anchors.enabled"),
            symbol=_as_str(anchors.get("symbol", "#"), "markup.header_anchors.symbol"),
            position=position,
            css_class=_as_str(
                anchors.get("css_class", "permalink-wrapper"),
                "markup.header_anchors.css_class",
            ),
            aria_label=_as_str(
                anchors.get("aria_label", "Anchor link"), "markup.header_anchors.aria_label"
            ),
            levels=levels,
        ),
        autolink=AutolinkOptions(
            enabled=_as_bool(autolink.get("enabled", False), "markup.autolink.enabled"),
            schemes=tuple(
                s.lower()
                for s in _as_str_list(
                    autolink.get("schemes", ["https", "http", "mailto"]),
                    "markup.autolink.schemes",
                )
            ),
        ),
        external_links=ExternalLinkOptions(
            enabled=_as_bool(external.get("enabled", False), "markup.external_links.enabled"),
            internal_hosts=tuple(
                h.lower()
                for h in _as_str_list(
                    external.get("internal_hosts", []), "markup.external_links.internal_hosts"
                )
            ),
            target=_as_str(external.get("target", "_blank"), "markup.external_links.target"),
            rel=_as_str(
                external.get("rel", "noopener noreferrer"), "markup.external_links.rel"
            ),
            nofollow=_as_bool(
                external.get("nofollow", False), "markup.external_links.nofollow"
            ),
        ),
        smart_quotes=SmartQuoteOptions(
            enabled=_as_bool(quotes.get("enabled", False), "markup.smart_quotes.enabled"),
            locale=locale,
            open_double=_as_str(quotes.get("open_double", style[0]), "open_double"),
            close_double=_as_str(quotes.get("close_double", style[1]), "close_double"),
            open_single=_as_str(quotes.get("open_single", style[2]), "open_single"),
            close_single=_as_str(quotes.get("close_single", style[3]), "close_single"),
        ),
        mentions=MentionOptions(
            enabled=_as_bool(mentions.get("enabled", False), "markup.mentions.enabled"),
            url_template=_as_str(
                mentions.get("url_template", "/users/view/{username}"),
                "markup.mentions.url_template",
            ),
            css_class=_as_str(mentions.get("css_class", "mention"), "markup.mentions.css_class"),
        ),
        default_attributes=default_attributes,
    )


def _lower_extensions(raw: Any) -> tuple[ExtensionConfig, ...]:
    if raw is None:
        return ()
    if isinstance(raw, list):
        return tuple(ExtensionConfig(_as_str(name, "extensions[]")) for name in raw)
    configs: list[ExtensionConfig] = []
    for name, options in _as_mapping(raw, "extensions").items():
        if options is False:
            continue
        if options is True or options is None:
            configs.append(ExtensionConfig(str(name)))
        else:
            configs.append(
                ExtensionConfig(str(name), dict(_as_mapping(options, f"extensions.{name}")))
            )
    return tuple(configs)


def _as_mapping(value: Any, key: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _as_str(value: Any, key: str) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a string")
    return str(value)


def _highlight_theme(value: Any, key: str) -> str:
    name = _as_str(value, key)
    try:
        get_style_by_name(name)
    except ClassNotFound as exc:
        raise ConfigError(f"Unknown highlight theme '{name}' for {key}") from exc
    return name


def _optional_str(value: Any, key: str) -> str | None:
    if value is None:
        return None
    text = _as_str(value, key).strip()
    return text or None


def _as_str_list(value: Any, key: str) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    return [_as_str(item, key) for item in value]


def _as_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false")
    return value


def _as_int(
    value: Any, key: str, minimum: int | None = None, maximum: int | None = None
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    if minimum is not None and value < minimum:
        raise ConfigError(f"{key} must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{key} must be at most {maximum}")
    return value
