from pathlib import Path

import pytest
import yaml

from kiln.config import (
    BuildConfig,
    ExtensionConfig,
    SiteConfig,
    load_config,
    normalize_base_path,
)
from kiln.errors import ConfigError


def test_load_config_defaults_without_file(tmp_path):
    config = load_config(tmp_path)
    root = tmp_path.resolve()
    assert config.content_dir == root / "content"
    assert config.template_dir == root / "templates"
    assert config.static_dir == root / "static"
    assert config.output_dir == root / "public"
    assert config.manifest_path == root / "tmp" / "cache" / "build-manifest.json"
    assert config.image_cache_dir == root / "tmp" / "cache" / "images"
    assert config.page_template == "page"
    assert config.page_size == 10
    assert config.workers == 1
    assert config.taxonomies == ("tags",)
    assert config.extensions == ()
    assert config.include_drafts is False


def test_load_config_reads_yaml(tmp_path):
    (tmp_path / "kiln.yaml").write_text(
        """
output_dir: dist
page_size: 5
workers: 4
taxonomies: [Tags, Categories]
site:
  title: Docs
  base_path: /guide/
  base_url: https://example.com
  meta:
    author: Ada
  analytics: abc
images:
  quality: 70
  presets:
    thumb: {w: 100, h: 100, fit: crop}
content_types:
  post:
    paths: [blog, {match: news, create_pattern: "{date}-{slug}"}]
    defaults: {Template: post}
""",
        encoding="utf-8",
    )
    config = load_config(tmp_path)

    assert config.output_dir == tmp_path.resolve() / "dist"
    assert config.page_size == 5
    assert config.workers == 4
    assert config.taxonomies == ("tags", "categories")
    assert config.site.title == "Docs"
    assert config.site.base_path == "/guide"
    assert config.site.meta == {"author": "Ada"}
    assert config.site.extra == {"analytics": "abc"}
    assert config.images.quality == 70
    assert config.images.presets == {"thumb": {"w": "100", "h": "100", "fit": "crop"}}
    post = config.content_type("post")
    assert post is not None
    assert post.defaults == {"template": "post"}
    assert post.matches("blog/hello.md")
    assert post.matches("news/item.md")
    assert not post.matches("blogging/x.md")
    assert post.paths[1].create_pattern == "{date}-{slug}"


def test_extensions_accept_list_and_mapping(tmp_path):
    listed = BuildConfig.from_mapping({"extensions": ["sitemap", "llms-txt"]}, tmp_path)
    assert listed.extensions == (ExtensionConfig("sitemap"), ExtensionConfig("llms-txt"))

    mapped = BuildConfig.from_mapping(
        {"extensions": {"sitemap": {"changefreq": "daily"}, "llms-txt": True, "off": False}},
        tmp_path,
    )
    assert mapped.extensions == (
        ExtensionConfig("sitemap", {"changefreq": "daily"}),
        ExtensionConfig("llms-txt"),
    )


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"page_size": 0}, "page_size must be at least 1"),
        ({"workers": "many"}, "workers must be an integer"),
        ({"include_drafts": "yes"}, "include_drafts must be true or false"),
        ({"site": ["title"]}, "site must be a mapping"),
        ({"images": {"quality": 101}}, "images.quality must be at most 100"),
        ({"markup": {"header_anchors": {"position": "middle"}}}, "position must be"),
        ({"content_types": {"post": {"paths": "blog"}}}, "paths must be a list"),
        ({"content_types": {"post": {"paths": [{"create_pattern": "x"}]}}}, "'match'"),
    ],
)
def test_invalid_values_raise_config_error(tmp_path, raw, message):
    with pytest.raises(ConfigError, match=message):
        BuildConfig.from_mapping(raw, tmp_path)


def test_invalid_yaml_raises_config_error(tmp_path):
    (tmp_path / "kiln.yaml").write_text("site: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(tmp_path)


def test_non_mapping_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        BuildConfig.from_mapping(["a"], tmp_path)  # type: ignore[arg-type]


def test_markup_options_are_lowered(tmp_path):
    config = BuildConfig.from_mapping(
        {
            "markup": {
                "highlight": {"theme": "monokai", "themes": {"light": "default"}},
                "header_anchors": {"enabled": True, "levels": [2, 3]},
                "smart_quotes": {"enabled": True, "locale": "de-DE"},
                "external_links": {"enabled": True, "internal_hosts": ["Example.com"]},
                "default_attributes": {"Table": {"class": "table"}},
            }
        },
        tmp_path,
    )
    markup = config.markup
    assert markup.highlight.theme == "monokai"
    assert markup.highlight.themes == {"light": "default"}
    assert markup.header_anchors.levels == (2, 3)
    assert markup.smart_quotes.open_double == "„"
    assert markup.external_links.internal_hosts == ("example.com",)
    assert markup.default_attributes == {"table": {"class": "table"}}


def test_with_overrides_returns_copy(tmp_path):
    config = load_config(tmp_path)
    drafts = config.with_overrides(include_drafts=True)
    assert drafts.include_drafts is True
    assert config.include_drafts is False


@pytest.mark.parametrize(
    "value, expected",
    [(None, None), ("", None), ("/", None), ("docs", "/docs"), ("/docs/", "/docs")],
)
def test_normalize_base_path(value, expected):
    assert normalize_base_path(value) == expected


def test_site_url_helpers():
    site = SiteConfig(base_url="https://example.com/", base_path="/docs")
    assert site.url("/about/") == "/docs/about/"
    assert site.url("about/") == "/docs/about/"
    assert site.url("/docs/about/") == "/docs/about/"
    assert site.absolute_url("/about/") == "https://example.com/docs/about/"
    assert SiteConfig().absolute_url("/x/") == "/x/"


def test_absolute_directories_are_kept(tmp_path):
    out = tmp_path / "elsewhere"
    config = BuildConfig.from_mapping({"output_dir": str(out)}, Path(tmp_path))
    assert config.output_dir == out


@pytest.mark.parametrize(
    "highlight, key",
    [
        ({"theme": "nope"}, "markup.highlight.theme"),
        ({"themes": {"light": "nope"}}, "markup.highlight.themes.light"),
    ],
)
def test_unknown_highlight_theme_fails_when_config_is_loaded(tmp_path, highlight, key):
    (tmp_path / "kiln.yaml").write_text(
        yaml.safe_dump({"markup": {"highlight": highlight}}), encoding="utf-8"
    )
    with pytest.raises(ConfigError, match=f"Unknown highlight theme 'nope' for {key}"):
        load_config(tmp_path)
