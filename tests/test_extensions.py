from datetime import datetime
from pathlib import Path
from types import MappingProxyType

import pytest

from kiln.artifacts import EXTENSION, OutputArtifact
from kiln.config import BuildConfig, ExtensionConfig
from kiln.content import ContentPage
from kiln.errors import ExtensionError
from kiln.extensions import (
    BuildContext,
    Extension,
    ExtensionHost,
    ExtensionRegistry,
    create_default_registry,
    discover_project_extensions,
)
from kiln.feeds import LlmsTxtExtension, SitemapExtension


def make_page(slug: str, title: str, **meta) -> ContentPage:
    return ContentPage(
        source_path=Path(f"/site/content/{slug}.md"),
        relative_path=f"{slug}.md",
        slug=slug,
        url_path="/" if slug == "index" else f"/{slug}/",
        output_path="index.html" if slug == "index" else f"{slug}/index.html",
        title=title,
        section="",
        type=None,
        draft=False,
        date=meta.pop("date", None),
        weight=None,
        meta=MappingProxyType(meta),
    )


def make_context(tmp_path: Path, site: dict | None = None, pages=()) -> BuildContext:
    config = BuildConfig.from_mapping({"site": site or {}}, tmp_path)
    return BuildContext(config, tuple(pages))


class Greeter(Extension):
    def before_build(self, context):
        return [OutputArtifact.from_text("hello.txt", "hi", EXTENSION, self.name)]

    def helpers(self):
        return {"shout": lambda text: text.upper()}


class NotAnArtifact(Extension):
    def after_build(self, context):
        return ["oops"]


def test_registry_creates_by_name_and_sets_name():
    registry = ExtensionRegistry()
    registry.register("greeter", Greeter)
    extension = registry.create("greeter", {"a": 1})
    assert extension.name == "greeter"
    assert extension.options == {"a": 1}
    assert registry.names() == ["greeter"]


def test_registry_errors():
    registry = ExtensionRegistry()
    registry.register("greeter", Greeter, configurable=False)

    with pytest.raises(ExtensionError, match="is already registered"):
        registry.register("greeter", Greeter)
    with pytest.raises(ExtensionError, match="is not a known extension \\(available: greeter\\)"):
        registry.create("missing")
    with pytest.raises(ExtensionError, match="does not accept options"):
        registry.create("greeter", {"x": 1})

    def broken(options):
        raise RuntimeError("bad wiring")

    registry.register("broken", broken)
    with pytest.raises(ExtensionError, match="could not be created: bad wiring") as exc_info:
        registry.create("broken")
    assert exc_info.value.extension == "broken"
    assert exc_info.value.source_path == "extension 'broken'"


def test_host_runs_stages_and_validates_results(tmp_path):
    registry = ExtensionRegistry()
    registry.register("greeter", Greeter)
    registry.register("bad", NotAnArtifact)
    host = registry.resolve([ExtensionConfig("greeter"), ExtensionConfig("bad")])
    context = make_context(tmp_path)

    artifacts = host.run("before_build", context)
    assert [a.destination for a in artifacts] == ["hello.txt"]
    assert host.run("after_page_render", context) == []
    with pytest.raises(ExtensionError, match="after_build returned str"):
        host.run("after_build", context)
    with pytest.raises(ValueError):
        host.run("during_build", context)


def test_host_helpers():
    registry = ExtensionRegistry()
    registry.register("greeter", Greeter)
    host = registry.resolve([ExtensionConfig("greeter")])

    assert host.helper("greeter", "shout", "hi") == "HI"
    with pytest.raises(ExtensionError, match="has no helper 'whisper'"):
        host.helper("greeter", "whisper")
    with pytest.raises(ExtensionError, match="is not enabled"):
        ExtensionHost().helper("greeter", "shout")


def test_discover_project_extensions(tmp_path):
    directory = tmp_path / "extensions"
    directory.mkdir()
    (directory / "stamp.py").write_text(
        "from kiln.extensions import Extension\n\n\n"
        "class Stamp(Extension):\n"
        "    pass\n\n\n"
        "EXTENSIONS = {'stamp': Stamp}\n",
        encoding="utf-8",
    )
    (directory / "_helpers.py").write_text("raise RuntimeError('never imported')\n", encoding="utf-8")

    factories = discover_project_extensions(directory)
    assert list(factories) == ["stamp"]

    registry = create_default_registry(tmp_path)
    assert registry.names() == ["llms-txt", "sitemap", "stamp"]


def test_discover_rejects_module_without_mapping(tmp_path):
    directory = tmp_path / "extensions"
    directory.mkdir()
    (directory / "empty.py").write_text("VALUE = 1\n", encoding="utf-8")
    with pytest.raises(ExtensionError, match="does not define an EXTENSIONS mapping"):
        discover_project_extensions(directory)


def test_sitemap_lists_pages_with_lastmod(tmp_path):
    pages = [
        make_page("index", "Home"),
        make_page("about", "About", lastmod="2024-05-01"),
        make_page("post", "Post", date=datetime(2024, 1, 2)),
        make_page("private", "Private"),
    ]
    context = make_context(tmp_path, {"base_url": "https://example.com"}, pages)
    extension = SitemapExtension(
        {"changefreq": "weekly", "priority": 3, "exclude": ["/private/"]}
    )

    [artifact] = extension.after_build(context)
    xml = artifact.read_bytes().decode("utf-8")

    assert artifact.destination == "sitemap.xml"
    assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
    assert "<loc>https://example.com/about/</loc><lastmod>2024-05-01</lastmod>" in xml
    assert "<loc>https://example.com/post/</loc><lastmod>2024-01-02</lastmod>" in xml
    assert "<changefreq>weekly</changefreq><priority>1.0</priority>" in xml
    assert "private" not in xml
    assert xml.index("/about/") < xml.index("/post/")


def test_sitemap_is_skipped_without_base_url(tmp_path):
    context = make_context(tmp_path, pages=[make_page("index", "Home")])
    assert SitemapExtension().after_build(context) == []


def test_sitemap_rejects_invalid_options():
    with pytest.raises(ValueError, match="changefreq must be one of"):
        SitemapExtension({"changefreq": "sometimes"})
    with pytest.raises(ValueError, match="exclude must be a list"):
        SitemapExtension({"exclude": {"a": 1}})


def test_llms_txt_lists_pages(tmp_path):
    pages = [
        make_page("index", "Home"),
        make_page("guide", "Guide", description="How to use it"),
    ]
    context = make_context(
        tmp_path, {"title": "Kiln Docs", "base_url": "https://example.com"}, pages
    )
    extension = LlmsTxtExtension({"pitch": "Static sites, fast.", "context": "Read the guide."})

    [artifact] = extension.after_build(context)

    assert artifact.destination == "llms.txt"
    assert artifact.read_bytes().decode("utf-8") == (
        "# Kiln Docs\n\n"
        "> Static sites, fast.\n\n"
        "Read the guide.\n\n"
        "## Pages\n\n"
        "- [Home](https://example.com/)\n"
        "- [Guide](https://example.com/guide/): How to use it\n"
    )
