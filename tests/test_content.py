from datetime import datetime
from pathlib import Path

import pytest

from kiln.config import BuildConfig
from kiln.content import ContentProcessor, UrlDeriver
from kiln.errors import ContentError
from kiln.extractors import MetadataError, extract_frontmatter, parse_date, resolve_reference


def create_project(tmp_path: Path, raw_config: dict | None = None) -> BuildConfig:
    content = tmp_path / "content"
    (content / "blog").mkdir(parents=True)
    (content / "docs").mkdir()
    (content / "index.md").write_text("# Home\n", encoding="utf-8")
    (content / "blog" / "2024-01-15-hello-world.md").write_text(
        "---\ntags: [Python, Web, python]\n---\nHello\n", encoding="utf-8"
    )
    (content / "docs" / "getting-started.dj").write_text(
        "---\ntitle: Start Here\nweight: 2\nslug: start\n---\nBody\n", encoding="utf-8"
    )
    (content / "docs" / "index.md").write_text("Docs\n", encoding="utf-8")
    (content / "_partials").mkdir()
    (content / "_partials" / "hidden.md").write_text("hidden", encoding="utf-8")
    (content / "notes.txt").write_text("not a document", encoding="utf-8")
    return BuildConfig.from_mapping(raw_config or {}, tmp_path)


def load(config: BuildConfig, include_drafts: bool = False):
    pages = ContentProcessor.from_config(config).load(include_drafts)
    return {p.relative_path: p for p in pages}


def test_frontmatter_absent_yields_empty_metadata():
    result = extract_frontmatter("# Title\n\nBody")
    assert result.present is False
    assert result.data == {}
    assert result.body == "# Title\n\nBody"


def test_frontmatter_is_split_from_body():
    result = extract_frontmatter("---\ntitle: Hi\n---\nBody\n")
    assert result.present is True
    assert result.data == {"title": "Hi"}
    assert result.body == "Body\n"


def test_frontmatter_accepts_plus_fences_and_empty_block():
    assert extract_frontmatter("+++\na: 1\n+++\nx").data == {"a": 1}
    assert extract_frontmatter("---\n---\nx").data == {}


@pytest.mark.parametrize(
    "text, message",
    [
        ("---\ntitle: x\n", "unterminated"),
        ("---\ntitle: [x\n---\n", "invalid metadata block"),
        ("---\n- a\n- b\n---\n", "must be a mapping"),
    ],
)
def test_invalid_frontmatter_raises(text, message):
    with pytest.raises(MetadataError, match=message):
        extract_frontmatter(text)


def test_pages_are_discovered_and_hidden_files_skipped(tmp_path):
    pages = load(create_project(tmp_path))
    assert sorted(pages) == [
        "blog/2024-01-15-hello-world.md",
        "docs/getting-started.dj",
        "docs/index.md",
        "index.md",
    ]


def test_page_fields_are_derived(tmp_path):
    pages = load(create_project(tmp_path))

    home = pages["index.md"]
    assert home.slug == "index"
    assert home.url_path == "/"
    assert home.output_path == "index.html"
    assert home.title == "Home"
    assert home.section == ""

    post = pages["blog/2024-01-15-hello-world.md"]
    assert post.slug == "blog/hello-world"
    assert post.url_path == "/blog/hello-world/"
    assert post.output_path == "blog/hello-world/index.html"
    assert post.title == "Hello World"
    assert post.date == datetime(2024, 1, 15)
    assert post.section == "blog"
    assert post.terms("tags") == ("python", "web")
    assert "tags" not in post.meta

    guide = pages["docs/getting-started.dj"]
    assert guide.slug == "start"
    assert guide.url_path == "/start/"
    assert guide.title == "Start Here"
    assert guide.weight == 2

    docs = pages["docs/index.md"]
    assert docs.slug == "docs"
    assert docs.title == "Docs"
    assert docs.is_index


def test_drafts_are_filtered_at_load(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "wip.md").write_text("---\ndraft: yes\n---\n", encoding="utf-8")

    assert "wip.md" not in load(config)
    assert load(config, include_drafts=True)["wip.md"].draft is True


def test_content_type_from_path_applies_defaults(tmp_path):
    config = create_project(
        tmp_path,
        {"content_types": {"post": {"paths": ["blog"], "defaults": {"template": "post"}}}},
    )
    pages = load(config)
    post = pages["blog/2024-01-15-hello-world.md"]
    assert post.type == "post"
    assert post.template == "post"
    assert pages["index.md"].type is None


def test_explicit_metadata_overrides_type_defaults(tmp_path):
    config = create_project(
        tmp_path,
        {"content_types": {"post": {"paths": ["blog"], "defaults": {"template": "post"}}}},
    )
    (tmp_path / "content" / "blog" / "custom.md").write_text(
        "---\ntemplate: special\n---\n", encoding="utf-8"
    )
    assert load(config)["blog/custom.md"].template == "special"


def test_unknown_content_type_raises(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "odd.md").write_text("---\ntype: recipe\n---\n", encoding="utf-8")

    with pytest.raises(ContentError, match="unknown content type 'recipe'") as exc_info:
        load(config)
    assert exc_info.value.source_path == tmp_path.resolve() / "content" / "odd.md"


def test_invalid_metadata_is_attributed_to_file(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "bad.md").write_text("---\nweight: heavy\n---\n", encoding="utf-8")

    with pytest.raises(ContentError, match="weight must be an integer"):
        load(config)


def test_asset_references_are_collected(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "blog" / "photo.png").write_bytes(b"png")
    (tmp_path / "content" / "blog" / "guide.pdf").write_bytes(b"pdf")
    (tmp_path / "content" / "blog" / "gallery.md").write_text(
        "![Photo](photo.png?w=10)\n[Guide](guide.pdf)\n[Post](other.md)\n"
        "[External](https://example.com/x.png)\n<img src=\"../shared/logo.svg\">\n",
        encoding="utf-8",
    )
    page = load(config)["blog/gallery.md"]
    assert page.assets == ("blog/photo.png", "shared/logo.svg", "blog/guide.pdf")


def test_explicit_section_overrides_directory(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "misc.md").write_text("---\nsection: News Items\n---\n", encoding="utf-8")
    assert load(config)["misc.md"].section == "news-items"


def test_dotted_metadata_lookup(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "nested.md").write_text(
        "---\nseo:\n  image: cover.png\n---\n", encoding="utf-8"
    )
    page = load(config)["nested.md"]
    assert page.get("seo.image") == "cover.png"
    assert page.get("seo.missing", "x") == "x"


def test_url_deriver():
    deriver = UrlDeriver()
    assert deriver.slug("index.md") == "index"
    assert deriver.slug("About Us.md") == "about-us"
    assert deriver.slug("guides/index.md") == "guides"
    assert deriver.slug("a.md", override="/custom/path/") == "custom/path"
    assert deriver.url_path("guides") == "/guides/"
    assert deriver.output_path("guides") == "guides/index.html"


def test_parse_date_variants():
    assert parse_date("2024-03-01") == datetime(2024, 3, 1)
    assert parse_date("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10)
    with pytest.raises(MetadataError):
        parse_date("yesterday")


def test_resolve_reference():
    assert resolve_reference("img/a.png?w=1#x", "blog") == "blog/img/a.png"
    assert resolve_reference("../a.png", "blog") == "a.png"
    assert resolve_reference("../../a.png", "blog") == "../a.png"
    assert resolve_reference("/a.png", "blog") is None
    assert resolve_reference("https://x.test/a.png", "") is None
    assert resolve_reference("#top", "") is None
