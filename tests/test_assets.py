import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from PIL import Image

from kiln.asset_processors import (
    ImagePresetResolver,
    PillowImageTransformer,
    TransformParamError,
    TransformParams,
    has_transform_query,
    parse_transform_params,
)
from kiln.asset_resolver import AssetNotFoundError, ContentAssetResolver
from kiln.assets import AssetPipeline, ImageTransformCache
from kiln.collections import SiteIndex
from kiln.config import BuildConfig
from kiln.content import ContentProcessor
from kiln.errors import AssetError


class SlowCountingTransformer:
    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def transform(self, source, params):
        with self._lock:
            self.calls += 1
        time.sleep(0.05)
        return b"transformed"


class FailingTransformer:
    def transform(self, source, params):
        raise OSError("cannot identify image file")


def create_project(tmp_path: Path, raw_config: dict | None = None) -> BuildConfig:
    content = tmp_path / "content"
    (content / "blog" / "images").mkdir(parents=True)
    (tmp_path / "static" / "img").mkdir(parents=True)
    Image.new("RGB", (400, 200), color="blue").save(content / "blog" / "images" / "wide.jpg")
    Image.new("RGBA", (50, 50), color="green").save(tmp_path / "static" / "img" / "logo.png")
    (content / "blog" / "post.md").write_text("![Wide](images/wide.jpg)\n", encoding="utf-8")
    (content / "about.md").write_text("[Post](blog/post.md)\n", encoding="utf-8")
    (content / "_drafts").mkdir()
    (content / "_drafts" / "secret.txt").write_text("x", encoding="utf-8")
    return BuildConfig.from_mapping(raw_config or {}, tmp_path)


def load_pages(config: BuildConfig):
    pages = ContentProcessor.from_config(config).load()
    return {p.relative_path: p for p in pages}, SiteIndex(pages)


def test_parse_transform_params_defaults_and_formats():
    params = parse_transform_params({"w": "100", "fm": "JPEG"}, default_quality=70)
    assert params == TransformParams(width=100, height=None, fit="contain", quality=70, format="jpg")
    assert params.canonical() == "w=100&h=&fit=contain&q=70&fm=jpg"
    assert params.output_extension(Path("a.png")) == "jpg"
    assert TransformParams().output_extension(Path("a.JPEG")) == "jpg"


@pytest.mark.parametrize(
    "params, message",
    [
        ({"w": "0"}, "w must be between 1 and 10000"),
        ({"h": "20000"}, "h must be between 1 and 10000"),
        ({"w": "wide"}, "w must be an integer"),
        ({"fit": "zoom"}, "invalid fit 'zoom'"),
        ({"fit": "crop"}, "needs a width or a height"),
        ({"w": "10", "q": "0"}, "q must be between 1 and 100"),
        ({"w": "10", "fm": "bmp"}, "invalid fm 'bmp'"),
    ],
)
def test_parse_transform_params_rejects_invalid(params, message):
    with pytest.raises(TransformParamError, match=message):
        parse_transform_params(params)


def test_presets_expand_and_explicit_params_win():
    resolver = ImagePresetResolver({"thumb": {"w": "100", "h": "100", "fit": "crop"}})
    assert resolver.resolve("preset=thumb&h=50") == {"w": "100", "h": "50", "fit": "crop"}
    assert resolver.resolve("p=thumb") == {"w": "100", "h": "100", "fit": "crop"}
    with pytest.raises(TransformParamError, match="unknown image preset 'hero'"):
        resolver.resolve("preset=hero")


def test_has_transform_query():
    assert has_transform_query("w=10")
    assert has_transform_query("preset=thumb")
    assert not has_transform_query("v=3")


@pytest.mark.parametrize(
    "fit, expected",
    [("crop", (100, 100)), ("fill", (100, 100)), ("stretch", (100, 100)), ("contain", (100, 50))],
)
def test_pillow_transformer_fit_modes(tmp_path, fit, expected):
    source = tmp_path / "wide.png"
    Image.new("RGB", (400, 200), color="blue").save(source)
    data = PillowImageTransformer().transform(
        source, TransformParams(width=100, height=100, fit=fit)
    )
    out = tmp_path / "out.png"
    out.write_bytes(data)
    with Image.open(out) as img:
        assert img.size == expected


def test_pillow_transformer_max_never_upscales(tmp_path):
    source = tmp_path / "small.png"
    Image.new("RGB", (40, 20)).save(source)
    data = PillowImageTransformer().transform(source, TransformParams(width=400, fit="max"))
    out = tmp_path / "out.png"
    out.write_bytes(data)
    with Image.open(out) as img:
        assert img.size == (40, 20)


def test_pillow_transformer_converts_alpha_to_jpeg(tmp_path):
    source = tmp_path / "logo.png"
    Image.new("RGBA", (10, 10), color=(0, 255, 0, 128)).save(source)
    data = PillowImageTransformer().transform(source, TransformParams(width=5, format="jpg"))
    assert data[:2] == b"\xff\xd8"


def test_transform_cache_runs_once_for_concurrent_requests(tmp_path):
    source = tmp_path / "a.jpg"
    source.write_bytes(b"source")
    transformer = SlowCountingTransformer()
    cache = ImageTransformCache(tmp_path / "cache", transformer)
    params = TransformParams(width=10)

    with ThreadPoolExecutor(max_workers=8) as executor:
        paths = list(executor.map(lambda _: cache.get_or_create(source, "a.jpg", params), range(8)))

    assert transformer.calls == 1
    assert len(set(paths)) == 1
    assert paths[0].read_bytes() == b"transformed"
    assert paths[0].suffix == ".jpg"


def test_transform_cache_key_changes_with_source_content(tmp_path):
    params = TransformParams(width=10)
    first = ImageTransformCache.cache_key("a.jpg", "digest-1", params)
    assert first == ImageTransformCache.cache_key("a.jpg", "digest-1", params)
    assert first != ImageTransformCache.cache_key("a.jpg", "digest-2", params)
    assert first != ImageTransformCache.cache_key("a.jpg", "digest-1", TransformParams(width=11))


def test_static_artifacts_keep_relative_paths(tmp_path):
    config = create_project(tmp_path)
    artifacts = AssetPipeline(config).static_artifacts()
    assert [a.destination for a in artifacts] == ["img/logo.png"]
    assert artifacts[0].kind == "static"


def test_content_artifacts_copy_colocated_files(tmp_path):
    config = create_project(tmp_path)
    pages, _ = load_pages(config)
    artifacts = AssetPipeline(config).content_artifacts(pages.values())
    assert [a.destination for a in artifacts] == ["blog/images/wide.jpg"]
    assert artifacts[0].kind == "content-asset"


def test_content_artifacts_reject_missing_and_escaping_references(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "blog" / "post.md").write_text(
        "![Gone](images/gone.png)\n", encoding="utf-8"
    )
    pages, _ = load_pages(config)
    with pytest.raises(AssetError, match="referenced by blog/post.md but not found"):
        AssetPipeline(config).content_artifacts(pages.values())

    (tmp_path / "content" / "blog" / "post.md").write_text(
        "![Out](../../secret.png)\n", encoding="utf-8"
    )
    pages, _ = load_pages(config)
    with pytest.raises(AssetError, match="escapes the content directory"):
        AssetPipeline(config).content_artifacts(pages.values())


def test_rewrite_body_html_resolves_relative_references(tmp_path):
    config = create_project(tmp_path, {"site": {"base_path": "/docs"}})
    pages, index = load_pages(config)
    pipeline = AssetPipeline(config)

    post_html = pipeline.rewrite_body_html(
        pages["blog/post.md"],
        '<img src="images/wide.jpg?w=10" alt=""><a href="../about.md#team">About</a>'
        '<a href="/rss.xml">Feed</a><a href="https://example.com/">Out</a><a href="#top">Top</a>',
        index,
    )
    assert 'src="/docs/blog/images/wide.jpg?w=10"' in post_html
    assert 'href="/docs/about/#team"' in post_html
    assert 'href="/docs/rss.xml"' in post_html
    assert 'href="https://example.com/"' in post_html
    assert 'href="#top"' in post_html


def test_transform_images_rewrites_and_returns_artifacts(tmp_path):
    config = create_project(
        tmp_path, {"images": {"presets": {"thumb": {"w": "40", "h": "40", "fit": "crop"}}}}
    )
    pages, _ = load_pages(config)
    pipeline = AssetPipeline(config)

    html, artifacts = pipeline.transform_images(
        pages["blog/post.md"],
        '<img src="images/wide.jpg?preset=thumb">'
        '<img srcset="/img/logo.png?w=20 1x, /img/logo.png?w=40 2x">'
        '<img src="images/wide.jpg">',
    )

    destinations = [a.destination for a in artifacts]
    assert len(destinations) == 3
    assert all(d.startswith("_transformed/") for d in destinations)
    assert f'src="/{destinations[0]}"' in html
    assert f'srcset="/{destinations[1]} 1x, /{destinations[2]} 2x"' in html
    assert '<img src="images/wide.jpg">' in html
    assert all(a.kind == "transformed-image" for a in artifacts)


def test_transform_images_reports_missing_and_failed_sources(tmp_path):
    config = create_project(tmp_path)
    pages, _ = load_pages(config)
    page = pages["blog/post.md"]

    with pytest.raises(AssetError, match="not found"):
        AssetPipeline(config).transform_images(page, '<img src="images/nope.jpg?w=10">')

    with pytest.raises(AssetError, match="image transform failed: cannot identify"):
        AssetPipeline(config, FailingTransformer()).transform_images(
            page, '<img src="images/wide.jpg?w=10">'
        )

    with pytest.raises(AssetError, match="unknown image preset"):
        AssetPipeline(config).transform_images(page, '<img src="images/wide.jpg?p=nope">')


def test_content_asset_resolver(tmp_path):
    config = create_project(tmp_path)
    (tmp_path / "content" / "blog" / "images" / "notes.pdf").write_bytes(b"pdf")
    resolver = ContentAssetResolver(config.content_dir, config.site.url)
    pages, _ = load_pages(config)

    assets = resolver.for_page(pages["blog/post.md"], "images")
    assert [a.filename for a in assets] == ["notes.pdf", "wide.jpg"]
    assert [a.filename for a in assets.images()] == ["wide.jpg"]
    assert [a.filename for a in assets.with_extension(".PDF")] == ["notes.pdf"]
    assert assets.sort_by_name(reverse=True).first().filename == "wide.jpg"
    assert str(resolver.resolve("images/wide.jpg", "blog")) == "/blog/images/wide.jpg"
    assert len(resolver.for_directory("", recursive=True)) == 2

    with pytest.raises(AssetNotFoundError) as exc_info:
        resolver.resolve("missing.png", "blog")
    assert exc_info.value.asset_name == "missing.png"


def test_content_asset_resolver_stays_inside_content_root(tmp_path):
    config = create_project(tmp_path)
    resolver = ContentAssetResolver(config.content_dir, config.site.url)
    pages, _ = load_pages(config)
    post = pages["blog/post.md"]

    assert str(resolver.resolve("../blog/./images/wide.jpg", "blog")) == "/blog/images/wide.jpg"
    with pytest.raises(AssetError, match="escapes its root directory"):
        resolver.resolve("../../kiln.yaml", "blog")
    with pytest.raises(AssetError, match="escapes its root directory"):
        resolver.for_page(post, "../..")
    with pytest.raises(AssetError, match="escapes its root directory"):
        resolver.for_directory("..")
