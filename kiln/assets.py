"""Asset pipeline for kiln.

This module turns static files, content-colocated files and image transform
requests into OutputArtifacts. It never writes to the output root and never
deletes anything; the Reconciler owns both.

Key components:
- ImageTransformCache: Content-addressed cache of transformed images.
- AssetPipeline: Produces asset artifacts and rewrites page references.
"""

from __future__ import annotations

import hashlib
import html as html_lib
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from .artifacts import (
    CONTENT_ASSET,
    STATIC,
    TRANSFORMED_IMAGE,
    OutputArtifact,
    fingerprint_file,
)
from .asset_processors import (
    ImagePresetResolver,
    PillowImageTransformer,
    TransformParamError,
    TransformParams,
    has_transform_query,
    is_transformable,
    parse_transform_params,
)
from .collections import SiteIndex
from .config import BuildConfig
from .content import ContentPage
from .errors import AssetError
from .extractors import resolve_reference
from .html_utils import is_external_url, rewrite_image_sources, rewrite_url_attributes, split_url
from .protocols import ImageTransformer
from .utils import is_content_document, is_hidden

logger = logging.getLogger(__name__)

TRANSFORMED_DIR = "_transformed"
_KEY_LENGTH = 20

Mapper = Callable[..., Iterable]


class ImageTransformCache:
    """Cache of transformed images keyed by source identity and parameters.

    Entries are files named ``<key>.<ext>`` in ``cache_dir``. Concurrent
    requests for the same key are serialized so the transformer runs once.

    Attributes:
        cache_dir: Directory holding cached files.
        transformer: Service invoked on a cache miss.
    """

    def __init__(self, cache_dir: Path, transformer: ImageTransformer):
        self.cache_dir = cache_dir
        self.transformer = transformer
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def cache_key(relative: str, digest: str, params: TransformParams) -> str:
        """Hash a source identity and canonical parameters into a cache key."""
        material = f"{relative}\n{digest}\n{params.canonical()}".encode()
        return hashlib.sha256(material).hexdigest()[:_KEY_LENGTH]

    def get_or_create(self, source: Path, relative: str, params: TransformParams) -> Path:
        """Return the cached file for a transform, creating it on a miss.

        Args:
            source: Source image file.
            relative: Source path relative to its root, part of its identity.
            params: Validated transform parameters.

        Returns:
            Path of the cached transformed image.
        """
        key = self.cache_key(relative, fingerprint_file(source), params)
        target = self.cache_dir / f"{key}.{params.output_extension(source)}"
        with self._lock_for(key):
            if target.exists():
                logger.debug("Image cache hit for %s (%s)", relative, key)
                return target
            logger.debug("Image cache miss for %s (%s)", relative, key)
            data = self.transformer.transform(source, params)
            self._store(target, data)
        return target

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _store(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".img-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class AssetPipeline:
    """Produces the asset artifacts of a build.

    Attributes:
        config: Build configuration.
        presets: Image preset resolver.
        cache: Image transform cache.
    """

    def __init__(
        self,
        config: BuildConfig,
        transformer: ImageTransformer | None = None,
        cache: ImageTransformCache | None = None,
    ):
        self.config = config
        self.presets = ImagePresetResolver(config.images.presets)
        self.cache = cache or ImageTransformCache(
            config.image_cache_dir, transformer or PillowImageTransformer()
        )

    def static_artifacts(self, mapper: Mapper = map) -> list[OutputArtifact]:
        """Copy every file under the static root at the same relative path."""
        static_dir = self.config.static_dir
        if not static_dir.is_dir():
            return []
        files = sorted(
            (p for p in static_dir.rglob("*") if p.is_file()),
            key=lambda p: p.relative_to(static_dir).as_posix(),
        )

        def artifact(path: Path) -> OutputArtifact:
            rel = path.relative_to(static_dir).as_posix()
            return OutputArtifact.from_file(rel, path, STATIC, str(path))

        return list(mapper(artifact, files))

    def content_artifacts(
        self, pages: Iterable[ContentPage], mapper: Mapper = map
    ) -> list[OutputArtifact]:
        """Copy content-colocated files at their content-relative paths.

        Every non-document, non-hidden file under the content root is copied,
        as is every file a page references.

        Raises:
            AssetError: If a page references a missing or escaping path.
        """
        content_dir = self.config.content_dir
        wanted: dict[str, Path] = {}
        if content_dir.is_dir():
            for path in content_dir.rglob("*"):
                if not path.is_file() or is_content_document(path):
                    continue
                rel = path.relative_to(content_dir)
                if not is_hidden(rel):
                    wanted[rel.as_posix()] = path
        for page in pages:
            for reference in page.assets:
                source = self.check_reference(page, reference)
                if not is_content_document(source):
                    wanted.setdefault(reference, source)

        def artifact(item: tuple[str, Path]) -> OutputArtifact:
            return OutputArtifact.from_file(item[0], item[1], CONTENT_ASSET, str(item[1]))

        return list(mapper(artifact, sorted(wanted.items())))

    def check_reference(self, page: ContentPage, reference: str) -> Path:
        """Return the source file of a page's asset reference.

        Raises:
            AssetError: If the reference escapes the content root or is missing.
        """
        if reference.startswith("..") or "/../" in f"/{reference}":
            raise AssetError(
                reference, f"referenced by {page.relative_path} escapes the content directory"
            )
        source = self.config.content_dir / reference
        if not source.is_file():
            raise AssetError(reference, f"referenced by {page.relative_path} but not found")
        return source

    def rewrite_body_html(self, page: ContentPage, html: str, index: SiteIndex) -> str:
        """Rewrite relative references in a rendered body.

        Relative asset references become root-relative URLs of the copied
        files. Relative links to content documents become the target page's
        URL. Root-relative references gain the site base path.
        """
        site = self.config.site

        def rewrite(attr: str, url: str) -> str:
            if not url or is_external_url(url):
                return url
            if url.startswith("/"):
                return site.url(url)
            path = resolve_reference(url, page.directory)
            if path is None or path.startswith(".."):
                return url
            _, query, fragment = split_url(url)
            suffix = f"#{fragment}" if fragment else ""
            if is_content_document(Path(path)):
                target = index.by_relative_path(path)
                return f"{site.url(target.url_path)}{suffix}" if target else url
            if query:
                suffix = f"?{query}{suffix}"
            return f"{site.url('/' + path)}{suffix}"

        return rewrite_url_attributes(html, rewrite)

    def transform_images(
        self, page: ContentPage, html: str
    ) -> tuple[str, list[OutputArtifact]]:
        """Resolve image transform requests in a page's final HTML.

        Returns:
            The HTML with transform references rewritten to
            ``/_transformed/<hash>.<ext>`` and the transformed-image artifacts.

        Raises:
            AssetError: If a reference is invalid, missing or fails to transform.
        """
        artifacts: list[OutputArtifact] = []

        def rewrite(url: str) -> str:
            result = self._transform_reference(page, url)
            if result is None:
                return url
            artifacts.append(result)
            return self.config.site.url(f"/{result.destination}")

        return rewrite_image_sources(html, rewrite), artifacts

    def _transform_reference(self, page: ContentPage, url: str) -> OutputArtifact | None:
        reference = html_lib.unescape(url)
        if is_external_url(reference):
            return None
        path, query, _ = split_url(reference)
        if not query or not has_transform_query(query) or not is_transformable(path):
            return None

        relative = self._source_relative(page, path)
        if relative is None or relative.startswith("..") or "/../" in f"/{relative}":
            raise AssetError(reference, "image reference escapes the site directories")
        source = self._find_source(relative)
        if source is None:
            raise AssetError(reference, f"image referenced by {page.relative_path} not found")

        try:
            params = parse_transform_params(
                self.presets.resolve(query), self.config.images.quality
            )
        except TransformParamError as exc:
            raise AssetError(reference, str(exc), exc) from exc
        try:
            cached = self.cache.get_or_create(source, relative, params)
        except Exception as exc:
            raise AssetError(reference, f"image transform failed: {exc}", exc) from exc
        return OutputArtifact.from_file(
            f"{TRANSFORMED_DIR}/{cached.name}", cached, TRANSFORMED_IMAGE, reference
        )

    def _source_relative(self, page: ContentPage, path: str) -> str | None:
        if not path.startswith("/"):
            return resolve_reference(path, page.directory)
        base = self.config.site.base_path
        if base and (path == base or path.startswith(f"{base}/")):
            path = path[len(base) :]
        return path.lstrip("/") or None

    def _find_source(self, relative: str) -> Path | None:
        for root in (self.config.content_dir, self.config.static_dir):
            candidate = root / relative
            if candidate.is_file():
                return candidate
        return None
