"""Site building and output reconciliation for kiln.

This module runs the build pipeline and reconciles the output root with the
result. A build happens in this order:

1. Load the previous build manifest (empty when missing or unreadable).
2. Run the pipeline: before_build hooks, load content, index, render every
   page and pager slice, after_page_render hooks, asset artifacts,
   after_build hooks. Nothing is written until the complete artifact set
   is known.
3. In clean mode, empty the output root.
4. Write every artifact whose bytes differ from what is on disk.
5. Outside clean mode, delete outputs recorded in the previous manifest
   that the new build no longer produces.
6. Persist the new manifest.

A failure before step 3 leaves the output root and the manifest untouched.

Key functions:
- build: Build a site and return every output path.
- SiteBuilder.run: Build a site and return a BuildReport.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from jinja2 import TemplateSyntaxError

from .artifacts import PAGE, ArtifactSet, OutputArtifact
from .assets import AssetPipeline
from .collections import PageCollection, Pager, SiteIndex
from .config import BuildConfig
from .content import ContentPage, ContentProcessor
from .errors import BuildError, ContentError, RenderError
from .extensions import BuildContext, ExtensionRegistry, create_default_registry
from .extractors import normalize_term
from .manifest import BuildManifest, load_manifest, save_manifest
from .protocols import ImageTransformer
from .templates import TemplateEngine
from .utils import ensure_clean_dir, remove_empty_parents

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


@dataclass
class BuildReport:
    """Result of a site build.

    Attributes:
        outputs: Every output path of the build, sorted.
        written: Destinations written because they were new or changed.
        unchanged: Destinations skipped because their bytes were identical.
        pruned: Destinations deleted because the build no longer produces them.
        pages: Number of pages rendered (pager slices count separately).
        failures: Page errors skipped under ``continue_on_error``.
        elapsed: Wall-clock seconds.
        manifest_status: How the previous manifest was read.
    """

    outputs: list[Path] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    pages: int = 0
    failures: list[BuildError] = field(default_factory=list)
    elapsed: float = 0.0
    manifest_status: str = "missing"


@dataclass(frozen=True)
class _RenderJob:
    page: ContentPage
    destination: str
    pager: Pager | None = None


@dataclass
class _RenderResult:
    job: _RenderJob
    html: str | None = None
    images: list[OutputArtifact] = field(default_factory=list)
    error: BuildError | None = None


class SiteBuilder:
    """Builds a site and reconciles the output root.

    Attributes:
        config: Build configuration.
        transformer: Image transformer (Pillow by default).
        registry: Extension registry (built-ins plus project extensions by default).
        progress_callback: Called with (done, total, destination) per rendered page.
    """

    def __init__(
        self,
        config: BuildConfig,
        transformer: ImageTransformer | None = None,
        registry: ExtensionRegistry | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        self.config = config
        self.transformer = transformer
        self.registry = registry
        self.progress_callback = progress_callback

    def run(self, clean: bool = False) -> BuildReport:
        """Build the site.

        Args:
            clean: Empty the output root before writing instead of pruning.

        Returns:
            BuildReport describing the build.

        Raises:
            BuildError: If any stage fails. The manifest is not updated.
        """
        config = self.config
        started = time.perf_counter()
        report = BuildReport()
        _check_output_dir(config)

        previous = load_manifest(config.manifest_path)
        report.manifest_status = previous.status

        registry = self.registry or create_default_registry(config.project_root)
        host = registry.resolve(config.extensions)
        artifacts = ArtifactSet()
        artifacts.extend(host.run("before_build", BuildContext(config)))

        pages = ContentProcessor.from_config(config).load(config.include_drafts)
        index = SiteIndex(pages, config.taxonomies)
        pipeline = AssetPipeline(config, self.transformer)
        engine = TemplateEngine(
            config,
            index,
            extensions=host,
            body_filter=lambda page, html: pipeline.rewrite_body_html(page, html, index),
        )

        jobs = self._render_jobs(index)
        rendered: dict[str, str] = {}
        failed: list[str] = []
        with ThreadPoolExecutor(max_workers=config.workers) as executor:
            results = executor.map(lambda job: self._render(engine, pipeline, job), jobs)
            for done, result in enumerate(results, start=1):
                if result.error is not None:
                    report.failures.append(result.error)
                    failed.append(result.job.destination)
                else:
                    assert result.html is not None
                    rendered[result.job.destination] = result.html
                    artifacts.add(
                        OutputArtifact.from_text(
                            result.job.destination,
                            result.html,
                            PAGE,
                            result.job.page.relative_path,
                        )
                    )
                    artifacts.extend(result.images)
                if self.progress_callback is not None:
                    self.progress_callback(done, len(jobs), result.job.destination)
            report.pages = len(rendered)

            context = BuildContext(
                config, tuple(index.all()), index, MappingProxyType(dict(rendered))
            )
            artifacts.extend(host.run("after_page_render", context))
            artifacts.extend(pipeline.static_artifacts(executor.map))
            artifacts.extend(pipeline.content_artifacts(index.all(), executor.map))

        context = BuildContext(
            config,
            tuple(index.all()),
            index,
            MappingProxyType(dict(rendered)),
            tuple(sorted(artifacts.destinations())),
        )
        artifacts.extend(host.run("after_build", context))

        kept = {
            dest: previous.manifest.outputs[dest]
            for dest in failed
            if dest in previous.manifest.outputs
        }
        self._commit(artifacts, previous.manifest, kept, clean, report)
        report.elapsed = time.perf_counter() - started
        logger.info(
            "Built %d pages: %d written, %d unchanged, %d pruned in %.2fs",
            report.pages,
            len(report.written),
            len(report.unchanged),
            len(report.pruned),
            report.elapsed,
        )
        return report

    def _render_jobs(self, index: SiteIndex) -> list[_RenderJob]:
        """One job per page, plus one per extra pager slice of listing pages."""
        jobs: list[_RenderJob] = []
        for page in index.all():
            listing = self._listing(page, index)
            if listing is None:
                jobs.append(_RenderJob(page, page.output_path))
                continue
            collection, size = listing
            for pager in index.pagers(collection, size, page.url_path):
                destination = f"{pager.url.strip('/')}/index.html".lstrip("/")
                jobs.append(_RenderJob(page, destination, pager))
        return jobs

    def _listing(self, page: ContentPage, index: SiteIndex) -> tuple[PageCollection, int] | None:
        """Resolve the ``paginate`` metadata of a listing page.

        ``paginate`` is ``true`` (the page's section), a section name, or a
        mapping with ``section``, ``type`` or ``taxonomy`` plus ``term``, and
        an optional ``size``. The listing page itself is left out.

        Raises:
            ContentError: If the value has an unsupported shape.
        """
        value = page.meta.get("paginate")
        if value is None or value is False:
            return None
        size = self.config.page_size
        if value is True:
            collection = index.section(page.section)
        elif isinstance(value, str):
            collection = index.section(value.strip())
        elif isinstance(value, Mapping):
            size = _page_size(page, value.get("size", size))
            if "section" in value:
                collection = index.section(str(value["section"]))
            elif "type" in value:
                collection = index.type(str(value["type"]))
            elif "taxonomy" in value and "term" in value:
                collection = index.taxonomy(str(value["taxonomy"])).term(
                    normalize_term(value["term"])
                )
            else:
                raise ContentError(
                    page.source_path, "paginate needs a section, type or taxonomy and term"
                )
        else:
            raise ContentError(page.source_path, f"invalid paginate value '{value}'")
        return collection.filter(lambda p: p.relative_path != page.relative_path), size

    def _render(
        self, engine: TemplateEngine, pipeline: AssetPipeline, job: _RenderJob
    ) -> _RenderResult:
        try:
            html = _render_page(engine, job)
        except RenderError as exc:
            if not self.config.continue_on_error:
                raise
            logger.error("Skipping %s: %s", job.destination, exc)
            return _RenderResult(job, error=exc)
        html, images = pipeline.transform_images(job.page, html)
        return _RenderResult(job, html, images)

    def _commit(
        self,
        artifacts: ArtifactSet,
        previous: BuildManifest,
        kept: dict[str, str],
        clean: bool,
        report: BuildReport,
    ) -> None:
        config = self.config
        output_dir = config.output_dir
        if clean:
            ensure_clean_dir(output_dir)
        else:
            output_dir.mkdir(parents=True, exist_ok=True)

        for artifact in artifacts.sorted():
            target = output_dir / artifact.destination
            if not clean and artifact.matches_file(target):
                report.unchanged.append(artifact.destination)
                continue
            artifact.write_to(output_dir)
            logger.debug("Wrote %s", artifact.destination)
            report.written.append(artifact.destination)

        if not clean:
            for destination in previous.orphans(artifacts.destinations() | set(kept)):
                target = output_dir / destination
                if not target.is_file():
                    logger.debug("Stale output %s is already gone", destination)
                    continue
                target.unlink()
                remove_empty_parents(target, output_dir)
                logger.debug("Pruned %s", destination)
                report.pruned.append(destination)

        outputs = {a.destination: a.fingerprint for a in artifacts.sorted()}
        if not clean:
            outputs.update(kept)
        save_manifest(config.manifest_path, BuildManifest(outputs))
        report.outputs = [output_dir / a.destination for a in artifacts.sorted()]


def build(
    config: BuildConfig,
    clean: bool = False,
    progress_callback: ProgressCallback | None = None,
) -> list[Path]:
    """Build the site described by ``config``.

    Args:
        config: Build configuration.
        clean: Empty the output root instead of pruning stale files.
        progress_callback: Optional callable receiving (done, total, destination).

    Returns:
        Every output path of the build, sorted.

    Raises:
        BuildError: If the build fails.
    """
    return SiteBuilder(config, progress_callback=progress_callback).run(clean).outputs


def _render_page(engine: TemplateEngine, job: _RenderJob) -> str:
    """Render one job, turning template failures into RenderError."""
    try:
        return engine.render_page(job.page, job.pager)
    except BuildError:
        raise
    except TemplateSyntaxError as exc:
        raise RenderError(
            job.page.source_path,
            f"Template syntax error on line {exc.lineno}: {exc.message}",
            exc,
        ) from exc
    except Exception as exc:
        raise RenderError(job.page.source_path, _format_error_message(exc), exc) from exc


def _format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    # Handle common Jinja2/template errors
    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TypeError":
        return f"Type error: {error_msg}"
    if error_type == "AttributeError":
        return f"Attribute error: {error_msg}"

    return f"{error_type}: {error_msg}"


def _page_size(page: ContentPage, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ContentError(page.source_path, f"paginate size must be a positive integer, got '{value}'")
    return value


def _check_output_dir(config: BuildConfig) -> None:
    """Refuse output roots that would overwrite the project's sources."""
    output_dir = config.output_dir.resolve()
    protected = (config.project_root, config.content_dir, config.template_dir, config.static_dir)
    for path in protected:
        path = path.resolve()
        if output_dir == path or output_dir in path.parents:
            raise BuildError(output_dir, f"output directory must not contain {path}")
