"""Extension hook system for kiln.

Extensions attach site-level behaviour to three pipeline stages:

- before_build: before content is loaded.
- after_page_render: after every page has been rendered.
- after_build: after the complete artifact set is known.

Each hook receives a read-only BuildContext and may return extra
OutputArtifacts. Extensions cannot remove or change core artifacts.

Extensions are created by name from an ExtensionRegistry. Built-ins are
registered statically; a project may add its own from
``<project>/extensions/*.py`` modules that define an ``EXTENSIONS`` mapping
of name to factory.
"""

from __future__ import annotations

import importlib.util
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .artifacts import OutputArtifact
from .errors import ExtensionError

if TYPE_CHECKING:
    from .collections import SiteIndex
    from .config import BuildConfig, ExtensionConfig
    from .content import ContentPage

logger = logging.getLogger(__name__)

STAGES = ("before_build", "after_page_render", "after_build")


@dataclass(frozen=True)
class BuildContext:
    """Read-only view of the build handed to extension hooks.

    Attributes:
        config: Build configuration.
        pages: Loaded pages (empty before content is loaded).
        index: Site index (None before indexing).
        rendered: Output destination to rendered HTML, filled after rendering.
        destinations: Output destinations of the complete artifact set,
            filled for after_build.
    """

    config: BuildConfig
    pages: tuple[ContentPage, ...] = ()
    index: SiteIndex | None = None
    rendered: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    destinations: tuple[str, ...] = ()

    @property
    def site(self):
        return self.config.site


class Extension:
    """Base class for extensions.

    Subclasses override the hooks they need. Every hook returns a list of
    additional artifacts (empty by default).

    Attributes:
        name: Registered extension name.
        options: Option mapping from ``kiln.yaml``.
    """

    name = "extension"

    def __init__(self, options: Mapping[str, Any] | None = None):
        self.options = dict(options or {})

    def before_build(self, context: BuildContext) -> list[OutputArtifact]:
        return []

    def after_page_render(self, context: BuildContext) -> list[OutputArtifact]:
        return []

    def after_build(self, context: BuildContext) -> list[OutputArtifact]:
        return []

    def helpers(self) -> dict[str, Callable[..., Any]]:
        """Return callables exposed to templates through ``ext()``."""
        return {}


ExtensionFactory = Callable[[Mapping[str, Any] | None], Extension]


@dataclass(frozen=True)
class _Registration:
    factory: ExtensionFactory
    configurable: bool


class ExtensionRegistry:
    """Name to factory registry for extensions."""

    def __init__(self) -> None:
        self._entries: dict[str, _Registration] = {}

    def register(self, name: str, factory: ExtensionFactory, configurable: bool = True) -> None:
        """Register an extension factory.

        Args:
            name: Name used in ``kiln.yaml``.
            factory: Callable taking the option mapping (or None).
            configurable: Whether the extension accepts options.

        Raises:
            ExtensionError: If the name is already registered.
        """
        if name in self._entries:
            raise ExtensionError(name, "is already registered")
        self._entries[name] = _Registration(factory, configurable)

    def has(self, name: str) -> bool:
        return name in self._entries

    def names(self) -> list[str]:
        return sorted(self._entries)

    def create(self, name: str, options: Mapping[str, Any] | None = None) -> Extension:
        """Create an extension by name.

        Raises:
            ExtensionError: If the name is unknown, options are given to an
                extension that takes none, or the factory fails.
        """
        entry = self._entries.get(name)
        if entry is None:
            known = ", ".join(self.names()) or "none"
            raise ExtensionError(name, f"is not a known extension (available: {known})")
        if options and not entry.configurable:
            raise ExtensionError(name, "does not accept options")
        try:
            extension = entry.factory(options)
        except ExtensionError:
            raise
        except Exception as exc:
            raise ExtensionError(name, f"could not be created: {exc}", exc) from exc
        extension.name = name
        return extension

    def resolve(self, configs: Iterable[ExtensionConfig]) -> ExtensionHost:
        """Create every configured extension, in configuration order."""
        return ExtensionHost([self.create(c.name, c.options) for c in configs])


class ExtensionHost:
    """Runs extension hooks in registration order.

    Attributes:
        extensions: Created extensions.
    """

    def __init__(self, extensions: Iterable[Extension] = ()):
        self.extensions = list(extensions)

    def run(self, stage: str, context: BuildContext) -> list[OutputArtifact]:
        """Invoke ``stage`` on every extension and collect extra artifacts.

        Raises:
            ExtensionError: If an extension raises or returns something other
                than a list of OutputArtifacts.
        """
        if stage not in STAGES:
            raise ValueError(f"unknown extension stage '{stage}'")
        collected: list[OutputArtifact] = []
        for extension in self.extensions:
            try:
                result = getattr(extension, stage)(context)
            except ExtensionError:
                raise
            except Exception as exc:
                raise ExtensionError(extension.name, f"failed in {stage}: {exc}", exc) from exc
            result = list(result or [])
            for artifact in result:
                if not isinstance(artifact, OutputArtifact):
                    raise ExtensionError(
                        extension.name, f"{stage} returned {type(artifact).__name__}"
                    )
            if result:
                logger.debug("Extension %s added %d artifacts in %s", extension.name, len(result), stage)
            collected.extend(result)
        return collected

    def helper(self, extension: str, name: str, *args: Any, **kwargs: Any) -> Any:
        """Call a template helper of an extension.

        Raises:
            ExtensionError: If the extension or helper is unknown, or the
                helper raises.
        """
        for candidate in self.extensions:
            if candidate.name != extension:
                continue
            helpers = candidate.helpers()
            if name not in helpers:
                raise ExtensionError(extension, f"has no helper '{name}'")
            try:
                return helpers[name](*args, **kwargs)
            except Exception as exc:
                raise ExtensionError(extension, f"helper '{name}' failed: {exc}", exc) from exc
        raise ExtensionError(extension, "is not enabled")


def discover_project_extensions(directory: Path) -> dict[str, ExtensionFactory]:
    """Load extension factories from ``directory/*.py``.

    Modules whose name starts with ``_`` are skipped. Each module must define
    an ``EXTENSIONS`` mapping of extension name to factory.

    Raises:
        ExtensionError: If a module fails to import or has no valid mapping.
    """
    factories: dict[str, ExtensionFactory] = {}
    if not directory.is_dir():
        return factories
    for path in sorted(directory.glob("*.py")):
        if path.name.startswith("_"):
            continue
        module_name = f"kiln_project_extensions.{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ExtensionError(path.stem, f"cannot load {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise ExtensionError(path.stem, f"failed to import {path}: {exc}", exc) from exc
        mapping = getattr(module, "EXTENSIONS", None)
        if not isinstance(mapping, Mapping):
            raise ExtensionError(path.stem, f"{path} does not define an EXTENSIONS mapping")
        for name, factory in mapping.items():
            if not callable(factory):
                raise ExtensionError(str(name), f"factory in {path} is not callable")
            factories[str(name)] = factory
    return factories


def create_default_registry(project_root: Path | None = None) -> ExtensionRegistry:
    """Create a registry with the built-in and project extensions.

    Args:
        project_root: Project whose ``extensions/`` directory is scanned.

    Returns:
        Populated ExtensionRegistry.
    """
    from .feeds import LlmsTxtExtension, SitemapExtension

    registry = ExtensionRegistry()
    registry.register("sitemap", SitemapExtension)
    registry.register("llms-txt", LlmsTxtExtension)
    if project_root is not None:
        for name, factory in discover_project_extensions(project_root / "extensions").items():
            registry.register(name, factory)
    return registry
