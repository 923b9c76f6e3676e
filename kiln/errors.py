"""Error types raised by the kiln build pipeline.

Every fatal failure reaches the caller of ``build()`` as a ``BuildError``.
Subclasses say which stage failed and what the error is attributed to:

- ContentError: malformed metadata, unknown content types, duplicate outputs.
- RenderError: template or markup failures, attributed to the page.
- AssetError: missing assets, unsafe paths, image transform failures.
- ExtensionError: anything raised by an extension, attributed to its name.

ConfigError is raised while lowering ``kiln.yaml`` and happens before a
build starts.
"""

from __future__ import annotations

from pathlib import Path


class BuildError(Exception):
    """Error during site build with source context.

    Attributes:
        source_path: Path, asset reference or extension name the error is
            attributed to.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path | str,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


class ContentError(BuildError):
    """A content document could not be turned into a page."""


class RenderError(BuildError):
    """A page failed to render through its template or markup."""


class AssetError(BuildError):
    """A referenced asset is missing, unsafe or could not be transformed."""


class ExtensionError(BuildError):
    """An extension failed while handling a pipeline stage.

    Attributes:
        extension: Name of the failing extension.
    """

    def __init__(
        self,
        extension: str,
        message: str,
        original_error: Exception | None = None,
    ):
        self.extension = extension
        super().__init__(f"extension '{extension}'", message, original_error)


class ConfigError(ValueError):
    """Raised when the project configuration is invalid."""
