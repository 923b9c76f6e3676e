"""Protocol definitions for kiln.

The build pipeline consumes markup rendering and image transformation as
services. These protocols describe the seams so that tests
and projects can substitute their own implementations.
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .asset_processors import TransformParams
    from .renderers import RenderedMarkup


@runtime_checkable
class MarkupRenderer(Protocol):
    """Protocol for turning a document body into an HTML fragment."""

    @abstractmethod
    def can_render(self, path: Path) -> bool:
        """Check if this renderer can handle the given file.

        Args:
            path: Path to the source file.

        Returns:
            True if this renderer can process the file.
        """
        ...

    @abstractmethod
    def render(self, body: str) -> RenderedMarkup:
        """Render a document body to HTML.

        Args:
            body: Document body without its metadata block.

        Returns:
            The HTML fragment and the headings collected for a TOC.
        """
        ...

    @property
    @abstractmethod
    def source_type(self) -> str:
        """Return the source type identifier (e.g. 'markup')."""
        ...


@runtime_checkable
class ImageTransformer(Protocol):
    """Protocol for the image transformation service.

    Implementations must be safe to call from several threads at once; the
    transform cache only serializes calls that share a cache key.
    """

    @abstractmethod
    def transform(self, source: Path, params: TransformParams) -> bytes:
        """Transform a source image.

        Args:
            source: Path to the source image.
            params: Validated transform parameters.

        Returns:
            Encoded bytes of the transformed image.
        """
        ...
