"""Content asset resolution for kiln templates.

Templates can list the files that sit beside a page (a gallery in a page
bundle, downloads next to a post) and turn asset names into URLs.

Key classes:
- ContentAsset: One non-document file under the content root.
- ContentAssetCollection: Ordered, filterable list of assets.
- ContentAssetResolver: Finds assets for a page or directory.

Key functions:
- normalize_asset_path: Collapse a relative asset path, rejecting escapes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import AssetError
from .utils import is_content_document, is_hidden

IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp", "svg", "avif")


class AssetNotFoundError(AssetError):
    """Raised when a requested asset file cannot be found.

    Attributes:
        asset_name: The name of the asset that was requested.
        searched_paths: List of paths that were searched.
    """

    def __init__(self, asset_name: str, searched_paths: list[Path]):
        self.asset_name = asset_name
        self.searched_paths = searched_paths
        paths_str = ", ".join(str(p) for p in searched_paths)
        super().__init__(asset_name, f"Asset not found. Searched: {paths_str}")


@dataclass(frozen=True)
class ContentAsset:
    """A file under the content root that is not a content document.

    Attributes:
        relative_path: Content-root relative path with ``/`` separators.
        url: Root-relative URL, including the site base path.
        absolute_path: Source file path.
    """

    relative_path: str
    url: str
    absolute_path: Path

    @property
    def filename(self) -> str:
        return PurePosixPath(self.relative_path).name

    @property
    def extension(self) -> str:
        return PurePosixPath(self.relative_path).suffix.lstrip(".").lower()

    @property
    def size(self) -> int:
        return self.absolute_path.stat().st_size

    @property
    def is_image(self) -> bool:
        return self.extension in IMAGE_EXTENSIONS

    def __str__(self) -> str:
        return self.url


class ContentAssetCollection(Sequence[ContentAsset]):
    """Ordered list of content assets with helpers for templates."""

    def __init__(self, assets: Iterable[ContentAsset] = ()):
        self._assets = list(assets)

    def __iter__(self) -> Iterator[ContentAsset]:
        return iter(self._assets)

    def __len__(self) -> int:
        return len(self._assets)

    def __getitem__(self, item):
        if isinstance(item, slice):
            return ContentAssetCollection(self._assets[item])
        return self._assets[item]

    def images(self) -> ContentAssetCollection:
        return ContentAssetCollection(a for a in self._assets if a.is_image)

    def with_extension(self, *extensions: str) -> ContentAssetCollection:
        wanted = {e.lower().lstrip(".") for e in extensions}
        return ContentAssetCollection(a for a in self._assets if a.extension in wanted)

    def sort_by_name(self, reverse: bool = False) -> ContentAssetCollection:
        return ContentAssetCollection(
            sorted(self._assets, key=lambda a: a.filename.lower(), reverse=reverse)
        )

    def first(self) -> ContentAsset | None:
        return self._assets[0] if self._assets else None

    def __repr__(self) -> str:  # pragma: no cover - for debugging
        return f"ContentAssetCollection({len(self._assets)} assets)"


class ContentAssetResolver:
    """Resolves content-colocated assets.

    Attributes:
        content_dir: Content root directory.
        url_generator: Function turning a root-relative path into a site URL.
    """

    def __init__(
        self,
        content_dir: Path,
        url_generator: Callable[[str], str] | None = None,
    ):
        self.content_dir = content_dir
        self._url_generator = url_generator or (lambda x: x)

    def for_directory(self, directory: str, recursive: bool = False) -> ContentAssetCollection:
        """List assets in a content-relative directory.

        Args:
            directory: Content-relative directory ('' for the root).
            recursive: Whether to include nested directories.

        Returns:
            Assets sorted by relative path.
        """
        directory = normalize_asset_path(directory)
        base = self.content_dir / directory if directory else self.content_dir
        if not base.is_dir():
            return ContentAssetCollection()
        candidates = base.rglob("*") if recursive else base.iterdir()
        assets = []
        for path in candidates:
            if not path.is_file() or is_content_document(path):
                continue
            rel = path.relative_to(self.content_dir)
            if is_hidden(rel):
                continue
            assets.append(self._asset(rel.as_posix()))
        return ContentAssetCollection(sorted(assets, key=lambda a: a.relative_path))

    def for_page(self, page, subdirectory: str = "", recursive: bool = False):
        """List assets beside a page, optionally inside a subdirectory."""
        return self.for_directory(normalize_asset_path(page.directory, subdirectory), recursive)

    def resolve(self, name: str, directory: str = "") -> ContentAsset:
        """Resolve an asset name relative to a content directory.

        Raises:
            AssetError: If the name escapes the content root.
            AssetNotFoundError: If no such file exists.
        """
        relative = normalize_asset_path(directory, name.strip("/"))
        path = self.content_dir / relative
        if not path.is_file():
            raise AssetNotFoundError(name, [path])
        return self._asset(relative)

    def _asset(self, relative: str) -> ContentAsset:
        return ContentAsset(
            relative_path=relative,
            url=self._url_generator(f"/{relative}"),
            absolute_path=self.content_dir / relative,
        )


def normalize_asset_path(*parts: str) -> str:
    """Join path parts and collapse ``.``/``..`` without leaving their root.

    Raises:
        AssetError: If the joined path climbs above its root.
    """
    joined = "/".join(p for p in parts if p)
    segments: list[str] = []
    for segment in joined.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not segments:
                raise AssetError(joined, "escapes its root directory")
            segments.pop()
        else:
            segments.append(segment)
    return "/".join(segments)
