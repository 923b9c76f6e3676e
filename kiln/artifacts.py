"""Output artifacts for kiln.

An OutputArtifact is one file the build wants under the output root. The
Reconciler collects every artifact of a build into an ArtifactSet before
anything is written, which is where duplicate destinations are caught.
"""

from __future__ import annotations

import hashlib
import shutil
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from .errors import ContentError

PAGE = "page"
STATIC = "static"
CONTENT_ASSET = "content-asset"
TRANSFORMED_IMAGE = "transformed-image"
EXTENSION = "extension"

_CHUNK_SIZE = 1024 * 64


def fingerprint_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Path) -> str:
    """Return the SHA-256 hex digest of a file's content."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def is_safe_destination(destination: str) -> bool:
    """Check that a destination stays inside the output root."""
    if not destination or destination.startswith("/") or "\\" in destination:
        return False
    return all(part not in ("", ".", "..") for part in destination.split("/"))


@dataclass(frozen=True)
class OutputArtifact:
    """One file of the build output.

    Exactly one of ``data`` and ``source_file`` is set.

    Attributes:
        destination: Path relative to the output root, ``/`` separated.
        fingerprint: SHA-256 hex digest of the artifact's bytes.
        kind: page, static, content-asset, transformed-image or extension.
        origin: What produced the artifact, used in error messages.
        data: Rendered bytes.
        source_file: File whose bytes are copied.
    """

    destination: str
    fingerprint: str
    kind: str
    origin: str
    data: bytes | None = None
    source_file: Path | None = None

    @classmethod
    def from_bytes(cls, destination: str, data: bytes, kind: str, origin: str) -> OutputArtifact:
        return cls(destination, fingerprint_bytes(data), kind, origin, data=data)

    @classmethod
    def from_text(cls, destination: str, text: str, kind: str, origin: str) -> OutputArtifact:
        return cls.from_bytes(destination, text.encode("utf-8"), kind, origin)

    @classmethod
    def from_file(cls, destination: str, source: Path, kind: str, origin: str) -> OutputArtifact:
        return cls(destination, fingerprint_file(source), kind, origin, source_file=source)

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        assert self.source_file is not None
        return self.source_file.read_bytes()

    def write_to(self, output_dir: Path) -> Path:
        """Write the artifact under ``output_dir`` and return the target path."""
        target = output_dir / self.destination
        target.parent.mkdir(parents=True, exist_ok=True)
        if self.data is not None:
            target.write_bytes(self.data)
        else:
            assert self.source_file is not None
            shutil.copyfile(self.source_file, target)
        return target

    def matches_file(self, path: Path) -> bool:
        """Check whether ``path`` already holds exactly this artifact's bytes."""
        if not path.is_file():
            return False
        if self.data is not None and path.stat().st_size != len(self.data):
            return False
        return fingerprint_file(path) == self.fingerprint


class ArtifactSet:
    """The complete, destination-unique artifact set of one build."""

    def __init__(self, artifacts: Iterable[OutputArtifact] = ()):
        self._by_destination: dict[str, OutputArtifact] = {}
        self.extend(artifacts)

    def add(self, artifact: OutputArtifact) -> None:
        """Add an artifact.

        Identical transformed images are collapsed into one entry because many
        pages may reference the same transform.

        Raises:
            ContentError: If the destination is unsafe or already taken.
        """
        if not is_safe_destination(artifact.destination):
            raise ContentError(
                artifact.origin, f"output destination '{artifact.destination}' is not allowed"
            )
        existing = self._by_destination.get(artifact.destination)
        if existing is not None:
            if (
                existing.kind == TRANSFORMED_IMAGE
                and artifact.kind == TRANSFORMED_IMAGE
                and existing.fingerprint == artifact.fingerprint
            ):
                return
            raise ContentError(
                artifact.origin,
                f"duplicate output destination '{artifact.destination}' "
                f"(also produced by {existing.origin})",
            )
        self._by_destination[artifact.destination] = artifact

    def extend(self, artifacts: Iterable[OutputArtifact]) -> None:
        for artifact in artifacts:
            self.add(artifact)

    def get(self, destination: str) -> OutputArtifact | None:
        return self._by_destination.get(destination)

    def destinations(self) -> set[str]:
        return set(self._by_destination)

    def sorted(self) -> list[OutputArtifact]:
        """Return the artifacts ordered by destination."""
        return [self._by_destination[d] for d in sorted(self._by_destination)]

    def __contains__(self, destination: object) -> bool:
        return destination in self._by_destination

    def __iter__(self) -> Iterator[OutputArtifact]:
        return iter(self.sorted())

    def __len__(self) -> int:
        return len(self._by_destination)
