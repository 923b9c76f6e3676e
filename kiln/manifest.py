"""Build manifest persistence for kiln.

The manifest records which files the previous successful build wrote under
the output root, so the next build can delete the ones it no longer
produces. It lives in the cache directory, not in the deployable output.

Format::

    {"version": 1, "outputs": {"index.html": "<sha256>", ...}}

A missing manifest is normal on a first build. An unreadable or invalid one
is logged and treated as empty; it only affects pruning.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import OutputArtifact, is_safe_destination

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1

LOADED = "loaded"
MISSING = "missing"
CORRUPT = "corrupt"


@dataclass(frozen=True)
class BuildManifest:
    """Destination paths and fingerprints of a build.

    Attributes:
        outputs: Mapping of output-relative path to SHA-256 fingerprint.
    """

    outputs: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_artifacts(cls, artifacts: Iterable[OutputArtifact]) -> BuildManifest:
        return cls({a.destination: a.fingerprint for a in artifacts})

    def paths(self) -> set[str]:
        return set(self.outputs)

    def orphans(self, current: Iterable[str]) -> list[str]:
        """Return recorded paths absent from ``current``, sorted."""
        keep = set(current)
        return sorted(path for path in self.outputs if path not in keep)

    def to_json(self) -> str:
        payload = {"version": MANIFEST_VERSION, "outputs": dict(sorted(self.outputs.items()))}
        return json.dumps(payload, indent=2) + "\n"


@dataclass(frozen=True)
class ManifestLoad:
    """Result of reading a manifest file.

    Attributes:
        manifest: The manifest to diff against (empty unless loaded).
        status: ``loaded``, ``missing`` or ``corrupt``.
        detail: Why a corrupt manifest was rejected.
    """

    manifest: BuildManifest
    status: str
    detail: str | None = None


def load_manifest(path: Path) -> ManifestLoad:
    """Read the manifest at ``path``.

    Never raises for missing or invalid files.
    """
    if not path.exists():
        return ManifestLoad(BuildManifest(), MISSING)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        outputs = _validate(payload)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
        logger.warning("Ignoring unreadable build manifest %s: %s", path, exc)
        return ManifestLoad(BuildManifest(), CORRUPT, str(exc))
    return ManifestLoad(BuildManifest(outputs), LOADED)


def _validate(payload: object) -> dict[str, str]:
    if not isinstance(payload, dict):
        raise ValueError("manifest must be a JSON object")
    if payload.get("version") != MANIFEST_VERSION:
        raise ValueError(f"unsupported manifest version {payload.get('version')!r}")
    outputs = payload.get("outputs")
    if not isinstance(outputs, dict):
        raise ValueError("manifest 'outputs' must be an object")
    for key, value in outputs.items():
        if not isinstance(value, str) or not is_safe_destination(key):
            raise ValueError(f"invalid manifest entry {key!r}")
    return dict(outputs)


def save_manifest(path: Path, manifest: BuildManifest) -> None:
    """Atomically replace the manifest at ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".manifest-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(manifest.to_json())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
