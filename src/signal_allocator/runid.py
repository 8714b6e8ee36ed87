"""Deterministic run identifiers for CLI output directories."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Sequence

import numpy as np

CHUNK_SIZE = 1 << 16


def _default_serializer(value: Any) -> Any:
    """Convert numpy scalars/arrays and paths into JSON-native values."""
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


def _normalize_manifest(manifest: Mapping[str, Any]) -> Mapping[str, Any]:
    data: MutableMapping[str, Any] = dict(manifest)
    data.pop("run_id", None)
    return data


def _normalize_files(files: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    normalized = [
        {
            "name": str(entry.get("name")),
            "sha256": str(entry.get("sha256")),
            "size": int(entry.get("size", 0)),
        }
        for entry in files
    ]
    normalized.sort(key=lambda item: item["name"])
    return normalized


def file_digest(path: Path) -> Dict[str, Any]:
    """``{name, sha256, size}`` entry for one artifact."""

    path = Path(path)
    sha = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            sha.update(chunk)
    return {"name": path.name, "sha256": sha.hexdigest(), "size": path.stat().st_size}


def digest_files(paths: Iterable[Path]) -> List[Dict[str, Any]]:
    return [file_digest(p) for p in paths if Path(p).is_file()]


def compute_run_id(manifest: Mapping[str, Any], files: Sequence[Mapping[str, Any]]) -> str:
    """Compute a stable hex digest for a run.

    Parameters
    ----------
    manifest:
        Resolved run configuration (the ``run_id`` key, if present, is ignored).
    files:
        Artifacts produced by the run, each with ``name``, ``sha256`` and ``size``.
    """

    payload = {
        "manifest": _normalize_manifest(manifest),
        "files": _normalize_files(files),
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_default_serializer)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


__all__ = ["compute_run_id", "digest_files", "file_digest"]
