"""Dependency manifest detection for a project root."""

from __future__ import annotations

from pathlib import Path

from trainlab.constants import MANIFEST_CANDIDATES
from trainlab.models import DependencyManifest, PathNotFound


def detect_manifest(project_root: Path) -> DependencyManifest | None:
    """Return the highest-priority manifest in *project_root*, or ``None``.

    Only the top level of the directory is inspected. ``None`` is a valid
    answer meaning the project has no managed dependencies.
    """
    root = Path(project_root)
    if not root.exists() or not root.is_dir():
        raise PathNotFound(f"project root {root} does not exist or is not a directory")
    for kind, filenames in MANIFEST_CANDIDATES:
        for filename in filenames:
            candidate = root / filename
            if candidate.is_file():
                return DependencyManifest(kind=kind, path=candidate)
    return None
