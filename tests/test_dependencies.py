from __future__ import annotations

from pathlib import Path

import pytest

from trainlab.constants import (
    MANIFEST_ENVIRONMENT_DEFINITION,
    MANIFEST_LEGACY_SETUP,
    MANIFEST_PROJECT_METADATA,
    MANIFEST_REQUIREMENTS,
)
from trainlab.dependencies import detect_manifest
from trainlab.models import PathNotFound


def _touch(root: Path, *names: str) -> None:
    for name in names:
        (root / name).write_text("", encoding="utf-8")


def test_requirements_list_wins_over_legacy_setup_script(tmp_path: Path) -> None:
    _touch(tmp_path, "setup.py", "requirements.txt")

    manifest = detect_manifest(tmp_path)

    assert manifest is not None
    assert manifest.kind == MANIFEST_REQUIREMENTS
    assert manifest.path == tmp_path / "requirements.txt"


@pytest.mark.parametrize(
    ("files", "expected"),
    [
        (("pyproject.toml", "setup.py", "environment.yml"), MANIFEST_PROJECT_METADATA),
        (("setup.py", "environment.yml"), MANIFEST_LEGACY_SETUP),
        (("environment.yml",), MANIFEST_ENVIRONMENT_DEFINITION),
        (("environment.yaml",), MANIFEST_ENVIRONMENT_DEFINITION),
    ],
)
def test_priority_order(tmp_path: Path, files: tuple[str, ...], expected: str) -> None:
    _touch(tmp_path, *files)

    manifest = detect_manifest(tmp_path)

    assert manifest is not None
    assert manifest.kind == expected


def test_no_manifest_is_a_valid_answer(tmp_path: Path) -> None:
    _touch(tmp_path, "train.py")

    assert detect_manifest(tmp_path) is None


def test_nested_manifests_are_ignored(tmp_path: Path) -> None:
    nested = tmp_path / "sub"
    nested.mkdir()
    _touch(nested, "requirements.txt")

    assert detect_manifest(tmp_path) is None


def test_directory_named_like_a_manifest_is_not_selected(tmp_path: Path) -> None:
    (tmp_path / "requirements.txt").mkdir()
    _touch(tmp_path, "setup.py")

    manifest = detect_manifest(tmp_path)

    assert manifest is not None
    assert manifest.kind == MANIFEST_LEGACY_SETUP


def test_missing_root_raises_path_not_found(tmp_path: Path) -> None:
    with pytest.raises(PathNotFound):
        detect_manifest(tmp_path / "missing")


def test_file_root_raises_path_not_found(tmp_path: Path) -> None:
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")

    with pytest.raises(PathNotFound):
        detect_manifest(target)
