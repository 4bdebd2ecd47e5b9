from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

from trainlab.__main__ import main
from trainlab.instrumentation import backup_path_for

TRAIN_SCRIPT = "import math\n\nprint(math.pi)\n"


def _seed_fast_policy(project: Path) -> None:
    policy_path = project / ".trainlab" / "policy.yaml"
    policy_path.parent.mkdir(parents=True, exist_ok=True)
    policy_path.write_text(
        yaml.safe_dump(
            {"supervision": {"poll_interval_seconds": 0.05, "grace_seconds": 0.2}},
            sort_keys=False,
        ),
        encoding="utf-8",
    )


def _write_experiment(tmp_path: Path, project: Path, code: str) -> Path:
    config_path = tmp_path / "experiment.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "project_path": str(project),
                "command": [sys.executable, "-c", code],
                "environment": {"policy": "use_current"},
            },
            sort_keys=False,
        ),
        encoding="utf-8",
    )
    return config_path


def test_no_subcommand_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 2
    assert "trainlab command line interface" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# detect-deps
# ---------------------------------------------------------------------------


def test_detect_deps_prints_manifest(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    (tmp_path / "requirements.txt").write_text("numpy\n", encoding="utf-8")

    assert main(["detect-deps", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "manifest: requirements_list" in out
    assert str(tmp_path / "requirements.txt") in out


def test_detect_deps_without_manifest(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["detect-deps", str(tmp_path)]) == 0
    assert "manifest: none" in capsys.readouterr().out


def test_detect_deps_missing_path(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["detect-deps", str(tmp_path / "missing")]) == 1
    assert "trainlab detect-deps: ERROR" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# instrument / revert
# ---------------------------------------------------------------------------


def test_instrument_dry_run_prints_diff_only(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    script = tmp_path / "train.py"
    script.write_text(TRAIN_SCRIPT, encoding="utf-8")

    assert main(["instrument", str(script), "--project-name", "demo", "--dry-run"]) == 0

    captured = capsys.readouterr()
    assert "import: insertion at line 1" in captured.out
    assert "+import wandb" in captured.out
    assert "partial; unresolved init" in captured.err
    assert script.read_text(encoding="utf-8") == TRAIN_SCRIPT
    assert not backup_path_for(script).exists()


def test_instrument_then_revert(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    script = tmp_path / "train.py"
    script.write_text(TRAIN_SCRIPT, encoding="utf-8")

    assert main(["instrument", str(script), "--project-name", "demo"]) == 0
    assert "import wandb" in script.read_text(encoding="utf-8")
    assert f"backup: {backup_path_for(script)}" in capsys.readouterr().out

    assert main(["revert", str(script)]) == 0
    assert script.read_text(encoding="utf-8") == TRAIN_SCRIPT
    assert main(["revert", str(script)]) == 1
    assert main(["revert", str(script), "--discard"]) == 1


@pytest.mark.parametrize(
    ("source", "expected"),
    [("x = 1\n", 1), ("def broken(:\n", 2)],
)
def test_instrument_failures_return_nonzero(tmp_path: Path, source: str, expected: int) -> None:
    script = tmp_path / "train.py"
    script.write_text(source, encoding="utf-8")

    assert main(["instrument", str(script), "--project-name", "demo"]) == expected
    assert script.read_text(encoding="utf-8") == source


# ---------------------------------------------------------------------------
# run / status / tail / diagnose
# ---------------------------------------------------------------------------


def test_run_then_inspect_latest_run(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project = tmp_path / "proj"
    project.mkdir()
    _seed_fast_policy(project)
    config_path = _write_experiment(tmp_path, project, "print('trained')")

    assert main(["run", "--config", str(config_path)]) == 0
    out = capsys.readouterr().out
    assert "trainlab run" in out
    assert "outcome: succeeded" in out

    assert main(["status", "--project", str(project)]) == 0
    assert "job_state: succeeded" in capsys.readouterr().out

    assert main(["tail", "--project", str(project), "-n", "1"]) == 0
    assert capsys.readouterr().out.strip() == "trained"

    assert main(["diagnose", "--project", str(project)]) == 1
    assert "failed or unknown" in capsys.readouterr().err


def test_failed_run_exits_nonzero_with_diagnosis(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    project = tmp_path / "proj"
    project.mkdir()
    _seed_fast_policy(project)
    code = "import sys\nprint(\"ModuleNotFoundError: No module named 'timm'\")\nsys.exit(1)\n"
    config_path = _write_experiment(tmp_path, project, code)

    assert main(["run", "--config", str(config_path)]) == 1

    out = capsys.readouterr().out
    assert "outcome: failed" in out
    assert "diagnosis: import_dependency_error" in out
    assert "1. install 'timm' into the job's environment" in out


def test_run_with_missing_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run", "--config", str(tmp_path / "missing.yaml")]) == 2
    assert "trainlab run: ERROR" in capsys.readouterr().err


def test_status_without_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["status", "--project", str(tmp_path)]) == 1
    assert "no runs recorded" in capsys.readouterr().err


def test_status_with_unknown_run_id(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["status", "--project", str(tmp_path), "--run-id", "nope"]) == 1
    assert "not a valid run id" in capsys.readouterr().err
