from __future__ import annotations

from pathlib import Path

import pytest

from trainlab.constants import (
    INSTRUMENTATION_INTENTS,
    INTENT_EVAL_LOG,
    INTENT_FINISH,
    INTENT_IMPORT,
    INTENT_INIT,
    INTENT_TRAIN_LOG,
    MODE_INSERTION,
    MODE_SHORTCUT,
    PRIMARY_RANK_GUARD,
    RANK_GUARDED_INTENTS,
)
from trainlab.instrumentation import (
    apply_plan,
    backup_path_for,
    build_plan,
    decode_source,
    discard_backup,
    has_existing_telemetry,
    instrument_file,
    revert,
    revert_file,
)
from trainlab.models import InstrumentationError, NoAnchorsFound, UnparsableSource

PLAIN_LOOP = '''import argparse

import torch


def evaluate(model, loader):
    model.eval()
    total = 0.0
    with torch.no_grad():
        for batch in loader:
            total += model(batch).item()
    val_loss = total / len(loader)
    return val_loss


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--lr", type=float, default=0.1)
    args = parser.parse_args()
    model = torch.nn.Linear(4, 1)
    optimizer = torch.optim.SGD(model.parameters(), lr=args.lr)
    for epoch in range(3):
        for batch in range(10):
            loss = model(torch.randn(4)).sum()
            optimizer.zero_grad()
            loss.backward()
            optimizer.step()
        evaluate(model, [torch.randn(4)])


if __name__ == "__main__":
    main()
'''

DISTRIBUTED_LOOP = '''import os

import torch
import torch.distributed as dist


def main():
    dist.init_process_group("nccl")
    config = load_config()
    optimizer = torch.optim.AdamW([])
    for step in range(10):
        loss = torch.tensor(1.0)
        loss.backward()
        optimizer.step()


if __name__ == "__main__":
    main()
'''

HF_TRAINER = '''from transformers import Trainer, TrainingArguments
import torch

args = TrainingArguments(output_dir="out")
trainer = Trainer(model=None, args=args)
trainer.train()

opt = torch.optim.SGD([torch.zeros(1, requires_grad=True)], lr=0.1)
for step in range(3):
    loss = torch.ones(1, requires_grad=True).sum()
    loss.backward()
    opt.step()
'''

IMPORT_ONLY = '''import math

# optimizer.step() is called by the launcher
MESSAGE = "args = parser.parse_args()"

print(math.pi)
'''


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def test_plain_loop_resolves_every_intent() -> None:
    plan = build_plan(PLAIN_LOOP, "demo")

    assert [entry.intent for entry in plan.entries] == list(INSTRUMENTATION_INTENTS)
    assert all(entry.mode == MODE_INSERTION for entry in plan.entries)
    assert plan.is_partial is False
    assert plan.distributed is False
    assert plan.entry(INTENT_INIT).anchor_line == 19
    assert plan.entry(INTENT_TRAIN_LOG).anchor_line == 27


def test_apply_plan_inserts_calls_at_their_anchors() -> None:
    plan = build_plan(PLAIN_LOOP, "demo")

    patched = apply_plan(PLAIN_LOOP, plan).patched_text

    assert "import torch\nimport wandb\n" in patched
    assert (
        "    args = parser.parse_args()\n"
        "    wandb.init(project='demo', config=vars(args))\n"
    ) in patched
    assert (
        "            optimizer.step()\n"
        '            wandb.log({"train/loss": float(loss), '
        '"train/lr": optimizer.param_groups[0]["lr"]})\n'
    ) in patched
    assert (
        "    val_loss = total / len(loader)\n"
        '    wandb.log({"eval/val_loss": val_loss})\n'
    ) in patched
    assert "        evaluate(model, [torch.randn(4)])\n    wandb.finish()\n" in patched


def test_apply_then_revert_returns_the_original_text() -> None:
    plan = build_plan(PLAIN_LOOP, "demo")

    patch = apply_plan(PLAIN_LOOP, plan)

    assert patch.patched_text != PLAIN_LOOP
    assert revert(patch) == PLAIN_LOOP
    assert len(patch.edits) == len(INSTRUMENTATION_INTENTS)


def test_distributed_script_guards_every_inserted_call() -> None:
    plan = build_plan(DISTRIBUTED_LOOP, "demo")

    assert plan.distributed is True
    assert plan.unresolved_intents == (INTENT_EVAL_LOG,)
    guarded = [entry for entry in plan.edits if entry.intent in RANK_GUARDED_INTENTS]
    assert {entry.intent for entry in guarded} == {INTENT_INIT, INTENT_TRAIN_LOG, INTENT_FINISH}
    for entry in guarded:
        assert entry.text.lstrip().startswith(PRIMARY_RANK_GUARD)
    assert plan.entry(INTENT_IMPORT).text == "import wandb\n"

    patched = apply_plan(DISTRIBUTED_LOOP, plan).patched_text
    assert (
        "        optimizer.step()\n"
        f"        {PRIMARY_RANK_GUARD}\n"
        "            wandb.log("
    ) in patched
    assert "config=config if isinstance(config, dict) else vars(config)" in patched


def test_distributed_script_without_os_import_gets_one() -> None:
    source = DISTRIBUTED_LOOP.replace("import os\n\n", "", 1)

    plan = build_plan(source, "demo")

    assert plan.entry(INTENT_IMPORT).text == "import os\nimport wandb\n"


def test_framework_managed_loop_gets_configuration_only_even_beside_a_manual_loop() -> None:
    plan = build_plan(HF_TRAINER, "demo")

    assert plan.framework == "transformers"
    assert "report_to" in plan.advice
    assert [entry.intent for entry in plan.edits] == [INTENT_IMPORT]
    assert plan.entry(INTENT_TRAIN_LOG).mode == MODE_SHORTCUT
    assert plan.is_partial is False

    patched = apply_plan(HF_TRAINER, plan).patched_text
    assert "os.environ.setdefault(\"WANDB_PROJECT\", 'demo')" in patched
    assert "wandb.log" not in patched
    assert "    loss.backward()\n    opt.step()\n" in patched


def test_comments_and_strings_are_not_anchors() -> None:
    plan = build_plan(IMPORT_ONLY, "demo")

    assert len(plan.edits) == 1
    assert plan.edits[0].intent == INTENT_IMPORT
    assert plan.unresolved_intents == (INTENT_INIT, INTENT_TRAIN_LOG, INTENT_EVAL_LOG, INTENT_FINISH)
    assert plan.is_partial is True


def test_line_endings_are_preserved() -> None:
    source = "import torch\r\nx = 1\r\n"

    patched = apply_plan(source, build_plan(source, "demo")).patched_text

    assert patched == "import torch\r\nimport wandb\r\nx = 1\r\n"


def test_finish_anchor_at_end_of_file_without_trailing_newline() -> None:
    source = 'import torch\n\nif __name__ == "__main__":\n    print("hi")'

    patched = apply_plan(source, build_plan(source, "demo")).patched_text

    assert patched.endswith('    print("hi")\n    wandb.finish()\n')


def test_plan_rejects_a_different_snapshot() -> None:
    plan = build_plan(PLAIN_LOOP, "demo")

    with pytest.raises(InstrumentationError, match="different snapshot"):
        apply_plan(PLAIN_LOOP + "\n# edited\n", plan)


@pytest.mark.parametrize(
    "source",
    ["def broken(:\n    pass\n", "import os\x00\n"],
)
def test_unparsable_source_raises(source: str) -> None:
    with pytest.raises(UnparsableSource):
        build_plan(source, "demo")


def test_binary_bytes_are_not_source_text() -> None:
    with pytest.raises(UnparsableSource):
        decode_source(b"\xff\xfe\x00\x81garbage")


@pytest.mark.parametrize(
    ("source", "expected"),
    [
        ("import wandb\n", True),
        ("from wandb.integration.keras import WandbMetricsLogger\n", True),
        ("import os  # wandb goes here later\n", False),
        ("NAME = 'import wandb'\n", False),
        ("import os\nos.environ.setdefault(\"WANDB_PROJECT\", 'demo')\n", True),
        ("import os\nos.environ[\"WANDB_PROJECT\"] = 'demo'\n", True),
        ("import os\nos.environ.setdefault(\"HF_HOME\", '/tmp')\n", False),
    ],
)
def test_has_existing_telemetry(source: str, expected: bool) -> None:
    assert has_existing_telemetry(source) is expected


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


def test_instrument_file_keeps_a_byte_identical_backup(tmp_path: Path) -> None:
    path = _write(tmp_path / "train.py", PLAIN_LOOP)
    original = path.read_bytes()

    result = instrument_file(path, "demo")

    assert result.written is True
    assert result.backup_path == backup_path_for(path)
    assert result.backup_path.read_bytes() == original
    assert path.read_text(encoding="utf-8") == result.patch.patched_text

    assert revert_file(path) is True
    assert path.read_bytes() == original
    assert not backup_path_for(path).exists()
    assert revert_file(path) is False


def test_instrumenting_twice_never_overwrites_the_backup(tmp_path: Path) -> None:
    path = _write(tmp_path / "train.py", HF_TRAINER)
    original = path.read_bytes()
    instrument_file(path, "demo")
    instrumented = path.read_bytes()

    with pytest.raises(InstrumentationError, match="already instrumented"):
        instrument_file(path, "demo")

    assert backup_path_for(path).read_bytes() == original
    assert path.read_bytes() == instrumented
    assert instrumented.count(b"WANDB_PROJECT") == 1

    assert revert_file(path) is True
    assert path.read_bytes() == original


def test_dry_run_leaves_the_file_alone(tmp_path: Path) -> None:
    path = _write(tmp_path / "train.py", PLAIN_LOOP)

    result = instrument_file(path, "demo", dry_run=True)

    assert result.written is False
    assert result.backup_path is None
    assert result.patch is not None
    assert path.read_text(encoding="utf-8") == PLAIN_LOOP
    assert not backup_path_for(path).exists()


def test_discard_backup_keeps_the_instrumented_file(tmp_path: Path) -> None:
    path = _write(tmp_path / "train.py", PLAIN_LOOP)
    instrument_file(path, "demo")

    assert discard_backup(path) is True
    assert "import wandb" in path.read_text(encoding="utf-8")
    assert discard_backup(path) is False


def test_file_with_no_anchors_raises_with_plan(tmp_path: Path) -> None:
    path = _write(tmp_path / "notes.py", "x = 1\n")

    with pytest.raises(NoAnchorsFound) as excinfo:
        instrument_file(path, "demo")

    assert excinfo.value.plan is not None
    assert excinfo.value.plan.is_empty
    assert path.read_text(encoding="utf-8") == "x = 1\n"
    assert not backup_path_for(path).exists()


def test_coding_cookie_is_honoured(tmp_path: Path) -> None:
    text = "# -*- coding: latin-1 -*-\nimport torch\nNAME = 'caf\xe9'\n"
    path = tmp_path / "train.py"
    path.write_bytes(text.encode("latin-1"))

    instrument_file(path, "demo")

    written = path.read_bytes().decode("latin-1")
    assert "import torch\nimport wandb\n" in written
    assert "caf\xe9" in written


def test_missing_file_raises_instrumentation_error(tmp_path: Path) -> None:
    with pytest.raises(InstrumentationError, match="could not read"):
        instrument_file(tmp_path / "missing.py", "demo")
