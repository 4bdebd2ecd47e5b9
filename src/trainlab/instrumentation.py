"""Trainlab instrumentation — telemetry insertion points in training scripts.

Anchors are found by walking the parsed syntax tree, never by searching the
raw text, so comments and string literals that mention ``optimizer.step()``
or ``parse_args`` are not mistaken for code. Every edit is computed against a
single snapshot of the file and applied in one pass; a plan whose snapshot
digest does not match the text it is applied to is rejected.

When a recognised high-level framework drives the loop (Hugging Face
``Trainer``, Lightning ``Trainer``, Keras ``fit``), the plan is
configuration-only: the loop is framework-managed and is left alone.
"""

from __future__ import annotations

import ast
import io
import re
import tokenize
from dataclasses import dataclass
from pathlib import Path

from trainlab.constants import (
    BACKUP_SUFFIX,
    INSTRUMENTATION_INTENTS,
    INTENT_EVAL_LOG,
    INTENT_FINISH,
    INTENT_IMPORT,
    INTENT_INIT,
    INTENT_TRAIN_LOG,
    MODE_INSERTION,
    MODE_SHORTCUT,
    MODE_UNRESOLVED,
    PRIMARY_RANK_GUARD,
    RANK_GUARDED_INTENTS,
)
from trainlab.models import (
    InstrumentationError,
    InstrumentationPlan,
    NoAnchorsFound,
    PlanEntry,
    SourcePatch,
    UnparsableSource,
)
from trainlab.utils import _atomic_write_bytes, _sha256_text

_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+\Z")
_INTENT_ORDER = {intent: position for position, intent in enumerate(INSTRUMENTATION_INTENTS)}

_LOOP_TYPES = (ast.For, ast.AsyncFor, ast.While)
_FUNCTION_TYPES = (ast.FunctionDef, ast.AsyncFunctionDef)

_CONFIG_CALL_RE = re.compile(
    r"^(parse_args|parse_known_args|parse_args_into_dataclasses|"
    r"(load|build|get|make|parse|create|setup|read)_?"
    r"(config|cfg|conf|args|arguments|hparams|hyperparams|settings|options|opts))$",
    re.IGNORECASE,
)
_CONFIG_CLASS_RE = re.compile(r"^[A-Z]\w*(Config|Arguments|Args|Settings|HParams|Hparams)$")
_ARGPARSE_CALLS = frozenset({"parse_args", "parse_known_args", "parse_args_into_dataclasses"})
_OMEGACONF_CALLS = frozenset({"load", "create", "merge", "structured"})

_EVAL_FUNC_RE = re.compile(
    r"(^|_)(eval|evaluate|evaluation|validate|validation|valid|val|test|inference)(_|$)",
    re.IGNORECASE,
)
_NO_GRAD_CALLS = frozenset({"no_grad", "inference_mode"})
_METRIC_WORDS = frozenset(
    {
        "acc", "accuracy", "f1", "precision", "recall", "auc", "auroc", "metric",
        "metrics", "score", "bleu", "rouge", "perplexity", "ppl", "mae", "mse",
        "rmse", "loss", "error", "err", "iou", "map", "wer", "cer",
    }
)
_NON_METRIC_WORDS = frozenset({"fn", "func", "fct", "criterion", "history", "hist", "list", "module"})

_DISTRIBUTED_NAMES = frozenset(
    {
        "init_process_group",
        "get_rank",
        "get_world_size",
        "DistributedDataParallel",
        "DistributedSampler",
        "local_rank",
        "global_rank",
        "is_main_process",
        "is_local_main_process",
        "process_index",
    }
)
_DISTRIBUTED_STRINGS = frozenset({"RANK", "LOCAL_RANK", "WORLD_SIZE", "--local_rank", "--local-rank"})
_DISTRIBUTED_MODULES = frozenset({"torch.distributed", "deepspeed", "horovod", "accelerate"})

_EXIT_CALLS = frozenset({"sys.exit", "exit", "quit", "os._exit"})


@dataclass(frozen=True)
class _ShortcutFramework:
    name: str
    modules: frozenset[str]
    trainer_calls: frozenset[str]
    advice: str
    any_receiver: bool = False


_SHORTCUT_FRAMEWORKS = (
    _ShortcutFramework(
        name="transformers",
        modules=frozenset({"transformers", "trl"}),
        trainer_calls=frozenset(
            {"Trainer", "Seq2SeqTrainer", "SFTTrainer", "DPOTrainer", "RewardTrainer"}
        ),
        advice='pass report_to="wandb" to the TrainingArguments; WANDB_PROJECT selects the project',
    ),
    _ShortcutFramework(
        name="lightning",
        modules=frozenset({"lightning", "pytorch_lightning"}),
        trainer_calls=frozenset({"Trainer"}),
        advice="pass logger=WandbLogger() from lightning.pytorch.loggers to the Trainer; it reads WANDB_PROJECT",
    ),
    _ShortcutFramework(
        name="keras",
        modules=frozenset({"keras", "tensorflow"}),
        trainer_calls=frozenset({"fit"}),
        advice="add wandb.integration.keras.WandbMetricsLogger() to model.fit(callbacks=[...])",
        any_receiver=True,
    ),
)


@dataclass(frozen=True)
class InstrumentationResult:
    plan: InstrumentationPlan
    patch: SourcePatch | None
    backup_path: Path | None
    written: bool


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _split_lines(text: str) -> list[str]:
    return _LINE_RE.findall(text)


def _detect_newline(text: str) -> str:
    match = re.search(r"\r\n|\r|\n", text)
    return match.group(0) if match else "\n"


def _parse_source(source_text: str, *, filename: str = "<source>") -> ast.Module:
    if "\x00" in source_text:
        raise UnparsableSource(f"{filename} contains NUL bytes and is not source text")
    try:
        return ast.parse(source_text, filename=filename)
    except (SyntaxError, ValueError) as exc:
        raise UnparsableSource(f"{filename} could not be parsed: {exc}") from exc


def decode_source(data: bytes, *, filename: str = "<source>") -> tuple[str, str]:
    """Decode *data* honouring a PEP 263 coding cookie; returns (text, encoding)."""
    try:
        encoding, _lines = tokenize.detect_encoding(io.BytesIO(data).readline)
        return data.decode(encoding), encoding
    except (SyntaxError, LookupError, UnicodeDecodeError) as exc:
        raise UnparsableSource(f"{filename} is not decodable source text: {exc}") from exc


def _dotted_name(node: ast.AST) -> str:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        base = _dotted_name(node.value)
        return f"{base}.{node.attr}" if base else node.attr
    return ""


def _call_name(call: ast.Call) -> str:
    func = call.func
    if isinstance(func, ast.Attribute):
        return func.attr
    if isinstance(func, ast.Name):
        return func.id
    return ""


class _SourceIndex:
    def __init__(self, source_text: str, tree: ast.Module) -> None:
        self.text = source_text
        self.tree = tree
        self.lines = _split_lines(source_text)
        self.newline = _detect_newline(source_text)
        self.parents: dict[ast.AST, ast.AST] = {}
        for parent in ast.walk(tree):
            for child in ast.iter_child_nodes(parent):
                self.parents[child] = parent
        self.imports = self._collect_imports()

    def _collect_imports(self) -> dict[str, str]:
        """Map each locally bound name to the module it was imported from."""
        bound: dict[str, str] = {}
        for node in ast.walk(self.tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    local = alias.asname or alias.name.split(".")[0]
                    bound[local] = alias.name if alias.asname else alias.name.split(".")[0]
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                for alias in node.names:
                    bound[alias.asname or alias.name] = f"{node.module}.{alias.name}"
        return bound

    def imported_modules(self) -> set[str]:
        modules: set[str] = set()
        for node in ast.walk(self.tree):
            if isinstance(node, ast.Import):
                modules.update(alias.name for alias in node.names)
            elif isinstance(node, ast.ImportFrom) and node.module and not node.level:
                modules.add(node.module)
        return modules

    def top_level_imports_name(self, name: str) -> bool:
        for node in self.tree.body:
            if isinstance(node, ast.Import):
                if any(alias.name == name and not alias.asname for alias in node.names):
                    return True
        return False

    def statements(self) -> list[ast.stmt]:
        found = [node for node in ast.walk(self.tree) if isinstance(node, ast.stmt)]
        return sorted(found, key=lambda node: (node.lineno, node.col_offset))

    def enclosing(self, node: ast.AST, types: tuple[type, ...]) -> ast.AST | None:
        current = self.parents.get(node)
        while current is not None:
            if isinstance(current, types):
                return current
            current = self.parents.get(current)
        return None

    def starts_line(self, node: ast.stmt) -> bool:
        if node.lineno < 1 or node.lineno > len(self.lines):
            return False
        return self.lines[node.lineno - 1][: node.col_offset].strip() == ""

    def indent_of(self, node: ast.stmt) -> str:
        line = self.lines[node.lineno - 1]
        return line[: len(line) - len(line.lstrip(" \t"))]

    def indent_unit(self) -> str:
        for line in self.lines:
            stripped = line.lstrip(" \t")
            if stripped.strip() and stripped != line:
                leading = line[: len(line) - len(stripped)]
                return "\t" if leading.startswith("\t") else "    "
        return "    "


@dataclass(frozen=True)
class _Anchor:
    statement: ast.stmt
    insert_at: int
    indent: str
    label: str = ""


def _after(index: _SourceIndex, node: ast.stmt) -> _Anchor | None:
    if not index.starts_line(node):
        return None
    end = node.end_lineno or node.lineno
    return _Anchor(statement=node, insert_at=end, indent=index.indent_of(node))


def _before(index: _SourceIndex, node: ast.stmt) -> _Anchor | None:
    if not index.starts_line(node):
        return None
    return _Anchor(statement=node, insert_at=node.lineno - 1, indent=index.indent_of(node))


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def has_existing_telemetry(source_text: str) -> bool:
    """Return True when the source already imports ``wandb`` or sets ``WANDB_PROJECT``."""
    tree = _parse_source(source_text)
    index = _SourceIndex(source_text, tree)
    if any(module.split(".")[0] == "wandb" for module in index.imported_modules()):
        return True
    return any(_sets_wandb_project(node) for node in ast.walk(tree))


def _is_wandb_project_key(node: ast.AST) -> bool:
    return isinstance(node, ast.Constant) and node.value == "WANDB_PROJECT"


def _sets_wandb_project(node: ast.AST) -> bool:
    # os.environ.setdefault("WANDB_PROJECT", ...) or os.environ["WANDB_PROJECT"] = ...
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute):
        return (
            node.func.attr == "setdefault"
            and bool(node.args)
            and _is_wandb_project_key(node.args[0])
        )
    if isinstance(node, ast.Assign):
        return any(
            isinstance(target, ast.Subscript) and _is_wandb_project_key(target.slice)
            for target in node.targets
        )
    return False


def _detect_shortcut(index: _SourceIndex) -> _ShortcutFramework | None:
    module_roots = {module.split(".")[0] for module in index.imported_modules()}
    calls = [node for node in ast.walk(index.tree) if isinstance(node, ast.Call)]
    for framework in _SHORTCUT_FRAMEWORKS:
        if not module_roots & framework.modules:
            continue
        for call in calls:
            name = _call_name(call)
            if name not in framework.trainer_calls:
                continue
            if framework.any_receiver:
                return framework
            dotted = _dotted_name(call.func)
            origin = index.imports.get(dotted.split(".")[0], "")
            if origin.split(".")[0] in framework.modules:
                return framework
    return None


def _detect_distributed(index: _SourceIndex) -> bool:
    for module in index.imported_modules():
        if any(module == root or module.startswith(f"{root}.") for root in _DISTRIBUTED_MODULES):
            return True
    for node in ast.walk(index.tree):
        if isinstance(node, ast.Name) and node.id in _DISTRIBUTED_NAMES:
            return True
        if isinstance(node, ast.Attribute) and node.attr in _DISTRIBUTED_NAMES:
            return True
        if isinstance(node, ast.arg) and node.arg in _DISTRIBUTED_NAMES:
            return True
        if isinstance(node, ast.Constant) and isinstance(node.value, str):
            if node.value in _DISTRIBUTED_STRINGS:
                return True
    return False


# ---------------------------------------------------------------------------
# Anchors
# ---------------------------------------------------------------------------


def _find_import_anchor(index: _SourceIndex) -> _Anchor | None:
    last: ast.stmt | None = None
    for node in index.tree.body:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            last = node
    if last is None:
        return None
    return _after(index, last)


def _assignment_target_name(node: ast.stmt) -> str:
    if isinstance(node, ast.Assign) and node.targets:
        target = node.targets[0]
    elif isinstance(node, ast.AnnAssign):
        target = node.target
    else:
        return ""
    if isinstance(target, ast.Tuple) and target.elts:
        target = target.elts[0]
    return target.id if isinstance(target, ast.Name) else ""


def _config_expression(kind: str, name: str) -> str:
    if kind == "argparse":
        return f"vars({name})"
    if kind == "omegaconf":
        return f"dict({name})"
    return f"{name} if isinstance({name}, dict) else vars({name})"


def _is_docstring(node: ast.stmt) -> bool:
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Constant)
        and isinstance(node.value.value, str)
    )


def _is_hydra_main(index: _SourceIndex, decorator: ast.expr) -> bool:
    target = decorator.func if isinstance(decorator, ast.Call) else decorator
    dotted = _dotted_name(target)
    return dotted == "hydra.main" or index.imports.get(dotted, "") == "hydra.main"


def _find_config_anchor(index: _SourceIndex) -> tuple[_Anchor, str] | None:
    candidates: list[tuple[int, int, _Anchor, str]] = []
    for node in index.statements():
        if isinstance(node, _FUNCTION_TYPES):
            hydra = any(_is_hydra_main(index, dec) for dec in node.decorator_list)
            if hydra and node.args.args and node.body:
                first = node.body[0]
                if _is_docstring(first):
                    anchor = _after(index, first) if len(node.body) > 1 else None
                else:
                    anchor = _before(index, first)
                if anchor is not None:
                    expression = _config_expression("omegaconf", node.args.args[0].arg)
                    candidates.append((0, node.lineno, anchor, expression))
            continue
        value = getattr(node, "value", None)
        if not isinstance(node, (ast.Assign, ast.AnnAssign)) or not isinstance(value, ast.Call):
            continue
        name = _assignment_target_name(node)
        if not name:
            continue
        function = index.enclosing(node, _FUNCTION_TYPES)
        if function is not None and _CONFIG_CALL_RE.match(function.name):
            continue
        call_name = _call_name(value)
        dotted = _dotted_name(value.func)
        if call_name in _ARGPARSE_CALLS:
            priority, kind = 0, "argparse"
        elif dotted.split(".")[0] == "OmegaConf" and call_name in _OMEGACONF_CALLS:
            priority, kind = 1, "omegaconf"
        elif _CONFIG_CALL_RE.match(call_name):
            priority, kind = 1, "argparse" if call_name.endswith(("args", "arguments")) else "generic"
        elif _CONFIG_CLASS_RE.match(call_name):
            priority, kind = 2, "generic"
        else:
            continue
        anchor = _after(index, node)
        if anchor is not None:
            candidates.append((priority, node.lineno, anchor, _config_expression(kind, name)))
    if not candidates:
        return None
    _priority, _line, anchor, expression = min(candidates, key=lambda item: (item[0], item[1]))
    return anchor, expression


def _is_update_call(call: ast.Call) -> bool:
    func = call.func
    if not isinstance(func, ast.Attribute) or func.attr != "step":
        return False
    receiver = _dotted_name(func.value).rsplit(".", 1)[-1].lower()
    if not receiver:
        return False
    if "sched" in receiver:
        return False
    return (
        "optim" in receiver
        or receiver in {"opt", "scaler", "grad_scaler"}
        or receiver.startswith("opt_")
        or receiver.endswith("_opt")
    )


def _optimizer_name(call: ast.Call) -> str:
    receiver = _dotted_name(call.func.value) if isinstance(call.func, ast.Attribute) else ""
    if "scaler" in receiver.rsplit(".", 1)[-1].lower():
        if call.args:
            return _dotted_name(call.args[0])
        return ""
    return receiver


def _loss_name(loop: ast.AST) -> str:
    calls = [node for node in ast.walk(loop) if isinstance(node, ast.Call)]
    calls.sort(key=lambda node: (node.lineno, node.col_offset))
    for call in calls:
        func = call.func
        if not isinstance(func, ast.Attribute) or func.attr != "backward":
            continue
        receiver = func.value
        if isinstance(receiver, ast.Name):
            return receiver.id
        if isinstance(receiver, ast.Call) and receiver.args and isinstance(receiver.args[0], ast.Name):
            return receiver.args[0].id
        if call.args and isinstance(call.args[0], ast.Name):
            return call.args[0].id
    return ""


def _next_sibling(index: _SourceIndex, node: ast.stmt) -> ast.stmt | None:
    parent = index.parents.get(node)
    if parent is None:
        return None
    for field_name in ("body", "orelse", "finalbody"):
        block = getattr(parent, field_name, None)
        if isinstance(block, list) and node in block:
            position = block.index(node)
            if position + 1 < len(block):
                return block[position + 1]
            return None
    return None


def _find_train_anchor(index: _SourceIndex) -> tuple[_Anchor, str] | None:
    for node in index.statements():
        if not isinstance(node, ast.Expr) or not isinstance(node.value, ast.Call):
            continue
        if not _is_update_call(node.value):
            continue
        loop = index.enclosing(node, _LOOP_TYPES)
        if loop is None:
            continue
        anchor_stmt: ast.stmt = node
        sibling = _next_sibling(index, node)
        if (
            isinstance(sibling, ast.Expr)
            and isinstance(sibling.value, ast.Call)
            and _call_name(sibling.value) == "update"
            and "scaler" in _dotted_name(sibling.value.func).lower()
        ):
            anchor_stmt = sibling
        anchor = _after(index, anchor_stmt)
        if anchor is None:
            continue
        fields: list[str] = []
        loss = _loss_name(loop)
        if loss:
            fields.append(f'"train/loss": float({loss})')
        optimizer = _optimizer_name(node.value)
        if optimizer:
            fields.append(f'"train/lr": {optimizer}.param_groups[0]["lr"]')
        if not fields:
            fields.append('"train/step_completed": 1')
        return anchor, "wandb.log({" + ", ".join(fields) + "})"
    return None


def _metric_names(node: ast.stmt) -> list[str]:
    if isinstance(node, ast.Assign):
        targets = list(node.targets)
    elif isinstance(node, (ast.AugAssign, ast.AnnAssign)):
        targets = [node.target]
    else:
        return []
    names: list[str] = []
    for target in targets:
        elements = target.elts if isinstance(target, ast.Tuple) else [target]
        for element in elements:
            if not isinstance(element, ast.Name):
                continue
            parts = {part for part in element.id.lower().split("_") if part}
            if parts & _METRIC_WORDS and not parts & _NON_METRIC_WORDS:
                if element.id not in names:
                    names.append(element.id)
    return names


def _is_no_grad_context(node: ast.AST) -> bool:
    if not isinstance(node, (ast.With, ast.AsyncWith)):
        return False
    for item in node.items:
        expr = item.context_expr
        if isinstance(expr, ast.Call) and _call_name(expr) in _NO_GRAD_CALLS:
            return True
    return False


def _eval_blocks(index: _SourceIndex) -> list[ast.AST]:
    functions: list[ast.AST] = []
    contexts: list[ast.AST] = []
    for node in ast.walk(index.tree):
        if isinstance(node, _FUNCTION_TYPES):
            decorated = any(
                isinstance(dec, ast.Call) and _call_name(dec) in _NO_GRAD_CALLS
                for dec in node.decorator_list
            )
            if _EVAL_FUNC_RE.search(node.name) or decorated:
                functions.append(node)
        elif _is_no_grad_context(node):
            contexts.append(node)
    functions.sort(key=lambda node: node.lineno)
    contexts.sort(key=lambda node: node.lineno)
    return functions + contexts


def _find_eval_anchor(index: _SourceIndex) -> tuple[_Anchor, str] | None:
    fallback: tuple[_Anchor, str] | None = None
    for block in _eval_blocks(index):
        settled: tuple[_Anchor, str] | None = None
        in_loop: tuple[_Anchor, str] | None = None
        statements = [node for node in ast.walk(block) if isinstance(node, ast.stmt) and node is not block]
        statements.sort(key=lambda node: (node.lineno, node.col_offset))
        for node in statements:
            names = _metric_names(node)
            if not names:
                continue
            anchor = _after(index, node)
            if anchor is None:
                continue
            fields = ", ".join(f'"eval/{name}": {name}' for name in names)
            found = (anchor, "wandb.log({" + fields + "})")
            loop = index.enclosing(node, _LOOP_TYPES)
            if loop is not None and _is_descendant(index, loop, block):
                in_loop = found
            elif not isinstance(node, ast.AugAssign):
                settled = found
        if settled is not None:
            return settled
        if fallback is None and in_loop is not None:
            fallback = in_loop
    return fallback


def _is_descendant(index: _SourceIndex, node: ast.AST, ancestor: ast.AST) -> bool:
    current = index.parents.get(node)
    while current is not None:
        if current is ancestor:
            return True
        current = index.parents.get(current)
    return False


def _entry_body(index: _SourceIndex) -> list[ast.stmt] | None:
    for node in index.tree.body:
        if isinstance(node, _FUNCTION_TYPES) and node.name == "main":
            return node.body
    for node in index.tree.body:
        if not isinstance(node, ast.If):
            continue
        test = node.test
        if (
            isinstance(test, ast.Compare)
            and isinstance(test.left, ast.Name)
            and test.left.id == "__name__"
            and len(test.comparators) == 1
            and isinstance(test.comparators[0], ast.Constant)
            and test.comparators[0].value == "__main__"
        ):
            return node.body
    return None


def _is_exit_statement(node: ast.stmt) -> bool:
    if isinstance(node, (ast.Return, ast.Raise)):
        return True
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Call)
        and _dotted_name(node.value.func) in _EXIT_CALLS
    )


def _find_finish_anchor(index: _SourceIndex) -> _Anchor | None:
    body = _entry_body(index)
    if not body:
        return None
    last = body[-1]
    if _is_exit_statement(last):
        return _before(index, last)
    return _after(index, last)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _render(
    index: _SourceIndex,
    statements: list[str],
    indent: str,
    *,
    guarded: bool,
) -> str:
    newline = index.newline
    if guarded:
        unit = index.indent_unit()
        rendered = [f"{indent}{PRIMARY_RANK_GUARD}{newline}"]
        rendered.extend(f"{indent}{unit}{statement}{newline}" for statement in statements)
        return "".join(rendered)
    return "".join(f"{indent}{statement}{newline}" for statement in statements)


def _entry(
    index: _SourceIndex,
    intent: str,
    anchor: _Anchor | None,
    statements: list[str],
    *,
    guarded: bool,
    missing_note: str,
) -> PlanEntry:
    if anchor is None:
        return PlanEntry(intent=intent, mode=MODE_UNRESOLVED, note=missing_note)
    return PlanEntry(
        intent=intent,
        mode=MODE_INSERTION,
        anchor_line=anchor.statement.lineno,
        insert_at=anchor.insert_at,
        text=_render(index, statements, anchor.indent, guarded=guarded),
    )


def _shortcut_plan(
    index: _SourceIndex,
    framework: _ShortcutFramework,
    *,
    project: str,
    digest: str,
    distributed: bool,
    path: str,
) -> InstrumentationPlan:
    import_anchor = _find_import_anchor(index)
    stanza: list[str] = []
    if not index.top_level_imports_name("os"):
        stanza.append("import os")
    stanza.append(f"os.environ.setdefault(\"WANDB_PROJECT\", {project!r})")
    entries = [
        _entry(
            index,
            INTENT_IMPORT,
            import_anchor,
            stanza,
            guarded=False,
            missing_note="no top-level import statement to anchor the configuration stanza",
        )
    ]
    if entries[0].resolved:
        entries[0] = PlanEntry(
            intent=INTENT_IMPORT,
            mode=MODE_SHORTCUT,
            anchor_line=entries[0].anchor_line,
            insert_at=entries[0].insert_at,
            text=entries[0].text,
            note=f"{framework.name} configuration stanza",
        )
    for intent in INSTRUMENTATION_INTENTS[1:]:
        entries.append(
            PlanEntry(intent=intent, mode=MODE_SHORTCUT, note=f"managed by {framework.name}")
        )
    return InstrumentationPlan(
        source_digest=digest,
        project=project,
        entries=tuple(entries),
        framework=framework.name,
        distributed=distributed,
        advice=framework.advice,
        path=path,
    )


def build_plan(source_text: str, project: str, *, path: str = "") -> InstrumentationPlan:
    """Plan telemetry insertions for *source_text*.

    Raises ``UnparsableSource`` when the text cannot be parsed. Intents whose
    anchor cannot be located are returned as ``unresolved`` entries.
    """
    tree = _parse_source(source_text, filename=path or "<source>")
    index = _SourceIndex(source_text, tree)
    digest = _sha256_text(source_text)
    distributed = _detect_distributed(index)

    framework = _detect_shortcut(index)
    if framework is not None:
        return _shortcut_plan(
            index, framework, project=project, digest=digest, distributed=distributed, path=path
        )

    import_anchor = _find_import_anchor(index)
    import_statements = []
    if distributed and not index.top_level_imports_name("os"):
        import_statements.append("import os")
    import_statements.append("import wandb")
    entries = [
        _entry(
            index,
            INTENT_IMPORT,
            import_anchor,
            import_statements,
            guarded=False,
            missing_note="no top-level import statement found",
        )
    ]

    def needs_guard(intent: str) -> bool:
        return distributed and intent in RANK_GUARDED_INTENTS

    config = _find_config_anchor(index)
    entries.append(
        _entry(
            index,
            INTENT_INIT,
            config[0] if config else None,
            [f"wandb.init(project={project!r}, config={config[1]})"] if config else [],
            guarded=needs_guard(INTENT_INIT),
            missing_note="no finalized configuration object found",
        )
    )
    train = _find_train_anchor(index)
    entries.append(
        _entry(
            index,
            INTENT_TRAIN_LOG,
            train[0] if train else None,
            [train[1]] if train else [],
            guarded=needs_guard(INTENT_TRAIN_LOG),
            missing_note="no loop with a parameter-update call found",
        )
    )
    evaluation = _find_eval_anchor(index)
    entries.append(
        _entry(
            index,
            INTENT_EVAL_LOG,
            evaluation[0] if evaluation else None,
            [evaluation[1]] if evaluation else [],
            guarded=needs_guard(INTENT_EVAL_LOG),
            missing_note="no metric computation inside an evaluation block found",
        )
    )
    entries.append(
        _entry(
            index,
            INTENT_FINISH,
            _find_finish_anchor(index),
            ["wandb.finish()"],
            guarded=needs_guard(INTENT_FINISH),
            missing_note="no entry routine (main() or __main__ block) found",
        )
    )

    if not entries[0].resolved:
        entries = [entries[0]] + [
            entry
            if not entry.resolved
            else PlanEntry(
                intent=entry.intent,
                mode=MODE_UNRESOLVED,
                anchor_line=entry.anchor_line,
                note="skipped: telemetry calls need the import anchor",
            )
            for entry in entries[1:]
        ]

    return InstrumentationPlan(
        source_digest=digest,
        project=project,
        entries=tuple(entries),
        distributed=distributed,
        path=path,
    )


# ---------------------------------------------------------------------------
# Apply / revert
# ---------------------------------------------------------------------------


def apply_plan(source_text: str, plan: InstrumentationPlan) -> SourcePatch:
    """Apply every edit of *plan* to *source_text* without touching disk.

    Edits are applied from the bottom of the file upwards so earlier line
    indices stay valid. Either every edit applies and the result parses, or
    ``InstrumentationError`` is raised and nothing is returned.
    """
    if _sha256_text(source_text) != plan.source_digest:
        raise InstrumentationError("plan was computed against a different snapshot of the source")
    lines = _split_lines(source_text)
    edits = sorted(
        plan.edits,
        key=lambda entry: (entry.insert_at, _INTENT_ORDER.get(entry.intent, 0)),
        reverse=True,
    )
    for entry in edits:
        if entry.insert_at > len(lines):
            raise InstrumentationError(
                f"{entry.intent} edit targets line {entry.insert_at + 1} beyond end of file"
            )
    patched = list(lines)
    if edits and patched and edits[0].insert_at >= len(lines):
        if not patched[-1].endswith(("\n", "\r")):
            patched[-1] += _detect_newline(source_text)
    for entry in edits:
        patched.insert(entry.insert_at, entry.text)
    patched_text = "".join(patched)
    if edits:
        try:
            _parse_source(patched_text, filename=plan.path or "<patched>")
        except UnparsableSource as exc:
            raise InstrumentationError(f"instrumented source would not parse: {exc}") from exc
    return SourcePatch(backup=source_text, patched_text=patched_text, edits=tuple(reversed(edits)))


def revert(patch: SourcePatch | str) -> str:
    """Return the original source held by *patch* (or a bare backup string)."""
    if isinstance(patch, SourcePatch):
        return patch.backup
    return patch


# ---------------------------------------------------------------------------
# File persistence
# ---------------------------------------------------------------------------


def backup_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}{BACKUP_SUFFIX}")


def read_source_file(path: Path) -> tuple[bytes, str, str]:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise InstrumentationError(f"could not read {path}: {exc}") from exc
    text, encoding = decode_source(data, filename=str(path))
    return data, text, encoding


def _refuse_existing_backup(path: Path, backup: Path) -> None:
    if backup.exists():
        raise InstrumentationError(
            f"{path} is already instrumented (backup at {backup}); revert or discard it first"
        )


def write_instrumented_file(
    path: Path, *, original: bytes, patch: SourcePatch, encoding: str
) -> Path:
    """Persist the backup, then rename the patched text into place."""
    backup = backup_path_for(path)
    _refuse_existing_backup(path, backup)
    try:
        payload = patch.patched_text.encode(encoding)
    except UnicodeEncodeError as exc:
        raise InstrumentationError(f"instrumented text cannot be encoded as {encoding}: {exc}") from exc
    _atomic_write_bytes(backup, original)
    try:
        _atomic_write_bytes(path, payload)
    except BaseException:
        backup.unlink(missing_ok=True)
        raise
    return backup


def revert_file(path: Path) -> bool:
    """Restore *path* from its backup; returns False when there is none."""
    backup = backup_path_for(path)
    if not backup.exists():
        return False
    _atomic_write_bytes(path, backup.read_bytes())
    backup.unlink(missing_ok=True)
    return True


def discard_backup(path: Path) -> bool:
    backup = backup_path_for(path)
    if not backup.exists():
        return False
    backup.unlink()
    return True


def instrument_file(path: Path, project: str, *, dry_run: bool = False) -> InstrumentationResult:
    """Plan and apply instrumentation to *path*.

    Raises ``NoAnchorsFound`` (carrying the plan) when nothing resolved, so
    the caller can decide whether to continue without instrumentation.
    An existing backup means the file was already instrumented; it is never
    overwritten, so ``revert_file`` always restores the pre-instrumentation
    bytes.
    """
    if not dry_run:
        _refuse_existing_backup(path, backup_path_for(path))
    original, text, encoding = read_source_file(path)
    plan = build_plan(text, project, path=str(path))
    if plan.is_empty or not plan.edits:
        raise NoAnchorsFound(f"no instrumentation anchors found in {path}", plan=plan)
    patch = apply_plan(text, plan)
    if dry_run:
        return InstrumentationResult(plan=plan, patch=patch, backup_path=None, written=False)
    backup = write_instrumented_file(path, original=original, patch=patch, encoding=encoding)
    return InstrumentationResult(plan=plan, patch=patch, backup_path=backup, written=True)
