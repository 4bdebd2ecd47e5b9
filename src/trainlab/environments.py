"""Trainlab environment provisioning — create, install into, and probe runtimes."""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable

import yaml

from trainlab.constants import (
    CAPABILITIES,
    CAPABILITY_DEVICES,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    ENV_POLICY_CREATE_NEW,
    ENV_POLICY_USE_CURRENT,
    ENV_POLICY_USE_EXISTING,
    INSTALL_STAMP_FILENAME,
    MANIFEST_ENVIRONMENT_DEFINITION,
    MANIFEST_LEGACY_SETUP,
    MANIFEST_PROJECT_METADATA,
    MANIFEST_REQUIREMENTS,
)
from trainlab.models import (
    CapabilityReport,
    DependencyInstallError,
    DependencyManifest,
    EnvironmentCreationError,
    EnvironmentHandle,
    EnvironmentNotFound,
    EnvironmentSpec,
    InstallReport,
    ProvisioningPolicy,
)
from trainlab.utils import _combined_output, _compact_text, _run_command, _utc_now

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]

_PROBE_PROGRAM = """\
import platform
print("python_version: " + platform.python_version())
try:
    import torch
except Exception:
    print("framework: none")
    print("accelerator_available: false")
    print("device_count: 0")
    print("accelerator_version: ")
else:
    available = bool(torch.cuda.is_available())
    print("framework: torch " + str(torch.__version__))
    print("accelerator_available: " + str(available).lower())
    print("device_count: " + str(torch.cuda.device_count() if available else 0))
    print("accelerator_version: " + str(torch.version.cuda or ""))
"""


def parse_probe_output(text: str) -> dict[str, str]:
    """Parse ``key: value`` lines; anything else is ignored."""
    facts: dict[str, str] = {}
    for raw_line in str(text or "").splitlines():
        key, sep, value = raw_line.partition(":")
        key = key.strip()
        if not sep or not key or " " in key:
            continue
        facts[key] = value.strip()
    return facts


def _venv_python(prefix: Path) -> Path:
    if os.name == "nt":
        return prefix / "Scripts" / "python.exe"
    return prefix / "bin" / "python"


def _conda_python(prefix: Path) -> Path:
    if os.name == "nt":
        return prefix / "python.exe"
    return prefix / "bin" / "python"


def _manifest_digest(manifest: DependencyManifest) -> str:
    digest = hashlib.sha256()
    digest.update(manifest.kind.encode("utf-8"))
    digest.update(manifest.path.read_bytes())
    return digest.hexdigest()


class EnvironmentProvisioner:
    """Ensures isolated environments exist and have dependencies installed.

    Environments are conda environments when conda is available (or forced
    by policy) and plain venvs under ``policy.envs_root`` otherwise. They are
    never deleted here.
    """

    def __init__(
        self,
        policy: ProvisioningPolicy,
        *,
        runner: CommandRunner | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.policy = policy
        self._runner = runner or _run_command
        self._which = which

    # -- backend -----------------------------------------------------------

    @property
    def backend(self) -> str:
        if self.policy.backend in {"conda", "venv"}:
            return self.policy.backend
        return "conda" if self._which("conda") else "venv"

    def _conda_envs(self) -> dict[str, Path]:
        proc = self._runner(["conda", "env", "list", "--json"], timeout=DEFAULT_PROBE_TIMEOUT_SECONDS)
        if proc.returncode != 0:
            raise EnvironmentNotFound(
                f"could not list conda environments: {_compact_text(_combined_output(proc))}"
            )
        try:
            payload = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise EnvironmentNotFound(f"could not parse conda env list: {exc}") from exc
        envs: dict[str, Path] = {}
        for raw_prefix in payload.get("envs", []) if isinstance(payload, dict) else []:
            prefix = Path(str(raw_prefix))
            envs.setdefault(prefix.name, prefix)
        return envs

    def _find_existing(self, name: str) -> EnvironmentHandle | None:
        if self.backend == "conda":
            prefix = self._conda_envs().get(name)
            if prefix is None:
                return None
            return EnvironmentHandle(
                name=name, kind="conda", python=str(_conda_python(prefix)), prefix=prefix
            )
        prefix = self.policy.envs_root / name
        if not (prefix / "pyvenv.cfg").exists():
            return None
        return EnvironmentHandle(
            name=name, kind="venv", python=str(_venv_python(prefix)), prefix=prefix
        )

    # -- ensure ------------------------------------------------------------

    def ensure(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        if spec.policy == ENV_POLICY_USE_CURRENT:
            return EnvironmentHandle(name=spec.name or "current", kind="current", python=sys.executable)
        if spec.policy == ENV_POLICY_USE_EXISTING:
            existing = self._find_existing(spec.name)
            if existing is None:
                raise EnvironmentNotFound(
                    f"environment '{spec.name}' does not exist ({self.backend} backend)"
                )
            return existing
        if spec.policy != ENV_POLICY_CREATE_NEW:
            raise EnvironmentCreationError(f"unsupported environment policy '{spec.policy}'")

        try:
            existing = self._find_existing(spec.name)
        except EnvironmentNotFound as exc:
            raise EnvironmentCreationError(str(exc)) from exc
        if existing is not None:
            if spec.reuse_if_exists:
                return existing
            raise EnvironmentCreationError(
                f"environment '{spec.name}' already exists; set reuse_if_exists to reuse it"
            )
        if self.backend == "conda":
            return self._create_conda(spec)
        return self._create_venv(spec)

    def _create_conda(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        python_req = f"python={spec.python}" if spec.python else "python"
        argv = ["conda", "create", "--yes", "--name", spec.name, python_req]
        proc = self._runner(argv, timeout=self.policy.install_timeout_seconds)
        if proc.returncode != 0:
            raise EnvironmentCreationError(
                f"conda create failed for '{spec.name}' (exit {proc.returncode}): "
                f"{_compact_text(_combined_output(proc), limit=600)}"
            )
        created = self._find_existing(spec.name)
        if created is None:
            raise EnvironmentCreationError(
                f"conda reported success but environment '{spec.name}' is not listed"
            )
        return EnvironmentHandle(
            name=created.name,
            kind=created.kind,
            python=created.python,
            prefix=created.prefix,
            created=True,
        )

    def _resolve_base_interpreter(self, version: str) -> str:
        if not version:
            return sys.executable
        if os.sep in version or version.startswith("."):
            candidate = Path(version).expanduser()
            if candidate.exists():
                return str(candidate)
            raise EnvironmentCreationError(f"interpreter {candidate} does not exist")
        found = self._which(f"python{version}")
        if found:
            return found
        raise EnvironmentCreationError(f"no interpreter named python{version} found on PATH")

    def _create_venv(self, spec: EnvironmentSpec) -> EnvironmentHandle:
        base_python = self._resolve_base_interpreter(spec.python)
        prefix = self.policy.envs_root / spec.name
        prefix.parent.mkdir(parents=True, exist_ok=True)
        argv = [base_python, "-m", "venv", str(prefix)]
        proc = self._runner(argv, timeout=self.policy.install_timeout_seconds)
        if proc.returncode != 0:
            raise EnvironmentCreationError(
                f"venv creation failed for '{spec.name}' (exit {proc.returncode}): "
                f"{_compact_text(_combined_output(proc), limit=600)}"
            )
        return EnvironmentHandle(
            name=spec.name,
            kind="venv",
            python=str(_venv_python(prefix)),
            prefix=prefix,
            created=True,
        )

    # -- install -----------------------------------------------------------

    def _stamp_path(self, handle: EnvironmentHandle) -> Path | None:
        if handle.prefix is None:
            return None
        return handle.prefix / INSTALL_STAMP_FILENAME

    def _read_stamp(self, handle: EnvironmentHandle) -> dict[str, Any]:
        stamp_path = self._stamp_path(handle)
        if stamp_path is None or not stamp_path.exists():
            return {}
        try:
            loaded = json.loads(stamp_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return loaded if isinstance(loaded, dict) else {}

    def _write_stamp(
        self, handle: EnvironmentHandle, manifest: DependencyManifest, digest: str
    ) -> str | None:
        """Record the installed manifest digest; returns a warning when it cannot."""
        stamp_path = self._stamp_path(handle)
        if stamp_path is None:
            return None
        payload = {
            "manifest_kind": manifest.kind,
            "manifest_path": str(manifest.path),
            "digest": digest,
            "installed_at": _utc_now(),
        }
        try:
            stamp_path.parent.mkdir(parents=True, exist_ok=True)
            stamp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            return f"install stamp not written to {stamp_path}: {exc}; the next run will reinstall"
        return None

    def _environment_definition_plan(
        self, handle: EnvironmentHandle, manifest: DependencyManifest
    ) -> tuple[list[str], tuple[str, ...]]:
        if handle.kind == "conda" and handle.prefix is not None:
            argv = ["conda", "env", "update", "--prefix", str(handle.prefix), "--file", str(manifest.path)]
            return argv, ()
        try:
            loaded = yaml.safe_load(manifest.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise DependencyInstallError(
                f"could not read {manifest.path}: {exc}", exit_code=1, output=str(exc)
            ) from exc
        dependencies = loaded.get("dependencies", []) if isinstance(loaded, dict) else []
        pip_packages: list[str] = []
        conda_only: list[str] = []
        for entry in dependencies if isinstance(dependencies, list) else []:
            if isinstance(entry, dict):
                nested = entry.get("pip")
                if isinstance(nested, list):
                    pip_packages.extend(str(item).strip() for item in nested if str(item).strip())
                continue
            text = str(entry).strip()
            base = text.split("=", 1)[0].split("<", 1)[0].split(">", 1)[0].strip()
            if base in {"python", "pip"}:
                continue
            conda_only.append(text)
        if not pip_packages:
            return [], tuple(conda_only)
        return [handle.python, "-m", "pip", "install", *pip_packages], tuple(conda_only)

    def _install_argv(
        self, handle: EnvironmentHandle, manifest: DependencyManifest
    ) -> tuple[list[str], tuple[str, ...]]:
        if manifest.kind == MANIFEST_REQUIREMENTS:
            return [handle.python, "-m", "pip", "install", "-r", str(manifest.path)], ()
        if manifest.kind in {MANIFEST_PROJECT_METADATA, MANIFEST_LEGACY_SETUP}:
            return [handle.python, "-m", "pip", "install", "-e", str(manifest.path.parent)], ()
        if manifest.kind == MANIFEST_ENVIRONMENT_DEFINITION:
            return self._environment_definition_plan(handle, manifest)
        raise DependencyInstallError(
            f"unsupported manifest kind '{manifest.kind}'", exit_code=1
        )

    def install(
        self, handle: EnvironmentHandle, manifest: DependencyManifest | None
    ) -> InstallReport:
        if manifest is None:
            return InstallReport(
                manifest_kind="none",
                command=(),
                exit_code=0,
                output="",
                skipped=True,
                skipped_reason="no managed dependencies",
            )
        digest = _manifest_digest(manifest)
        stamp = self._read_stamp(handle)
        if stamp.get("digest") == digest:
            return InstallReport(
                manifest_kind=manifest.kind,
                command=(),
                exit_code=0,
                output="",
                skipped=True,
                skipped_reason="manifest unchanged since last install",
            )

        argv, not_installed = self._install_argv(handle, manifest)
        if not argv:
            return InstallReport(
                manifest_kind=manifest.kind,
                command=(),
                exit_code=0,
                output="",
                skipped=True,
                skipped_reason="no pip-installable packages in environment definition",
                not_installed=not_installed,
            )
        proc = self._runner(
            argv,
            timeout=self.policy.install_timeout_seconds,
            cwd=manifest.path.parent,
        )
        output = _combined_output(proc)
        if proc.returncode != 0:
            raise DependencyInstallError(
                f"dependency install from {manifest.path.name} failed with exit code {proc.returncode}",
                exit_code=proc.returncode,
                command=tuple(argv),
                output=output,
            )
        stamp_warning = self._write_stamp(handle, manifest, digest)
        return InstallReport(
            manifest_kind=manifest.kind,
            command=tuple(argv),
            exit_code=proc.returncode,
            output=output,
            not_installed=not_installed,
            warnings=(stamp_warning,) if stamp_warning else (),
        )

    # -- verify ------------------------------------------------------------

    def verify(
        self,
        handle: EnvironmentHandle,
        capability: str,
        *,
        min_devices: int = 1,
        env: dict[str, str] | None = None,
    ) -> CapabilityReport:
        """Probe *capability* in the environment; absence is a normal result."""
        if capability not in CAPABILITIES:
            return CapabilityReport(
                capability=capability,
                available=False,
                device_count=0,
                version="",
                facts={"error": f"unknown capability '{capability}'"},
            )
        child_env = None
        if env:
            child_env = dict(os.environ)
            child_env.update(env)
        proc = self._runner(
            [handle.python, "-c", _PROBE_PROGRAM],
            timeout=DEFAULT_PROBE_TIMEOUT_SECONDS,
            env=child_env,
        )
        facts = parse_probe_output(proc.stdout if proc.returncode == 0 else "")
        try:
            device_count = max(0, int(facts.get("device_count", "0") or 0))
        except ValueError:
            device_count = 0
        accelerator = facts.get("accelerator_available", "").lower() == "true"
        available = accelerator
        if capability == CAPABILITY_DEVICES:
            available = accelerator and device_count >= max(1, int(min_devices))
        if proc.returncode != 0:
            facts["probe_exit_code"] = str(proc.returncode)
        return CapabilityReport(
            capability=capability,
            available=available,
            device_count=device_count,
            version=facts.get("accelerator_version", ""),
            facts=facts,
        )
