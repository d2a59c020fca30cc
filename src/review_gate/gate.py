"""Prerequisite gate: read-only probes that must pass before a workflow starts.

All probes always run. A probe that blows up counts as a blocking failure
for that probe only, so the caller always sees the complete failure set.
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from loguru import logger
from packaging.version import InvalidVersion, Version

from .constants import DEFAULT_PROBE_TIMEOUT_SECONDS, DEFAULT_VERSION_ARGS
from .models import GateCheckResult, GateStatus, MalformedResultError
from .validation import extract_json_object, parse_gate_check

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)+)")


def _fail_status(blocking: bool) -> GateStatus:
    return GateStatus.FAIL if blocking else GateStatus.WARN


@dataclass(frozen=True)
class ToolPresenceProbe:
    """Check that an executable is on PATH."""

    tool: str
    blocking: bool = True

    @property
    def name(self) -> str:
        return f"tool:{self.tool}"

    def check(self) -> GateCheckResult:
        path = shutil.which(self.tool)
        if path:
            return GateCheckResult(self.name, GateStatus.PASS, self.blocking, path)
        return GateCheckResult(self.name, _fail_status(self.blocking), self.blocking, f"{self.tool} not found in PATH")


@dataclass(frozen=True)
class MinimumVersionProbe:
    """Check that ``<tool> --version`` reports at least ``min_version``."""

    tool: str
    min_version: str
    version_args: tuple[str, ...] = DEFAULT_VERSION_ARGS
    blocking: bool = True
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS

    @property
    def name(self) -> str:
        return f"version:{self.tool}"

    def _fail(self, detail: str) -> GateCheckResult:
        return GateCheckResult(self.name, _fail_status(self.blocking), self.blocking, detail)

    def check(self) -> GateCheckResult:
        if not shutil.which(self.tool):
            return self._fail(f"{self.tool} not found in PATH")
        try:
            proc = subprocess.run(
                [self.tool, *self.version_args],
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return self._fail(f"could not run {self.tool}: {exc}")

        output = f"{proc.stdout}\n{proc.stderr}"
        m = _VERSION_RE.search(output)
        if not m:
            return self._fail(f"no version number in `{self.tool} {' '.join(self.version_args)}` output")
        try:
            found = Version(m.group(1))
            required = Version(self.min_version)
        except InvalidVersion as exc:
            return self._fail(f"unparseable version: {exc}")
        if found < required:
            return self._fail(f"{self.tool} {found} is older than required {required}")
        return GateCheckResult(self.name, GateStatus.PASS, self.blocking, f"{self.tool} {found}")


@dataclass(frozen=True)
class CredentialProbe:
    """Check that a credential environment variable is set and non-empty."""

    env_var: str
    blocking: bool = True

    @property
    def name(self) -> str:
        return f"credential:{self.env_var}"

    def check(self) -> GateCheckResult:
        if os.environ.get(self.env_var, "").strip():
            return GateCheckResult(self.name, GateStatus.PASS, self.blocking, f"{self.env_var} is set")
        return GateCheckResult(self.name, _fail_status(self.blocking), self.blocking, f"{self.env_var} is not set")


@dataclass(frozen=True)
class AuthCommandProbe:
    """Check authentication by running a read-only status command (e.g. ``gh auth status``)."""

    label: str
    command: str
    blocking: bool = True
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS

    @property
    def name(self) -> str:
        return f"auth:{self.label}"

    def check(self) -> GateCheckResult:
        argv = shlex.split(self.command)
        if not argv or not shutil.which(argv[0]):
            return GateCheckResult(
                self.name, _fail_status(self.blocking), self.blocking, f"{argv[0] if argv else '<empty>'} not found"
            )
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout_seconds)
        except (OSError, subprocess.TimeoutExpired) as exc:
            return GateCheckResult(self.name, _fail_status(self.blocking), self.blocking, str(exc))
        if proc.returncode == 0:
            return GateCheckResult(self.name, GateStatus.PASS, self.blocking, "authenticated")
        tail = (proc.stderr or proc.stdout or "").strip()[-200:]
        return GateCheckResult(
            self.name,
            _fail_status(self.blocking),
            self.blocking,
            f"`{self.command}` exited {proc.returncode}: {tail}",
        )


@dataclass(frozen=True)
class CommandProbe:
    """Run an external probe that prints one gate check as JSON on stdout."""

    label: str
    command: str
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS

    @property
    def name(self) -> str:
        return self.label

    def check(self) -> GateCheckResult:
        proc = subprocess.run(
            self.command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=self.timeout_seconds,
        )
        return parse_gate_check(extract_json_object(proc.stdout))


@dataclass(frozen=True)
class ConfigSanityProbe:
    """Report configuration parse and shape problems found while loading."""

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    name: str = "config"

    def check(self) -> GateCheckResult:
        if self.errors:
            return GateCheckResult(self.name, GateStatus.FAIL, True, "; ".join(self.errors))
        if self.warnings:
            return GateCheckResult(self.name, GateStatus.WARN, False, "; ".join(self.warnings))
        return GateCheckResult(self.name, GateStatus.PASS, True, "ok")


Probe = Any  # any object with ``name`` and ``check() -> GateCheckResult``


@dataclass(frozen=True)
class GateReport:
    """Complete outcome of one gate evaluation."""

    results: tuple[GateCheckResult, ...] = ()

    @property
    def failures(self) -> tuple[GateCheckResult, ...]:
        return tuple(r for r in self.results if r.halts_entry)

    @property
    def warnings(self) -> tuple[GateCheckResult, ...]:
        return tuple(
            r for r in self.results if r.status == GateStatus.WARN or (r.status == GateStatus.FAIL and not r.blocking)
        )

    @property
    def admitted(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "admitted": self.admitted,
            "results": [r.to_dict() for r in self.results],
            "failures": [r.to_dict() for r in self.failures],
            "warnings": [r.to_dict() for r in self.warnings],
        }


@dataclass
class PrerequisiteGate:
    """Run a fixed, ordered list of probes and decide admission."""

    probes: Sequence[Probe] = field(default_factory=list)

    def evaluate(self) -> GateReport:
        """Run every probe, never stopping early.

        Raises:
            MalformedResultError: If a probe returns something other than a GateCheckResult.
        """
        results: list[GateCheckResult] = []
        for probe in self.probes:
            name = str(getattr(probe, "name", type(probe).__name__))
            check: Callable[[], Any] = getattr(probe, "check", probe)
            try:
                result = check()
            except Exception as exc:
                logger.exception("Prerequisite probe {} raised: {}", name, exc)
                result = GateCheckResult(name, GateStatus.FAIL, True, f"probe raised {exc.__class__.__name__}: {exc}")
            if not isinstance(result, GateCheckResult):
                raise MalformedResultError(f"Probe {name} returned {type(result).__name__}, expected GateCheckResult")
            results.append(result)

        report = GateReport(tuple(results))
        if report.admitted:
            logger.info("Prerequisite gate admitted entry ({} check(s), {} warning(s))", len(results), len(report.warnings))
        else:
            logger.warning(
                "Prerequisite gate denied entry: {}",
                ", ".join(f.name for f in report.failures),
            )
        return report


def _entries(gate_config: dict[str, Any], key: str, errors: list[str]) -> list[Any]:
    value = gate_config.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        errors.append(f"gate.{key}: expected a list, got {type(value).__name__}")
        return []
    return value


def _blocking(entry: dict[str, Any], where: str, errors: list[str]) -> Optional[bool]:
    value = entry.get("blocking", True)
    if not isinstance(value, bool):
        errors.append(f"{where}.blocking: expected true or false, got {value!r}")
        return None
    return value


def build_gate(gate_config: dict[str, Any], config_errors: Optional[Sequence[str]] = None,
               config_warnings: Optional[Sequence[str]] = None) -> PrerequisiteGate:
    """Assemble the gate from the `gate` config block.

    Example block::

        gate:
          tools:
            - name: git
              min_version: "2.30"
          credentials:
            - GITHUB_TOKEN
            - {env: OPENAI_API_KEY, blocking: false}
          auth:
            - {name: github, command: "gh auth status"}
          probes:
            - {name: disk, command: "./scripts/check_disk.sh"}

    Entries that cannot be turned into a check are reported through the
    blocking ``config`` check rather than dropped.
    """
    errors = list(config_errors or ())
    probes: list[Probe] = []

    for i, entry in enumerate(_entries(gate_config, "tools", errors)):
        where = f"gate.tools[{i}]"
        if isinstance(entry, str) and entry.strip():
            entry = {"name": entry}
        if not isinstance(entry, dict) or not entry.get("name"):
            errors.append(f"{where}: expected a tool name or a mapping with 'name'")
            continue
        blocking = _blocking(entry, where, errors)
        if blocking is None:
            continue
        tool = str(entry["name"])
        probes.append(ToolPresenceProbe(tool, blocking=blocking))
        if entry.get("min_version"):
            args = entry.get("version_args") or list(DEFAULT_VERSION_ARGS)
            if not isinstance(args, list):
                errors.append(f"{where}.version_args: expected a list")
                continue
            probes.append(
                MinimumVersionProbe(
                    tool,
                    str(entry["min_version"]),
                    version_args=tuple(str(a) for a in args),
                    blocking=blocking,
                )
            )

    for i, entry in enumerate(_entries(gate_config, "credentials", errors)):
        where = f"gate.credentials[{i}]"
        if isinstance(entry, str) and entry.strip():
            probes.append(CredentialProbe(entry))
            continue
        if not isinstance(entry, dict) or not entry.get("env"):
            errors.append(f"{where}: expected a variable name or a mapping with 'env'")
            continue
        blocking = _blocking(entry, where, errors)
        if blocking is not None:
            probes.append(CredentialProbe(str(entry["env"]), blocking=blocking))

    for i, entry in enumerate(_entries(gate_config, "auth", errors)):
        where = f"gate.auth[{i}]"
        if not isinstance(entry, dict) or not str(entry.get("command") or "").strip():
            errors.append(f"{where}: expected a mapping with 'command'")
            continue
        blocking = _blocking(entry, where, errors)
        if blocking is not None:
            command = str(entry["command"])
            probes.append(
                AuthCommandProbe(str(entry.get("name") or command.split()[0]), command, blocking=blocking)
            )

    for i, entry in enumerate(_entries(gate_config, "probes", errors)):
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("command"):
            errors.append(f"gate.probes[{i}]: expected a mapping with 'name' and 'command'")
            continue
        probes.append(CommandProbe(str(entry["name"]), str(entry["command"])))

    sanity = ConfigSanityProbe(errors=tuple(errors), warnings=tuple(config_warnings or ()))
    return PrerequisiteGate([sanity, *probes])
