"""
Idempotency Prober - decide whether a step's effect already holds.

Probes are read-only: they inspect the filesystem, the service manager or the
output of a query command, and never mutate anything. Every run re-evaluates
every probe; nothing is cached across runs.

Results:
- SATISFIED: the effect holds, the step is skipped
- UNSATISFIED: the effect is absent, the action runs
- UNKNOWN: the probe itself failed (permission denied, tool missing,
  timeout); the Sequencer treats this as UNSATISFIED and records the caveat

Built-in probe kinds:
- command: run argv/shell, exit 0 means satisfied
- path_exists: path, optional type (file/dir/any) and executable
- file_contains: path plus literal text or regex pattern
- service_active / service_enabled: systemctl is-active / is-enabled
- call: a registered Python callable
- all: every child probe must be satisfied
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from provisio.errors import ProbeError
from provisio.process import command_argv, command_env, run_command
from provisio.schemas import ProbeDef, ProbeResult, RunContext, Step

logger = logging.getLogger(__name__)

# Probe handler: resolved params + run context -> result (bool accepted)
ProbeFn = Callable[[dict[str, Any], RunContext], "ProbeResult | bool"]

DEFAULT_PROBE_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class ProbeOutcome:
    """
    Result of probing one step.

    Attributes:
        result: SATISFIED, UNSATISFIED or UNKNOWN
        detail: Why (error text for UNKNOWN, empty otherwise)
    """
    result: ProbeResult
    detail: str = ""

    @property
    def degraded(self) -> bool:
        """True when the probe could not determine the state."""
        return self.result == ProbeResult.UNKNOWN


def _as_result(value: Any) -> ProbeResult:
    """Normalize a handler's return value."""
    if isinstance(value, ProbeResult):
        return value
    if isinstance(value, bool):
        return ProbeResult.SATISFIED if value else ProbeResult.UNSATISFIED
    if isinstance(value, str):
        return ProbeResult(value.lower())
    raise ProbeError(f"Probe returned {type(value).__name__}, expected ProbeResult or bool")


def _resolve_path(raw: Any, ctx: RunContext) -> Path:
    if raw is None or raw == "":
        raise ProbeError("Probe requires 'path'")
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = ctx.work_dir / path
    return path


class CommandProbe:
    """Run a query command; exit code 0 means satisfied."""

    def __init__(self, timeout_s: float = DEFAULT_PROBE_TIMEOUT_S):
        self.timeout_s = timeout_s

    def __call__(self, params: dict[str, Any], ctx: RunContext) -> ProbeResult:
        argv = command_argv(params)
        timeout_s = float(params.get("timeout_s", self.timeout_s))
        try:
            result = run_command(
                argv,
                env=command_env(params, ctx.env),
                cwd=str(params.get("cwd", ctx.work_dir)),
                timeout_s=timeout_s,
            )
        except FileNotFoundError as e:
            raise ProbeError(f"Probe command not found: {argv[0]}") from e
        except PermissionError as e:
            raise ProbeError(f"Probe command not executable: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"Probe command timed out after {timeout_s}s") from e
        return ProbeResult.SATISFIED if result.exit_code == 0 else ProbeResult.UNSATISFIED


def path_exists(params: dict[str, Any], ctx: RunContext) -> ProbeResult:
    """Check a path exists, optionally with the right type and exec bit."""
    path = _resolve_path(params.get("path"), ctx)
    kind = params.get("type", "any")
    if kind == "file":
        present = path.is_file()
    elif kind == "dir":
        present = path.is_dir()
    elif kind == "any":
        present = path.exists()
    else:
        raise ProbeError(f"Invalid path type '{kind}'. Valid: file, dir, any")

    if present and params.get("executable"):
        present = os.access(path, os.X_OK)
    return ProbeResult.SATISFIED if present else ProbeResult.UNSATISFIED


def file_contains(params: dict[str, Any], ctx: RunContext) -> ProbeResult:
    """Check a file contains literal text or matches a regex pattern."""
    path = _resolve_path(params.get("path"), ctx)
    text = params.get("text")
    pattern = params.get("pattern")
    if (text is None) == (pattern is None):
        raise ProbeError("file_contains needs exactly one of 'text' or 'pattern'")

    if not path.exists():
        return ProbeResult.UNSATISFIED
    # Unreadable files raise and degrade to UNKNOWN
    content = path.read_text(errors="replace")

    if text is not None:
        found = str(text) in content
    else:
        found = re.search(str(pattern), content, re.MULTILINE) is not None
    return ProbeResult.SATISFIED if found else ProbeResult.UNSATISFIED


class ServiceProbe:
    """Ask systemd whether a unit is active or enabled."""

    def __init__(self, verb: str, timeout_s: float = DEFAULT_PROBE_TIMEOUT_S):
        self.verb = verb
        self.timeout_s = timeout_s

    def __call__(self, params: dict[str, Any], ctx: RunContext) -> ProbeResult:
        unit = params.get("unit")
        if not unit:
            raise ProbeError(f"service probe ({self.verb}) requires 'unit'")
        argv = ["systemctl"]
        if params.get("user"):
            argv.append("--user")
        argv += [self.verb, "--quiet", str(unit)]
        return CommandProbe(self.timeout_s)({"argv": argv}, ctx)


class ProbeRegistry:
    """
    Registry of probe kinds.

    Usage:
        registry = ProbeRegistry.create_default(timeout_s=30)
        registry.register("port_open", my_port_probe)
        registry.register_callable("python_version_ok", check_python)
    """

    def __init__(self) -> None:
        self._probes: dict[str, ProbeFn] = {}
        self._callables: dict[str, Callable[..., Any]] = {}

    def register(self, kind: str, probe: ProbeFn) -> None:
        """Register a probe handler for a kind."""
        self._probes[kind] = probe

    def register_callable(self, name: str, fn: Callable[..., Any]) -> None:
        """Register a Python callable usable as {kind: call, callable: name}."""
        self._callables[name] = fn

    def get(self, kind: str) -> ProbeFn:
        """
        Get the handler for a probe kind.

        Raises:
            KeyError: If no handler is registered for this kind
        """
        if kind not in self._probes:
            raise KeyError(
                f"No probe registered for kind: {kind}. Registered: {self.list_kinds()}"
            )
        return self._probes[kind]

    def has(self, kind: str) -> bool:
        return kind in self._probes or kind == "all"

    def list_kinds(self) -> list[str]:
        return sorted(self._probes)

    def _call(self, params: dict[str, Any], ctx: RunContext) -> Any:
        name = params.get("callable")
        if name not in self._callables:
            raise ProbeError(f"Unknown probe callable: {name}")
        args = {k: v for k, v in params.items() if k != "callable"}
        return self._callables[name](args, ctx)

    @classmethod
    def create_default(cls, timeout_s: float = DEFAULT_PROBE_TIMEOUT_S) -> "ProbeRegistry":
        """
        Create a registry with the built-in probe kinds.

        Args:
            timeout_s: Timeout for command and service probes
        """
        registry = cls()
        registry.register("command", CommandProbe(timeout_s))
        registry.register("path_exists", path_exists)
        registry.register("file_contains", file_contains)
        registry.register("service_active", ServiceProbe("is-active", timeout_s))
        registry.register("service_enabled", ServiceProbe("is-enabled", timeout_s))
        registry.register("call", registry._call)
        return registry


class IdempotencyProber:
    """
    Evaluate a step's probe against the current host state.

    Never raises for probe failures: any exception becomes UNKNOWN with the
    error text as detail.
    """

    def __init__(self, registry: Optional[ProbeRegistry] = None):
        self.registry = registry or ProbeRegistry.create_default()

    def probe(self, step: Step, ctx: RunContext) -> ProbeOutcome:
        """
        Probe a step.

        Args:
            step: The step to probe
            ctx: The run context

        Returns:
            ProbeOutcome (UNSATISFIED when the step defines no probe)
        """
        if step.probe is None:
            return ProbeOutcome(ProbeResult.UNSATISFIED, "no probe defined")

        outcome = self._evaluate(step.probe, ctx)
        logger.debug(
            f"Probe for '{step.name}': {outcome.result.value}",
            extra={"step": step.name, "event": "probe", "metadata": {"detail": outcome.detail}},
        )
        return outcome

    def _evaluate(self, probe: ProbeDef, ctx: RunContext) -> ProbeOutcome:
        if probe.kind == "all":
            return self._evaluate_all(probe, ctx)
        try:
            handler = self.registry.get(probe.kind)
            params = ctx.resolve(dict(probe.params))
            return ProbeOutcome(_as_result(handler(params, ctx)))
        except Exception as e:
            return ProbeOutcome(ProbeResult.UNKNOWN, f"{probe.kind} probe failed: {e}")

    def _evaluate_all(self, probe: ProbeDef, ctx: RunContext) -> ProbeOutcome:
        """UNSATISFIED beats UNKNOWN beats SATISFIED."""
        if not probe.probes:
            return ProbeOutcome(ProbeResult.UNKNOWN, "all probe has no children")
        unknown: list[str] = []
        for child in probe.probes:
            outcome = self._evaluate(child, ctx)
            if outcome.result == ProbeResult.UNSATISFIED:
                return outcome
            if outcome.result == ProbeResult.UNKNOWN:
                unknown.append(outcome.detail)
        if unknown:
            return ProbeOutcome(ProbeResult.UNKNOWN, "; ".join(unknown))
        return ProbeOutcome(ProbeResult.SATISFIED)
