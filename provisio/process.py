"""
Subprocess helpers shared by command probes and command actions.

A command is given either as an argv list (no shell) or as a shell string
run with "bash -c" (pipelines, redirects, globbing).
"""

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from provisio.errors import ActionCancelledError, PermanentError

# How often a running command checks for cancellation
POLL_INTERVAL_S = 0.1

# How long to wait for output after SIGKILL
_REAP_TIMEOUT_S = 5.0


class CancelToken:
    """
    Cooperative cancellation signal handed to running actions.

    The executor sets the token when an action exceeds its timeout. Actions
    check cancelled between units of work; command actions terminate their
    process group, wait grace_period_s, then kill it.
    """

    def __init__(self, grace_period_s: float = 10.0):
        self.grace_period_s = grace_period_s
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass(frozen=True)
class CommandResult:
    """Exit code and captured output of a finished command."""
    exit_code: int
    stdout: str
    stderr: str


def command_argv(params: Mapping[str, Any]) -> list[str]:
    """
    Build the argv for a command definition.

    Args:
        params: Resolved parameters with either "argv" (list) or "shell" (str)

    Raises:
        PermanentError: If neither or both are given
    """
    argv = params.get("argv")
    shell = params.get("shell")
    if (argv is None) == (shell is None):
        raise PermanentError("Command needs exactly one of 'argv' or 'shell'")
    if shell is not None:
        return ["bash", "-c", str(shell)]
    if isinstance(argv, str) or not argv:
        raise PermanentError(f"'argv' must be a non-empty list, got {argv!r}")
    return [str(a) for a in argv]


def command_env(params: Mapping[str, Any], base_env: Mapping[str, str]) -> dict[str, str]:
    """Environment for a command: the run's snapshot plus per-command overrides."""
    env = dict(base_env)
    env.update({str(k): str(v) for k, v in (params.get("env") or {}).items()})
    return env


def run_command(
    argv: list[str],
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    timeout_s: Optional[float] = None,
) -> CommandResult:
    """
    Run a short command to completion (used by probes).

    Raises:
        FileNotFoundError: If the executable does not exist
        PermissionError: If the executable cannot be run
        subprocess.TimeoutExpired: If timeout_s elapses
    """
    completed = subprocess.run(
        argv,
        capture_output=True,
        text=True,
        check=False,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        timeout=timeout_s,
        stdin=subprocess.DEVNULL,
    )
    return CommandResult(completed.returncode, completed.stdout, completed.stderr)


def run_cancellable(
    argv: list[str],
    cancel: CancelToken,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    input_text: Optional[str] = None,
) -> CommandResult:
    """
    Run a command until it exits or the cancel token is set.

    The command runs in its own session so cancellation reaches every process
    it spawned. On cancellation: SIGTERM to the group, wait the grace period,
    then SIGKILL.

    Raises:
        FileNotFoundError: If the executable does not exist
        ActionCancelledError: If cancelled (carries partial output)
    """
    proc = subprocess.Popen(
        argv,
        stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        start_new_session=True,
    )
    pending_input = input_text
    while True:
        try:
            stdout, stderr = proc.communicate(input=pending_input, timeout=POLL_INTERVAL_S)
            return CommandResult(proc.returncode, stdout or "", stderr or "")
        except subprocess.TimeoutExpired:
            # Input is delivered on the first call only
            pending_input = None
            if cancel.cancelled:
                stdout, stderr = _terminate(proc, cancel.grace_period_s)
                raise ActionCancelledError(
                    f"Command cancelled: {' '.join(argv)}",
                    stdout=stdout,
                    stderr=stderr,
                    exit_code=proc.returncode,
                )


def _terminate(proc: subprocess.Popen, grace_period_s: float) -> tuple[str, str]:
    """SIGTERM the process group, escalate to SIGKILL after the grace period."""
    _signal_group(proc, signal.SIGTERM)
    try:
        stdout, stderr = proc.communicate(timeout=grace_period_s)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        try:
            stdout, stderr = proc.communicate(timeout=_REAP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
    return stdout or "", stderr or ""


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except ProcessLookupError:
        # Already exited
        pass
