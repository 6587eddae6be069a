"""
Actions - the fallible operations a step performs when its probe says the
effect is absent.

Every action handler has the signature (params, ctx, cancel) -> ActionOutput.
Params arrive with @ctx.* / @env.* references already resolved. Handlers
signal failure by raising:
- TransientError: the executor may retry
- PermanentError: the executor fails the step immediately
Anything else raised is classified at the executor boundary.

Built-in action kinds:
- command: run argv/shell; exit codes listed in transient_exit_codes raise
  TransientError, any other non-zero exit raises PermanentError
- write_file: write content atomically, optional mode
- ensure_dir: create a directory (and parents), optional mode
- call: a registered Python callable
- sequence: ordered sub-actions, stops at the first failure
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from provisio.errors import ActionCancelledError, ActionError, PermanentError, TransientError
from provisio.process import CancelToken, command_argv, command_env, run_cancellable
from provisio.schemas import ActionDef, RunContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionOutput:
    """Captured output of a successful action."""
    stdout: str = ""
    stderr: str = ""


# Action handler: resolved params + run context + cancel token -> output
ActionFn = Callable[[dict[str, Any], RunContext, CancelToken], ActionOutput]


def _resolve_path(raw: Any, ctx: RunContext) -> Path:
    if raw is None or raw == "":
        raise PermanentError("Action requires 'path'")
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = ctx.work_dir / path
    return path


def _parse_mode(raw: Any) -> int | None:
    """Accept 0o644, 420 or "0644"."""
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw), 8)
    except ValueError:
        raise PermanentError(f"Invalid file mode: {raw!r}")


def command(params: dict[str, Any], ctx: RunContext, cancel: CancelToken) -> ActionOutput:
    """Run an external command."""
    argv = command_argv(params)
    transient_codes = {int(c) for c in params.get("transient_exit_codes", [])}
    input_text = params.get("input")
    try:
        result = run_cancellable(
            argv,
            cancel,
            env=command_env(params, ctx.env),
            cwd=str(params.get("cwd", ctx.work_dir)),
            input_text=str(input_text) if input_text is not None else None,
        )
    except FileNotFoundError as e:
        raise PermanentError(f"Command not found: {argv[0]}") from e
    except PermissionError as e:
        raise PermanentError(f"Command not executable: {argv[0]}") from e

    if result.exit_code == 0:
        return ActionOutput(result.stdout, result.stderr)

    error_cls = TransientError if result.exit_code in transient_codes else PermanentError
    raise error_cls(
        f"Command exited with code {result.exit_code}: {' '.join(argv)}",
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
    )


def write_file(params: dict[str, Any], ctx: RunContext, cancel: CancelToken) -> ActionOutput:
    """
    Write content to a file atomically.

    The content goes to a temporary file in the target directory, which then
    replaces the target, so a cancelled or failed write never leaves a
    truncated file behind.
    """
    path = _resolve_path(params.get("path"), ctx)
    content = params.get("content")
    if content is None:
        raise PermanentError("write_file requires 'content'")
    mode = _parse_mode(params.get("mode"))

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(str(content))
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return ActionOutput(stdout=f"Wrote {path}")


def ensure_dir(params: dict[str, Any], ctx: RunContext, cancel: CancelToken) -> ActionOutput:
    """Create a directory and its parents."""
    path = _resolve_path(params.get("path"), ctx)
    mode = _parse_mode(params.get("mode"))
    path.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        os.chmod(path, mode)
    return ActionOutput(stdout=f"Ensured {path}")


class ActionRegistry:
    """
    Registry of action kinds.

    The sequence kind is handled natively by run() and never goes through
    the registry.

    Usage:
        registry = ActionRegistry.create_default()
        registry.register_callable("render_nginx_site", render_site)
        output = registry.run(step.action, ctx, CancelToken())
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionFn] = {}
        self._callables: dict[str, Callable[..., Any]] = {}

    def register(self, kind: str, action: ActionFn) -> None:
        """Register an action handler for a kind."""
        self._actions[kind] = action

    def register_callable(self, name: str, fn: Callable[..., Any]) -> None:
        """
        Register a Python callable usable as {kind: call, callable: name}.

        The callable receives (params, ctx, cancel) and should return soon
        after cancel.cancelled becomes True. It may return an ActionOutput,
        a string (recorded as stdout) or None.
        """
        self._callables[name] = fn

    def get(self, kind: str) -> ActionFn:
        """
        Get the handler for an action kind.

        Raises:
            KeyError: If no handler is registered for this kind
        """
        if kind not in self._actions:
            raise KeyError(
                f"No action registered for kind: {kind}. Registered: {self.list_kinds()}"
            )
        return self._actions[kind]

    def has(self, kind: str) -> bool:
        return kind in self._actions or kind == "sequence"

    def list_kinds(self) -> list[str]:
        return sorted(self._actions)

    def run(self, action: ActionDef, ctx: RunContext, cancel: CancelToken) -> ActionOutput:
        """
        Run an action definition.

        Raises:
            PermanentError: If the kind is unknown
            ActionError: Whatever the handler raises, classified or not
        """
        if action.kind == "sequence":
            return self._run_sequence(action, ctx, cancel)
        try:
            handler = self.get(action.kind)
        except KeyError as e:
            raise PermanentError(str(e.args[0])) from e
        params = ctx.resolve(dict(action.params))
        return handler(params, ctx, cancel)

    def _run_sequence(self, action: ActionDef, ctx: RunContext,
                      cancel: CancelToken) -> ActionOutput:
        stdout: list[str] = []
        stderr: list[str] = []
        for i, sub in enumerate(action.actions, 1):
            if cancel.cancelled:
                raise ActionCancelledError(
                    f"Cancelled before sub-action {i} of {len(action.actions)}",
                    stdout="".join(stdout),
                    stderr="".join(stderr),
                )
            try:
                output = self.run(sub, ctx, cancel)
            except ActionError as e:
                # Keep what earlier sub-actions printed
                raise type(e)(
                    f"Sub-action {i} ({sub.kind}) failed: {e}",
                    stdout="".join(stdout) + e.stdout,
                    stderr="".join(stderr) + e.stderr,
                    exit_code=e.exit_code,
                ) from e
            stdout.append(output.stdout)
            stderr.append(output.stderr)
        return ActionOutput("".join(stdout), "".join(stderr))

    def _call(self, params: dict[str, Any], ctx: RunContext, cancel: CancelToken) -> ActionOutput:
        name = params.get("callable")
        if name not in self._callables:
            raise PermanentError(f"Unknown action callable: {name}")
        args = {k: v for k, v in params.items() if k != "callable"}
        result = self._callables[name](args, ctx, cancel)
        if isinstance(result, ActionOutput):
            return result
        return ActionOutput(stdout="" if result is None else str(result))

    @classmethod
    def create_default(cls) -> "ActionRegistry":
        """Create a registry with the built-in action kinds."""
        registry = cls()
        registry.register("command", command)
        registry.register("write_file", write_file)
        registry.register("ensure_dir", ensure_dir)
        registry.register("call", registry._call)
        return registry
