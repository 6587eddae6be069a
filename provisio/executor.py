"""
Executor - run a step's action under a timeout, with bounded retries.

The Executor implements:
- Timeout enforcement: each attempt runs in a worker thread; on expiry the
  executor sets the attempt's CancelToken, waits the grace period, and
  abandons a worker that still has not stopped; an abandoned attempt is a
  Permanent failure and is never retried
- Failure classification at the boundary (Transient vs Permanent)
- Retry with capped exponential backoff for transient failures; exhausted
  retries escalate to Permanent
- Output capture: every attempt's stdout/stderr/error is kept, on success too

Execution flow for one step:
1. Attempt n: notify RUNNING, run the action in a worker thread
2. Success -> ExecutionOutcome(success=True)
3. Permanent failure -> ExecutionOutcome(success=False) immediately
4. Transient failure with retries left -> notify RETRYING, sleep
   min(backoff_s * 2**(n-1), max_backoff_s), go to 1
5. Transient failure with no retries left -> Permanent
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from provisio.actions import ActionOutput, ActionRegistry
from provisio.errors import (
    ActionError,
    PermanentError,
    StepTimeoutError,
    TransientError,
    WorkerAbandonedError,
)
from provisio.process import CancelToken
from provisio.schemas import AttemptOutput, FailureKind, RunContext, Step, StepState
from provisio.utils import truncate

logger = logging.getLogger(__name__)

# Extra time allowed after the grace period before a worker is abandoned
ABANDON_SLACK_S = 5.0

# Called as on_transition(step, state, attempt)
TransitionCallback = Callable[[Step, StepState, int], None]


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Classify an exception raised by an action.

    TransientError, ConnectionError and TimeoutError are retryable. Everything
    else (PermanentError, ResolutionError, a missing tool, unexpected bugs)
    is permanent.
    """
    if isinstance(exc, (TransientError, ConnectionError, TimeoutError)):
        return FailureKind.TRANSIENT
    return FailureKind.PERMANENT


@dataclass(frozen=True)
class ExecutionOutcome:
    """
    Result of executing one step (all attempts).

    Attributes:
        success: True if some attempt succeeded
        attempts: Number of attempts made
        outputs: Captured output of every attempt
        failure_kind: Final classification when success is False
        message: Final error message, empty on success
        duration_s: Total time including backoff
    """
    success: bool
    attempts: int
    outputs: tuple[AttemptOutput, ...] = field(default_factory=tuple)
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    duration_s: float = 0.0


class Executor:
    """
    Runs step actions with timeout, classification and retries.

    Usage:
        executor = Executor(default_timeout_s=600)
        outcome = executor.execute(step, ctx)
    """

    def __init__(
        self,
        actions: Optional[ActionRegistry] = None,
        default_timeout_s: Optional[float] = 600.0,
        grace_period_s: float = 10.0,
        max_backoff_s: Optional[float] = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            actions: Action registry (defaults to the built-in kinds)
            default_timeout_s: Per-attempt timeout for steps without timeout_s
                               (None = no timeout)
            grace_period_s: Time an action gets to stop after cancellation
            max_backoff_s: Cap on the delay between retries
            sleep: Sleep function (injectable for tests)
        """
        self.actions = actions or ActionRegistry.create_default()
        self.default_timeout_s = default_timeout_s
        self.grace_period_s = grace_period_s
        self.max_backoff_s = max_backoff_s
        self._sleep = sleep

    def execute(
        self,
        step: Step,
        ctx: RunContext,
        on_transition: Optional[TransitionCallback] = None,
    ) -> ExecutionOutcome:
        """
        Execute a step's action, retrying transient failures.

        Never raises for action failures; they are returned in the outcome.

        Args:
            step: The step to execute
            ctx: The run context
            on_transition: Notified on RUNNING (each attempt) and RETRYING

        Returns:
            ExecutionOutcome with every attempt's output
        """
        notify = on_transition or (lambda *_: None)
        started = time.monotonic()
        outputs: list[AttemptOutput] = []
        max_attempts = step.retry.max_attempts

        for attempt_n in range(1, max_attempts + 1):
            notify(step, StepState.RUNNING, attempt_n)
            attempt_started = time.monotonic()
            try:
                output = self._run_attempt(step, ctx, attempt_n)
            except Exception as e:
                kind = classify_failure(e)
                outputs.append(AttemptOutput(
                    attempt=attempt_n,
                    stdout=e.stdout if isinstance(e, ActionError) else "",
                    stderr=e.stderr if isinstance(e, ActionError) else "",
                    error=f"{type(e).__name__}: {e}",
                    failure_kind=kind,
                    duration_s=time.monotonic() - attempt_started,
                ))

                if kind == FailureKind.PERMANENT:
                    logger.error(
                        f"Step '{step.name}' failed permanently on attempt {attempt_n}: {e}",
                        extra={"step": step.name, "event": "attempt_failed"},
                    )
                    return self._failed(outputs, str(e), started)

                if attempt_n >= max_attempts:
                    logger.error(
                        f"Step '{step.name}' exhausted {max_attempts} attempt(s): {e}",
                        extra={"step": step.name, "event": "retries_exhausted"},
                    )
                    message = f"Retries exhausted after {attempt_n} attempt(s): {e}"
                    return self._failed(outputs, message, started)

                delay = step.retry.delay_for(attempt_n, cap_s=self.max_backoff_s)
                logger.warning(
                    f"Step '{step.name}' attempt {attempt_n}/{max_attempts} failed "
                    f"(transient): {e}. Retrying in {delay:.1f}s",
                    extra={"step": step.name, "event": "retrying",
                           "metadata": {"attempt": attempt_n, "delay_s": delay}},
                )
                notify(step, StepState.RETRYING, attempt_n)
                self._sleep(delay)
                continue

            outputs.append(AttemptOutput(
                attempt=attempt_n,
                stdout=output.stdout,
                stderr=output.stderr,
                duration_s=time.monotonic() - attempt_started,
            ))
            return ExecutionOutcome(
                success=True,
                attempts=attempt_n,
                outputs=tuple(outputs),
                duration_s=time.monotonic() - started,
            )

        # max_attempts is always >= 1
        raise AssertionError("unreachable")

    def _failed(self, outputs: list[AttemptOutput], message: str, started: float) -> ExecutionOutcome:
        return ExecutionOutcome(
            success=False,
            attempts=len(outputs),
            outputs=tuple(outputs),
            failure_kind=FailureKind.PERMANENT,
            message=truncate(message, 500),
            duration_s=time.monotonic() - started,
        )

    def _run_attempt(self, step: Step, ctx: RunContext, attempt_n: int) -> ActionOutput:
        """
        Run one attempt in a worker thread, enforcing the timeout.

        Raises:
            StepTimeoutError: If the attempt exceeded its timeout
            Exception: Whatever the action raised
        """
        timeout_s = step.timeout_s if step.timeout_s is not None else self.default_timeout_s
        cancel = CancelToken(self.grace_period_s)
        box: dict[str, Any] = {}

        def target() -> None:
            try:
                box["output"] = self.actions.run(step.action, ctx, cancel)
            except BaseException as e:
                box["error"] = e

        worker = threading.Thread(
            target=target, name=f"provisio-{step.name}-{attempt_n}", daemon=True
        )
        worker.start()
        worker.join(timeout_s)

        if worker.is_alive():
            logger.warning(
                f"Step '{step.name}' timed out after {timeout_s}s, cancelling",
                extra={"step": step.name, "event": "timeout"},
            )
            cancel.cancel()
            worker.join(self.grace_period_s + ABANDON_SLACK_S)
            if worker.is_alive():
                logger.error(
                    f"Step '{step.name}' did not stop after cancellation; abandoning worker",
                    extra={"step": step.name, "event": "worker_abandoned"},
                )
                # The action may still be running; another attempt would race it
                raise WorkerAbandonedError(
                    f"Timed out after {timeout_s}s and did not stop within the "
                    f"grace period; worker abandoned, not retried"
                )
            partial = box.get("error")
            raise StepTimeoutError(
                f"Timed out after {timeout_s}s",
                stdout=getattr(partial, "stdout", ""),
                stderr=getattr(partial, "stderr", ""),
            )

        if "error" in box:
            raise box["error"]
        output = box.get("output")
        if not isinstance(output, ActionOutput):
            raise PermanentError(
                f"Action '{step.action.kind}' returned {type(output).__name__}, "
                "expected ActionOutput"
            )
        return output
