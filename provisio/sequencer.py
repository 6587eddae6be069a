"""
Sequencer - walk a manifest in dependency order and own the RunReport.

Per-step state machine:
    Pending -> (Skipped | Running) -> (Succeeded | Failed)
    Running -> Retrying -> Running   (transient failure, retries left)

Policy, applied to each step in topological order:
1. A dependency failed or was blocked -> Skipped(blocked by failed dependency)
2. The run was aborted by a Required failure -> Skipped(blocked by abort)
3. when condition false -> Skipped(condition not met), nothing probed
4. Probe SATISFIED -> Skipped(already satisfied)
5. Probe UNKNOWN -> treated as UNSATISFIED, result flagged probe_degraded
6. Dry run -> Skipped(dry run), no action executed
7. Otherwise execute; a Required failure aborts the run, a BestEffort
   failure is recorded and the run continues

Overall outcome:
- aborted: a Required step failed
- partial_failure: any step failed or was blocked
- success: everything succeeded or was skipped as success-equivalent
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from provisio.actions import ActionRegistry
from provisio.config import ProvisioConfig
from provisio.executor import Executor
from provisio.probes import IdempotencyProber, ProbeRegistry
from provisio.registry import StepRegistry
from provisio.schemas import (
    FailureKind,
    ProbeResult,
    RunContext,
    RunOutcome,
    RunReport,
    SkipReason,
    Step,
    StepResult,
    StepState,
)

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[Step, StepState, int], None]


def compute_outcome(report: RunReport, registry: StepRegistry) -> RunOutcome:
    """Derive the overall outcome from recorded results."""
    for result in report:
        if result.state == StepState.FAILED and registry.get(result.name).is_required:
            return RunOutcome.ABORTED
    if any(r.blocks_dependents for r in report):
        return RunOutcome.PARTIAL_FAILURE
    return RunOutcome.SUCCESS


class Sequencer:
    """
    Runs a StepRegistry against a RunContext, one step at a time.

    Usage:
        sequencer = Sequencer(IdempotencyProber(), Executor())
        report = sequencer.run(registry, ctx)
    """

    def __init__(
        self,
        prober: Optional[IdempotencyProber] = None,
        executor: Optional[Executor] = None,
        on_transition: Optional[TransitionCallback] = None,
    ):
        self.prober = prober or IdempotencyProber()
        self.executor = executor or Executor()
        self._on_transition = on_transition
        self._states: dict[str, StepState] = {}

    def state_of(self, name: str) -> StepState:
        """Current state of a step in the most recent run."""
        return self._states.get(name, StepState.PENDING)

    def _transition(self, step: Step, state: StepState, attempt: int = 0) -> None:
        self._states[step.name] = state
        if self._on_transition is not None:
            self._on_transition(step, state, attempt)

    def run(self, registry: StepRegistry, ctx: RunContext) -> RunReport:
        """
        Execute a provisioning run.

        Never raises for step failures; they are recorded in the report.

        Args:
            registry: Validated steps
            ctx: Run context (variables, environment, dry_run)

        Returns:
            The finalized RunReport
        """
        report = RunReport(ctx.run_id, manifest_id=registry.manifest_id, dry_run=ctx.dry_run)
        self._states = {name: StepState.PENDING for name in registry.names}
        blocking: set[str] = set()
        aborted_by: Optional[str] = None

        logger.info(
            f"Starting run {ctx.run_id} of '{registry.manifest_id}' "
            f"({len(registry)} steps{', dry run' if ctx.dry_run else ''})",
            extra={"event": "run_started"},
        )

        for step in registry.topological_order():
            failed_deps = [d for d in step.depends_on if d in blocking]
            if failed_deps:
                result = self._skipped(
                    step, SkipReason.BLOCKED_BY_DEPENDENCY,
                    f"dependency did not complete: {', '.join(failed_deps)}",
                )
            elif aborted_by is not None:
                result = self._skipped(
                    step, SkipReason.BLOCKED_BY_ABORT, f"run aborted at '{aborted_by}'"
                )
            else:
                result = self._visit(step, ctx)

            report.record(result)
            self._transition(step, result.state, result.attempts)
            if result.blocks_dependents:
                blocking.add(step.name)
            if result.state == StepState.FAILED and step.is_required and aborted_by is None:
                aborted_by = step.name
                logger.error(
                    f"Required step '{step.name}' failed; aborting run",
                    extra={"step": step.name, "event": "run_aborted"},
                )

        outcome = compute_outcome(report, registry)
        report.finalize(outcome)
        logger.info(
            f"Run {ctx.run_id} finished: {outcome.value}",
            extra={"event": "run_completed", "metadata": report.counts()},
        )
        return report

    def _skipped(self, step: Step, reason: SkipReason, message: str = "",
                 **kwargs: Any) -> StepResult:
        logger.info(
            f"Skipping '{step.name}': {reason.value}",
            extra={"step": step.name, "event": "step_skipped"},
        )
        return StepResult(
            name=step.name,
            state=StepState.SKIPPED,
            criticality=step.criticality,
            skip_reason=reason,
            message=message,
            **kwargs,
        )

    def _visit(self, step: Step, ctx: RunContext) -> StepResult:
        """Condition, probe, then execute a single runnable step."""
        started = time.monotonic()

        if step.when is not None:
            try:
                should_run = ctx.evaluate(step.when)
            except Exception as e:
                logger.error(
                    f"Condition for '{step.name}' could not be evaluated: {e}",
                    extra={"step": step.name, "event": "condition_error"},
                )
                return StepResult(
                    name=step.name,
                    state=StepState.FAILED,
                    criticality=step.criticality,
                    duration_s=time.monotonic() - started,
                    message=f"condition error: {e}",
                    failure_kind=FailureKind.PERMANENT,
                )
            if not should_run:
                return self._skipped(
                    step, SkipReason.CONDITION_FALSE, step.when,
                    duration_s=time.monotonic() - started,
                )

        probe = self.prober.probe(step, ctx)
        if probe.result == ProbeResult.SATISFIED:
            return self._skipped(
                step, SkipReason.ALREADY_SATISFIED,
                probe=probe.result, duration_s=time.monotonic() - started,
            )
        if probe.degraded:
            logger.warning(
                f"Probe for '{step.name}' could not determine state, assuming unsatisfied: "
                f"{probe.detail}",
                extra={"step": step.name, "event": "probe_degraded"},
            )

        caveat = f" (probe degraded: {probe.detail})" if probe.degraded else ""

        if ctx.dry_run:
            return self._skipped(
                step, SkipReason.DRY_RUN, f"would run{caveat}",
                probe=probe.result, probe_degraded=probe.degraded,
                duration_s=time.monotonic() - started,
            )

        logger.info(
            f"Running '{step.name}'",
            extra={"step": step.name, "event": "step_started"},
        )
        outcome = self.executor.execute(step, ctx, on_transition=self._on_attempt)
        duration = time.monotonic() - started

        if outcome.success:
            logger.info(
                f"Step '{step.name}' succeeded after {outcome.attempts} attempt(s)",
                extra={"step": step.name, "event": "step_succeeded"},
            )
            return StepResult(
                name=step.name,
                state=StepState.SUCCEEDED,
                criticality=step.criticality,
                attempts=outcome.attempts,
                duration_s=duration,
                message=f"probe degraded: {probe.detail}" if probe.degraded else "",
                probe=probe.result,
                probe_degraded=probe.degraded,
                outputs=outcome.outputs,
            )

        log = logger.error if step.is_required else logger.warning
        log(
            f"Step '{step.name}' failed ({step.criticality.value}): {outcome.message}",
            extra={"step": step.name, "event": "step_failed"},
        )
        return StepResult(
            name=step.name,
            state=StepState.FAILED,
            criticality=step.criticality,
            attempts=outcome.attempts,
            duration_s=duration,
            message=outcome.message + caveat,
            probe=probe.result,
            probe_degraded=probe.degraded,
            failure_kind=outcome.failure_kind,
            outputs=outcome.outputs,
        )

    def _on_attempt(self, step: Step, state: StepState, attempt: int) -> None:
        self._transition(step, state, attempt)


def provision(
    manifest: Mapping[str, Any] | str | Path,
    variables: Optional[Mapping[str, Any]] = None,
    dry_run: bool = False,
    config: Optional[ProvisioConfig] = None,
    probes: Optional[ProbeRegistry] = None,
    actions: Optional[ActionRegistry] = None,
    env: Optional[Mapping[str, str]] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_transition: Optional[TransitionCallback] = None,
) -> RunReport:
    """
    Load a manifest and run it.

    Args:
        manifest: Mapping, manifest file path, or bundled manifest name
        variables: Overrides layered over the manifest's vars
        dry_run: Probe only
        config: Operator configuration (defaults if None)
        probes: Probe registry (built-in kinds if None)
        actions: Action registry (built-in kinds if None)
        env: Environment snapshot (os.environ if None)
        sleep: Backoff sleep function
        on_transition: Notified on every step state change

    Returns:
        The finalized RunReport

    Raises:
        ManifestError: If the manifest cannot be loaded (nothing runs)
    """
    config = config or ProvisioConfig()
    registry = StepRegistry.load(manifest)
    ctx = RunContext.create(
        variables={**registry.variables, **(variables or {})},
        env=env,
        dry_run=dry_run,
    )
    prober = IdempotencyProber(probes or ProbeRegistry.create_default(config.probe_timeout_s))
    executor = Executor(
        actions=actions,
        default_timeout_s=config.default_timeout_s,
        grace_period_s=config.grace_period_s,
        max_backoff_s=config.max_backoff_s,
        sleep=sleep,
    )
    return Sequencer(prober, executor, on_transition=on_transition).run(registry, ctx)
