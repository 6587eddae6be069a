"""
Report schemas - step results and the per-run report.

StepResult records the terminal outcome of one step, including every
attempt's captured output. RunReport accumulates StepResults in visit order;
it is created at the start of a run, mutated only by the Sequencer, and
immutable once finalized.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional

from .step import Criticality


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ProbeResult(str, Enum):
    """Result of an idempotency probe."""
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    UNKNOWN = "unknown"


class StepState(str, Enum):
    """
    State of a step within a run.

    Pending -> (Skipped | Running) -> (Succeeded | Failed)
    Running -> Retrying -> Running on transient failure
    """
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepState.SKIPPED, StepState.SUCCEEDED, StepState.FAILED)


class SkipReason(str, Enum):
    """Why a step ended in the SKIPPED state."""
    ALREADY_SATISFIED = "already satisfied"
    CONDITION_FALSE = "condition not met"
    DRY_RUN = "dry run"
    BLOCKED_BY_DEPENDENCY = "blocked by failed dependency"
    BLOCKED_BY_ABORT = "blocked by abort"

    @property
    def blocks_dependents(self) -> bool:
        """Blocked skips propagate; the others are success-equivalent."""
        return self in (SkipReason.BLOCKED_BY_DEPENDENCY, SkipReason.BLOCKED_BY_ABORT)


class FailureKind(str, Enum):
    """Classification of an action failure."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RunOutcome(str, Enum):
    """Overall outcome of a run."""
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"


@dataclass(frozen=True)
class AttemptOutput:
    """
    Captured output of a single action attempt.

    Attributes:
        attempt: Attempt number (1-indexed)
        stdout: Captured standard output
        stderr: Captured standard error
        error: Error message if the attempt failed
        failure_kind: Classification if the attempt failed
        duration_s: Wall-clock duration of the attempt
    """
    attempt: int
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    duration_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "attempt": self.attempt,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_s": round(self.duration_s, 3),
        }
        if self.error is not None:
            result["error"] = self.error
        if self.failure_kind is not None:
            result["failure_kind"] = self.failure_kind.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AttemptOutput":
        return cls(
            attempt=data["attempt"],
            stdout=data.get("stdout", ""),
            stderr=data.get("stderr", ""),
            error=data.get("error"),
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            duration_s=data.get("duration_s", 0.0),
        )


@dataclass(frozen=True)
class StepResult:
    """
    The terminal outcome of one step.

    Attributes:
        name: Step name
        state: Terminal state (skipped, succeeded, failed)
        criticality: The step's criticality
        attempts: Number of action attempts made (0 if never executed)
        duration_s: Time spent on the step (probe + attempts + backoff)
        message: Human-readable reason or error
        skip_reason: Why the step was skipped (skipped steps only)
        probe: Probe result, if the step was probed
        probe_degraded: True when the probe returned UNKNOWN and the step was
                        executed on the assumption that it was unsatisfied
        failure_kind: Final failure classification (failed steps only)
        outputs: Captured output of every attempt
    """
    name: str
    state: StepState
    criticality: Criticality = Criticality.REQUIRED
    attempts: int = 0
    duration_s: float = 0.0
    message: str = ""
    skip_reason: Optional[SkipReason] = None
    probe: Optional[ProbeResult] = None
    probe_degraded: bool = False
    failure_kind: Optional[FailureKind] = None
    outputs: tuple[AttemptOutput, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.state.is_terminal:
            raise ValueError(f"StepResult must be terminal, got '{self.state.value}'")
        if self.state == StepState.SKIPPED and self.skip_reason is None:
            raise ValueError("Skipped results must have a skip_reason")
        if self.state != StepState.SKIPPED and self.skip_reason is not None:
            raise ValueError("Only skipped results may have a skip_reason")

    @property
    def blocks_dependents(self) -> bool:
        if self.state == StepState.FAILED:
            return True
        if self.state == StepState.SKIPPED:
            return self.skip_reason.blocks_dependents
        return False

    @property
    def reason(self) -> str:
        """The one-line reason shown by the reporter."""
        if self.skip_reason is not None:
            if self.message and self.message != self.skip_reason.value:
                return f"{self.skip_reason.value}: {self.message}"
            return self.skip_reason.value
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "name": self.name,
            "state": self.state.value,
            "criticality": self.criticality.value,
            "attempts": self.attempts,
            "duration_s": round(self.duration_s, 3),
            "message": self.message,
            "probe_degraded": self.probe_degraded,
            "outputs": [o.to_dict() for o in self.outputs],
        }
        if self.skip_reason is not None:
            result["skip_reason"] = self.skip_reason.value
        if self.probe is not None:
            result["probe"] = self.probe.value
        if self.failure_kind is not None:
            result["failure_kind"] = self.failure_kind.value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            state=StepState(data["state"]),
            criticality=Criticality(data.get("criticality", "required")),
            attempts=data.get("attempts", 0),
            duration_s=data.get("duration_s", 0.0),
            message=data.get("message", ""),
            skip_reason=SkipReason(data["skip_reason"]) if data.get("skip_reason") else None,
            probe=ProbeResult(data["probe"]) if data.get("probe") else None,
            probe_degraded=data.get("probe_degraded", False),
            failure_kind=FailureKind(data["failure_kind"]) if data.get("failure_kind") else None,
            outputs=tuple(AttemptOutput.from_dict(o) for o in data.get("outputs", [])),
        )


class RunReport:
    """
    The accumulated per-step outcome record for one provisioning run.

    Owned by the Sequencer: record() and finalize() are the only mutators,
    and both raise once the report has been finalized.
    """

    def __init__(
        self,
        run_id: str,
        manifest_id: str = "",
        dry_run: bool = False,
        started_at: Optional[datetime] = None,
    ):
        self.run_id = run_id
        self.manifest_id = manifest_id
        self.dry_run = dry_run
        self.started_at = started_at or _utcnow()
        self._completed_at: Optional[datetime] = None
        self._outcome: Optional[RunOutcome] = None
        self._results: list[StepResult] = []
        self._index: dict[str, StepResult] = {}

    @property
    def results(self) -> tuple[StepResult, ...]:
        return tuple(self._results)

    @property
    def outcome(self) -> Optional[RunOutcome]:
        """Overall outcome (None until finalized)."""
        return self._outcome

    @property
    def completed_at(self) -> Optional[datetime]:
        return self._completed_at

    @property
    def is_final(self) -> bool:
        return self._outcome is not None

    @property
    def duration_s(self) -> Optional[float]:
        if self._completed_at is None:
            return None
        return (self._completed_at - self.started_at).total_seconds()

    def record(self, result: StepResult) -> None:
        """
        Append a step result.

        Raises:
            RuntimeError: If the report is final or the step was already recorded
        """
        if self.is_final:
            raise RuntimeError(f"RunReport {self.run_id} is final and cannot be modified")
        if result.name in self._index:
            raise RuntimeError(f"Step '{result.name}' already recorded in run {self.run_id}")
        self._results.append(result)
        self._index[result.name] = result

    def finalize(self, outcome: RunOutcome, completed_at: Optional[datetime] = None) -> None:
        """Freeze the report with its overall outcome."""
        if self.is_final:
            raise RuntimeError(f"RunReport {self.run_id} is already final")
        self._outcome = outcome
        self._completed_at = completed_at or _utcnow()

    def get(self, name: str) -> Optional[StepResult]:
        """Get the result for a specific step."""
        return self._index.get(name)

    def with_state(self, state: StepState) -> tuple[StepResult, ...]:
        return tuple(r for r in self._results if r.state == state)

    def counts(self) -> dict[str, int]:
        """Number of results per terminal state."""
        counts = {s.value: 0 for s in (StepState.SUCCEEDED, StepState.SKIPPED, StepState.FAILED)}
        for r in self._results:
            counts[r.state.value] += 1
        return counts

    def __iter__(self) -> Iterator[StepResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self._results)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "run_id": self.run_id,
            "manifest_id": self.manifest_id,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "results": [r.to_dict() for r in self._results],
        }
        if self._outcome is not None:
            result["outcome"] = self._outcome.value
        if self._completed_at is not None:
            result["completed_at"] = self._completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunReport":
        """Deserialize from dictionary (finalized if an outcome is present)."""
        report = cls(
            run_id=data["run_id"],
            manifest_id=data.get("manifest_id", ""),
            dry_run=data.get("dry_run", False),
            started_at=datetime.fromisoformat(data["started_at"]),
        )
        for r in data.get("results", []):
            report.record(StepResult.from_dict(r))
        if data.get("outcome"):
            completed_at = data.get("completed_at")
            report.finalize(
                RunOutcome(data["outcome"]),
                completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
            )
        return report

    def __repr__(self) -> str:
        outcome = self._outcome.value if self._outcome else "running"
        return f"RunReport(run_id={self.run_id}, steps={len(self._results)}, outcome={outcome})"
