"""
provisio.schemas - Schema definitions for the provisioning sequencer.

Manifest -> Step -> (probe, action) -> StepResult -> RunReport

Lifecycle:
1. Step: Loaded once per run from a manifest, read-only thereafter
2. RunContext: Immutable per-run variables and environment snapshot
3. StepResult: Terminal outcome of one step, with every attempt's output
4. RunReport: Ordered StepResults plus the overall outcome; owned by the
   Sequencer, immutable once finalized
"""

from .step import (
    ActionDef,
    Criticality,
    ProbeDef,
    RetryPolicy,
    Step,
)
from .context import RunContext
from .report import (
    AttemptOutput,
    FailureKind,
    ProbeResult,
    RunOutcome,
    RunReport,
    SkipReason,
    StepResult,
    StepState,
)

__all__ = [
    # Step
    "ActionDef",
    "Criticality",
    "ProbeDef",
    "RetryPolicy",
    "Step",
    # Context
    "RunContext",
    # Report
    "AttemptOutput",
    "FailureKind",
    "ProbeResult",
    "RunOutcome",
    "RunReport",
    "SkipReason",
    "StepResult",
    "StepState",
]
