"""
Error classes for provisio.

Load-time errors (ManifestError and subclasses) are fatal: the run never starts.

Action errors enable retry classification at the executor boundary:
- TransientError: Safe to retry (network timeout, rate limiting, mirror hiccups)
- PermanentError: Do not retry (bad input, missing required external tool)

Actions raise these errors to signal retry behavior. The executor catches at
the boundary, classifies anything else, and records every attempt.

Probe errors never propagate out of the prober: a probe that cannot decide
degrades to ProbeResult.UNKNOWN.
"""

from typing import Optional, Sequence


class ProvisioError(Exception):
    """Base exception for provisio."""
    pass


class ConfigError(ProvisioError):
    """Configuration validation error."""
    pass


class JournalError(ProvisioError):
    """Raised when a journaled run report cannot be read."""
    pass


class ManifestError(ProvisioError):
    """Raised when a manifest cannot be loaded or fails validation."""
    pass


class DuplicateStepError(ManifestError):
    """Raised when two steps in a manifest share a name."""

    def __init__(self, names: Sequence[str]):
        self.names = tuple(sorted(set(names)))
        super().__init__(f"Duplicate step names: {', '.join(self.names)}")


class UnknownDependencyError(ManifestError):
    """Raised when a step depends on a name not present in the manifest."""

    def __init__(self, step: str, dependency: str):
        self.step = step
        self.dependency = dependency
        super().__init__(
            f"Step '{step}' depends on unknown step '{dependency}'"
        )


class CycleError(ManifestError):
    """
    Raised when the depends_on graph contains a cycle.

    Attributes:
        cycle: Step names along the cycle, first name repeated at the end
               (e.g. ("a", "b", "a"))
    """

    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class ResolutionError(ManifestError):
    """Raised when an @ctx.* / @env.* reference or condition cannot be resolved."""
    pass


class ProbeError(ProvisioError):
    """Raised by a probe that cannot determine whether its effect holds."""
    pass


class ActionError(ProvisioError):
    """
    Base class for action failures.

    Carries whatever output the action produced before failing so the
    executor can attach it to the step result.
    """

    def __init__(self, message: str, stdout: str = "", stderr: str = "",
                 exit_code: Optional[int] = None):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(message)


class TransientError(ActionError):
    """
    Transient error - safe to retry.

    Examples:
    - Network timeout during a download
    - Rate limit exceeded on a cloud API
    - Package mirror temporarily unavailable
    - Package manager lock held by another process

    The executor retries steps that raise TransientError according to the
    step's retry policy.
    """
    pass


class StepTimeoutError(TransientError):
    """Raised by the executor when an action exceeds its timeout."""
    pass


class PermanentError(ActionError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid input/parameters
    - Required external tool not installed
    - Configuration file rejected by its validator
    - Authorization failed

    The executor fails the step immediately without retry.
    """
    pass


class ActionCancelledError(PermanentError):
    """Raised by an action that stopped in response to cancellation."""
    pass


class WorkerAbandonedError(PermanentError):
    """
    Raised by the executor when a timed-out action ignores cancellation.

    The abandoned action may still be changing host state, so the step is
    not retried.
    """
    pass
