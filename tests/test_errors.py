"""Tests for provisio error classes.

Tests cover:
- Error hierarchy (load-time vs action errors)
- Attributes carried by manifest errors
- Output carried by action errors
"""

import pytest

from provisio.errors import (
    ActionCancelledError,
    ActionError,
    ConfigError,
    CycleError,
    DuplicateStepError,
    JournalError,
    ManifestError,
    PermanentError,
    ProbeError,
    ProvisioError,
    ResolutionError,
    StepTimeoutError,
    TransientError,
    UnknownDependencyError,
    WorkerAbandonedError,
)


class TestHierarchy:
    """Tests for the exception taxonomy."""

    @pytest.mark.parametrize("cls", [
        ConfigError, ManifestError, JournalError, ProbeError, ActionError,
        TransientError, PermanentError,
    ])
    def test_all_are_provisio_errors(self, cls):
        """Every error can be caught as ProvisioError."""
        assert issubclass(cls, ProvisioError)

    @pytest.mark.parametrize("cls", [
        CycleError, UnknownDependencyError, DuplicateStepError, ResolutionError,
    ])
    def test_load_time_errors_are_manifest_errors(self, cls):
        """Load-time errors are fatal ManifestErrors."""
        assert issubclass(cls, ManifestError)

    def test_timeout_is_transient(self):
        """A timed-out attempt is retryable."""
        assert issubclass(StepTimeoutError, TransientError)

    def test_cancelled_is_permanent(self):
        """A cancelled action is not retried by itself."""
        assert issubclass(ActionCancelledError, PermanentError)

    def test_abandoned_worker_is_permanent(self):
        """An attempt that would not stop is never retried."""
        assert issubclass(WorkerAbandonedError, PermanentError)
        assert not issubclass(WorkerAbandonedError, TransientError)

    def test_transient_and_permanent_are_disjoint(self):
        """Neither classification is a subclass of the other."""
        assert not issubclass(TransientError, PermanentError)
        assert not issubclass(PermanentError, TransientError)


class TestManifestErrors:
    """Tests for the attributes of load-time errors."""

    def test_cycle_error_names_cycle(self):
        """CycleError message and attribute list the cycle."""
        error = CycleError(["a", "b", "a"])
        assert error.cycle == ("a", "b", "a")
        assert str(error) == "Dependency cycle: a -> b -> a"

    def test_unknown_dependency(self):
        """UnknownDependencyError names the step and the missing dependency."""
        error = UnknownDependencyError("nginx", "packages")
        assert error.step == "nginx"
        assert error.dependency == "packages"
        assert "'packages'" in str(error)

    def test_duplicate_names_sorted_unique(self):
        """DuplicateStepError reports each duplicated name once."""
        error = DuplicateStepError(["b", "a", "b"])
        assert error.names == ("a", "b")


class TestActionError:
    """Tests for output carried by action errors."""

    def test_defaults(self):
        """Output defaults to empty."""
        error = PermanentError("boom")
        assert str(error) == "boom"
        assert error.stdout == ""
        assert error.stderr == ""
        assert error.exit_code is None

    def test_carries_output(self):
        """Captured output travels with the error."""
        error = TransientError("mirror down", stdout="out", stderr="err", exit_code=7)
        assert error.stdout == "out"
        assert error.stderr == "err"
        assert error.exit_code == 7

    def test_can_be_caught_as_action_error(self):
        """Both classifications are ActionErrors."""
        with pytest.raises(ActionError):
            raise StepTimeoutError("slow")
