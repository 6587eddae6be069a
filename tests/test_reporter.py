"""Tests for the Reporter."""

import pytest

from provisio.reporter import (
    EXIT_ABORTED,
    EXIT_PARTIAL_FAILURE,
    EXIT_SUCCESS,
    exit_code,
    print_report,
    render,
)
from provisio.schemas import (
    AttemptOutput,
    Criticality,
    FailureKind,
    ProbeResult,
    RunOutcome,
    RunReport,
    SkipReason,
    StepResult,
    StepState,
)


def _report(*results, outcome=RunOutcome.SUCCESS, dry_run=False):
    report = RunReport("01TESTRUN", manifest_id="dev-vm", dry_run=dry_run)
    for result in results:
        report.record(result)
    if outcome is not None:
        report.finalize(outcome)
    return report


@pytest.fixture
def mixed_report():
    """The report of an aborted run with a retried download and a blocked step."""
    return _report(
        StepResult("packages", StepState.SKIPPED, skip_reason=SkipReason.ALREADY_SATISFIED,
                   probe=ProbeResult.SATISFIED, duration_s=0.2),
        StepResult(
            "download", StepState.SUCCEEDED, attempts=2, duration_s=12.5,
            outputs=(
                AttemptOutput(1, stderr="curl: (28) timed out\n", error="TransientError: timeout",
                              failure_kind=FailureKind.TRANSIENT),
                AttemptOutput(2, stdout="saved\n"),
            ),
        ),
        StepResult(
            "config", StepState.FAILED, attempts=1, message="Command exited 1",
            failure_kind=FailureKind.PERMANENT,
            outputs=(AttemptOutput(1, stderr="permission denied\n",
                                   error="PermanentError: Command exited 1",
                                   failure_kind=FailureKind.PERMANENT),),
        ),
        StepResult("service", StepState.SKIPPED, skip_reason=SkipReason.BLOCKED_BY_DEPENDENCY,
                   message="dependency did not complete: config"),
        outcome=RunOutcome.ABORTED,
    )


class TestExitCode:
    """Tests for exit_code()."""

    @pytest.mark.parametrize("outcome,code", [
        (RunOutcome.SUCCESS, EXIT_SUCCESS),
        (RunOutcome.PARTIAL_FAILURE, EXIT_PARTIAL_FAILURE),
        (RunOutcome.ABORTED, EXIT_ABORTED),
    ])
    def test_codes(self, outcome, code):
        assert exit_code(_report(outcome=outcome)) == code

    def test_distinct(self):
        assert len({EXIT_SUCCESS, EXIT_PARTIAL_FAILURE, EXIT_ABORTED}) == 3

    def test_not_final(self):
        with pytest.raises(ValueError, match="no outcome"):
            exit_code(_report(outcome=None))


class TestRender:
    """Tests for render()."""

    def test_one_line_per_step(self, mixed_report):
        lines = render(mixed_report).splitlines()
        assert lines[0] == "Run 01TESTRUN (dev-vm)"
        assert lines[1].startswith("SKIP  packages")
        assert lines[1].endswith("- already satisfied")
        assert "OK    download  attempts=2  12s" in lines[2]

    def test_failed_step_shows_reason_and_output(self, mixed_report):
        text = render(mixed_report)
        assert "FAIL  config  attempts=1" in text
        assert "- Command exited 1" in text
        assert "--- config attempt 1 ---" in text
        assert "      permission denied" in text
        # Successful steps' output only appears when verbose
        assert "curl: (28)" not in text

    def test_blocked_reason(self, mixed_report):
        assert "blocked by failed dependency: dependency did not complete: config" in render(
            mixed_report
        )

    def test_verdict(self, mixed_report):
        last = render(mixed_report).splitlines()[-1]
        assert last == "Result: aborted (1 succeeded, 2 skipped, 1 failed), exit code 3"

    def test_verbose_shows_every_attempt(self, mixed_report):
        text = render(mixed_report, verbose=True)
        assert "--- download attempt 1 ---" in text
        assert "error: TransientError: timeout" in text
        assert "      curl: (28) timed out" in text
        assert "      saved" in text

    def test_degraded_probe_flagged(self):
        report = _report(StepResult("a", StepState.SUCCEEDED, attempts=1,
                                    probe=ProbeResult.UNKNOWN, probe_degraded=True))
        assert "[probe degraded]" in render(report)

    def test_dry_run_header(self):
        report = _report(
            StepResult("a", StepState.SKIPPED, skip_reason=SkipReason.DRY_RUN, message="would run"),
            dry_run=True,
        )
        text = render(report)
        assert text.splitlines()[0].endswith("[dry run]")
        assert "dry run: would run" in text

    def test_in_progress(self):
        text = render(_report(StepResult("a", StepState.SUCCEEDED), outcome=None))
        assert text.splitlines()[-1] == "Result: in progress (1 succeeded, 0 skipped, 0 failed)"

    def test_best_effort_failure(self):
        report = _report(
            StepResult("ext", StepState.FAILED, criticality=Criticality.BEST_EFFORT,
                       attempts=2, message="Retries exhausted"),
            outcome=RunOutcome.PARTIAL_FAILURE,
        )
        assert render(report).endswith("exit code 2")


class TestPrintReport:
    """Tests for print_report() console output."""

    def test_prints_table_and_verdict(self, mixed_report, capsys):
        print_report(mixed_report)
        out = capsys.readouterr().out
        assert "download" in out
        assert "permission denied" in out
        assert "ABORTED" in out
