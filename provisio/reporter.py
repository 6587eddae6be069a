"""
Reporter - render a RunReport and compute the process exit code.

Exit codes distinguish "done with caveats" from "stopped safely":
    0  success
    2  partial_failure (a best-effort step failed or was blocked)
    3  aborted (a required step failed)
1 is left to the CLI for usage and manifest errors.
"""

from rich.markup import escape
from rich.table import Table

from provisio.schemas import RunOutcome, RunReport, StepResult, StepState
from provisio.utils import console, format_duration, truncate

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_ABORTED = 3

_EXIT_CODES = {
    RunOutcome.SUCCESS: EXIT_SUCCESS,
    RunOutcome.PARTIAL_FAILURE: EXIT_PARTIAL_FAILURE,
    RunOutcome.ABORTED: EXIT_ABORTED,
}

_STATE_LABELS = {
    StepState.SUCCEEDED: "OK",
    StepState.SKIPPED: "SKIP",
    StepState.FAILED: "FAIL",
}

_STATE_STYLES = {
    StepState.SUCCEEDED: "green",
    StepState.SKIPPED: "cyan",
    StepState.FAILED: "red",
}

_VERDICT_STYLES = {
    RunOutcome.SUCCESS: "bold green",
    RunOutcome.PARTIAL_FAILURE: "bold yellow",
    RunOutcome.ABORTED: "bold red",
}


def exit_code(report: RunReport) -> int:
    """
    Exit code for a finished run.

    Raises:
        ValueError: If the report has not been finalized
    """
    if report.outcome is None:
        raise ValueError(f"Run {report.run_id} has no outcome yet")
    return _EXIT_CODES[report.outcome]


def _reason(result: StepResult) -> str:
    reason = result.reason
    if result.probe_degraded and "probe degraded" not in reason:
        reason = f"{reason} [probe degraded]".strip()
    return reason


def _step_line(result: StepResult) -> str:
    label = _STATE_LABELS[result.state]
    parts = [f"{label:<5} {result.name}"]
    if result.attempts:
        parts.append(f"attempts={result.attempts}")
    parts.append(format_duration(result.duration_s))
    line = "  ".join(parts)
    reason = _reason(result)
    return f"{line}  - {reason}" if reason else line


def _output_lines(result: StepResult, verbose: bool) -> list[str]:
    """Raw captured output: failed steps always, every step when verbose."""
    if not result.outputs or not (verbose or result.state == StepState.FAILED):
        return []
    outputs = result.outputs if verbose else result.outputs[-1:]
    lines = []
    for out in outputs:
        lines.append(f"    --- {result.name} attempt {out.attempt} ---")
        if out.error:
            lines.append(f"    error: {out.error}")
        for label, text in (("stdout", out.stdout), ("stderr", out.stderr)):
            if text.strip():
                lines.append(f"    {label}:")
                lines.extend(f"      {ln}" for ln in truncate(text).rstrip().splitlines())
    return lines


def render(report: RunReport, verbose: bool = False) -> str:
    """
    Render a human-readable summary.

    One line per step (state, name, attempts, duration, reason), the raw
    output of failed steps (every attempt of every step when verbose), then
    the overall verdict and exit code.
    """
    header = f"Run {report.run_id}"
    if report.manifest_id:
        header += f" ({report.manifest_id})"
    if report.dry_run:
        header += " [dry run]"
    lines = [header]

    for result in report:
        lines.append(_step_line(result))
        lines.extend(_output_lines(result, verbose))

    counts = report.counts()
    summary = ", ".join(f"{n} {state}" for state, n in counts.items())
    if report.outcome is not None:
        lines.append(f"Result: {report.outcome.value} ({summary}), exit code {exit_code(report)}")
    else:
        lines.append(f"Result: in progress ({summary})")
    return "\n".join(lines)


def print_report(report: RunReport, verbose: bool = False) -> None:
    """Print the report to the console with colours."""
    title = f"Run {report.run_id}" + (" [dry run]" if report.dry_run else "")
    table = Table(title=title, show_lines=False)
    table.add_column("State")
    table.add_column("Step", style="bold")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Reason")

    for result in report:
        style = _STATE_STYLES[result.state]
        table.add_row(
            f"[{style}]{_STATE_LABELS[result.state]}[/{style}]",
            escape(result.name),
            str(result.attempts) if result.attempts else "-",
            format_duration(result.duration_s),
            escape(_reason(result)),
        )
    console.print(table)

    for result in report:
        lines = _output_lines(result, verbose)
        if lines:
            console.print("\n".join(lines), markup=False, highlight=False)

    if report.outcome is not None:
        style = _VERDICT_STYLES[report.outcome]
        console.print(
            f"[{style}]{report.outcome.value.upper()}[/{style}] "
            f"exit code {exit_code(report)}"
        )
