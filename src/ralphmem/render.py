from __future__ import annotations

from datetime import datetime, timezone

import msgspec

from .model import EvaluationResult, LoopResult, LoopRun, decode_criteria

_REASON_LABELS = {
    "success": "criteria met",
    "max_iterations": "max iterations reached",
    "stopped": "stopped",
    "error": "iteration error",
}

MAX_OUTPUT_LINES = 20


def _tail(text: str, max_lines: int) -> str:
    lines = text.rstrip("\n").splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    hidden = len(lines) - max_lines
    return "\n".join([f"... ({hidden} lines hidden)", *lines[-max_lines:]])


def format_elapsed(started_at: str, *, now: datetime | None = None) -> str:
    try:
        started = datetime.fromisoformat(started_at)
    except ValueError:
        return "?"
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    elapsed = max(0, int((current - started).total_seconds()))
    minutes, seconds = divmod(elapsed, 60)
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_evaluation(result: EvaluationResult, *, show_output: bool = True) -> str:
    mark = "✓" if result.success else "✗"
    lines = [f"{mark} {result.reason}"]
    if show_output and not result.success and result.output.strip():
        lines.append("")
        lines.append(_tail(result.output, MAX_OUTPUT_LINES))
    if result.suggestions:
        lines.append("")
        lines.append("suggestions:")
        lines.extend(f"  - {item}" for item in result.suggestions)
    return "\n".join(lines)


def format_start_message(
    run_id: str, task: str, criteria: list[str], max_iterations: int
) -> str:
    return "\n".join(
        [
            "loop started",
            f"task: {task}",
            f"criteria: {', '.join(criteria) or 'none'}",
            f"max iterations: {max_iterations}",
            f"loop id: {run_id}",
        ]
    )


def format_loop_result(result: LoopResult) -> str:
    label = _REASON_LABELS.get(result.reason, result.reason)
    headline = "loop succeeded" if result.success else "loop ended"
    lines = [
        f"{headline}: {label}",
        f"iterations: {result.iterations}",
        f"loop id: {result.loop_run_id}",
    ]
    if result.error:
        lines.append(f"last error: {result.error}")
    return "\n".join(lines)


def _criteria_summary(raw: str) -> str:
    try:
        criteria = decode_criteria(raw)
    except msgspec.DecodeError:
        return "?"
    labels = [c.command or c.kind for c in criteria]
    return ", ".join(labels) or "none"


def format_status(active: LoopRun | None, recent: list[LoopRun] | None = None) -> str:
    if active is not None:
        return "\n".join(
            [
                "loop running",
                f"loop id: {active.id}",
                f"task: {active.task}",
                f"criteria: {_criteria_summary(active.criteria)}",
                f"iterations: {active.iterations}/{active.max_iterations}",
                f"elapsed: {format_elapsed(active.started_at)}",
            ]
        )
    lines = ["no loop running"]
    if recent:
        lines.append("")
        lines.append("recent runs:")
        for run in recent:
            lines.append(
                f"  {run.id}  {run.status:<8} "
                f"{run.iterations}/{run.max_iterations}  {run.task}"
            )
    return "\n".join(lines)
