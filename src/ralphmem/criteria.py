"""Success criteria evaluation.

A criterion names a kind of check ("tests pass", "lint clean", ...) and an
optional command override. The evaluator resolves it to a command, runs
the command under a deadline and turns the outcome into an
``EvaluationResult`` with a readable reason and remediation hints.

An optional judge function can replace the exit-code verdict, e.g. to let
a model read the output. Judges are best effort: when one raises, the
exit-code verdict is used instead.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Final, TypeAlias

from .logging import get_logger
from .model import EvaluationResult, SuccessCriterion, Verdict
from .process import execute_command
from .utils.command import join_command, parse_command

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_COMMANDS",
    "DEFAULT_TIMEOUT_MS",
    "CriteriaEvaluator",
    "Judge",
    "extract_suggestions",
    "resolve_command",
]

Judge: TypeAlias = Callable[[str, str, int], Awaitable[Verdict]]

DEFAULT_TIMEOUT_MS: Final = 300_000

DEFAULT_COMMANDS: Final[dict[str, str]] = {
    "test_pass": "pytest",
    "build_success": "python -m build",
    "lint_clean": "ruff check .",
    "type_check": "mypy .",
}

TIMEOUT_SUGGESTION: Final = "Increase timeout or optimize the command"

_MAX_FAILING_TEST_HINTS = 5

_FAILING_TEST_RE = re.compile(r"^\s*(FAIL(?:ED)?\b.*?)\s*$", re.MULTILINE)
_RUNTIME_ERROR_RE = re.compile(
    r"\b(?:TypeError|ReferenceError|AttributeError|NameError)\b"
    r"|Traceback \(most recent call last\)"
)
_MISSING_MODULE_RE = re.compile(
    r"Cannot find module|ModuleNotFoundError|No module named"
)
_SYNTAX_ERROR_RE = re.compile(r"\bSyntaxError\b")
_TS_CODE_RE = re.compile(r"\b(TS\d{4,5})\b")
_MYPY_CODE_RE = re.compile(r"\berror:.*\[([a-z][a-z0-9-]*)\]\s*$", re.MULTILINE)
_LINT_ERROR_RE = re.compile(r"\berror:", re.IGNORECASE)
_LINT_WARNING_RE = re.compile(r"\bwarning:", re.IGNORECASE)


def resolve_command(criterion: SuccessCriterion) -> tuple[str, list[str]]:
    """Return the program and arguments that verify ``criterion``.

    An explicit command always wins. Otherwise the kind's default command
    is used; ``custom`` has no default and resolves to an empty program.
    """
    if criterion.command:
        return parse_command(criterion.command)
    default = DEFAULT_COMMANDS.get(criterion.kind)
    if default is None:
        return "", []
    return parse_command(default)


def _unique(values: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


def extract_suggestions(kind: str, stdout: str, stderr: str) -> list[str]:
    """Derive remediation hints from command output.

    Plain pattern matching over the text; unrecognized output yields no
    suggestions.
    """
    output = f"{stdout}\n{stderr}"
    suggestions: list[str] = []

    if kind == "test_pass":
        failing = _FAILING_TEST_RE.findall(output)
        for line in _unique(failing)[:_MAX_FAILING_TEST_HINTS]:
            suggestions.append(f"Fix failing tests: {line}")
        if _RUNTIME_ERROR_RE.search(output):
            suggestions.append("Check for runtime errors in test files")
    elif kind == "build_success":
        if _MISSING_MODULE_RE.search(output):
            suggestions.append("Install missing dependencies")
        if _SYNTAX_ERROR_RE.search(output):
            suggestions.append("Fix syntax errors in source files")
    elif kind == "type_check":
        codes = _unique(
            [*_TS_CODE_RE.findall(output), *_MYPY_CODE_RE.findall(output)]
        )
        if codes:
            suggestions.append(f"Fix type errors: {', '.join(codes)}")
    elif kind == "lint_clean":
        if _LINT_ERROR_RE.search(output):
            suggestions.append("Fix linting errors")
        if _LINT_WARNING_RE.search(output):
            suggestions.append("Consider fixing linting warnings")

    return suggestions


def _combined_output(stdout: str, stderr: str) -> str:
    return "\n".join(part for part in (stdout, stderr) if part)


class CriteriaEvaluator:
    """Run success criteria and report structured results.

    Args:
        cwd: Working directory for criterion commands.
        default_timeout_ms: Deadline for criteria that do not set their own.
        judge: Optional verdict source consulted after each completed run.
    """

    def __init__(
        self,
        *,
        cwd: str | Path | None = None,
        default_timeout_ms: int | None = DEFAULT_TIMEOUT_MS,
        judge: Judge | None = None,
    ) -> None:
        self.cwd = cwd
        self.default_timeout_ms = default_timeout_ms
        self.judge = judge

    def with_judge(self, judge: Judge) -> CriteriaEvaluator:
        """Return a copy of this evaluator that consults ``judge``."""
        return CriteriaEvaluator(
            cwd=self.cwd,
            default_timeout_ms=self.default_timeout_ms,
            judge=judge,
        )

    async def evaluate(self, criterion: SuccessCriterion) -> EvaluationResult:
        kind = criterion.kind
        program, args = resolve_command(criterion)
        if not program:
            return EvaluationResult(
                success=False,
                exit_code=1,
                output="",
                reason=f"{kind} criterion requires a command",
            )

        timeout_ms = criterion.timeout_ms or self.default_timeout_ms
        command = join_command(program, args)
        result = await execute_command(
            program, args, cwd=self.cwd, timeout_ms=timeout_ms
        )

        if result.timed_out:
            logger.info(
                "criteria.timed_out", kind=kind, command=command, timeout_ms=timeout_ms
            )
            return EvaluationResult(
                success=False,
                exit_code=result.exit_code,
                output=result.stdout,
                reason=f"{kind} timed out after {timeout_ms} ms",
                suggestions=[TIMEOUT_SUGGESTION],
            )

        if self.judge is not None:
            try:
                verdict = await self.judge(
                    kind,
                    _combined_output(result.stdout, result.stderr),
                    result.exit_code,
                )
            except Exception as e:
                logger.warning("criteria.judge.failed", kind=kind, error=str(e))
            else:
                logger.info(
                    "criteria.judged",
                    kind=kind,
                    command=command,
                    success=verdict.success,
                    exit_code=result.exit_code,
                )
                return EvaluationResult(
                    success=verdict.success,
                    exit_code=result.exit_code,
                    output=result.stdout,
                    reason=verdict.reason,
                    suggestions=list(verdict.suggestions),
                )

        expected = criterion.expected_exit_code
        success = result.exit_code == expected
        if success:
            reason = f"{kind} passed (exit code {result.exit_code})"
            suggestions: list[str] = []
        else:
            reason = (
                f"{kind} failed (exit code {result.exit_code}, expected {expected})"
            )
            suggestions = extract_suggestions(kind, result.stdout, result.stderr)
        logger.info(
            "criteria.evaluated",
            kind=kind,
            command=command,
            success=success,
            exit_code=result.exit_code,
        )
        return EvaluationResult(
            success=success,
            exit_code=result.exit_code,
            output=result.stdout,
            reason=reason,
            suggestions=suggestions,
        )

    async def evaluate_all(
        self, criteria: Iterable[SuccessCriterion]
    ) -> EvaluationResult:
        """Evaluate criteria in order, stopping at the first failure."""
        items = list(criteria)
        if not items:
            return EvaluationResult(
                success=True,
                exit_code=0,
                output="",
                reason="No criteria specified",
            )

        outputs: list[str] = []
        for criterion in items:
            result = await self.evaluate(criterion)
            if result.output:
                outputs.append(result.output.rstrip("\n"))
            if not result.success:
                return EvaluationResult(
                    success=False,
                    exit_code=result.exit_code,
                    output="\n".join(outputs),
                    reason=result.reason,
                    suggestions=result.suggestions,
                )

        return EvaluationResult(
            success=True,
            exit_code=0,
            output="\n".join(outputs),
            reason=f"All {len(items)} criteria passed",
        )
