"""Domain model types (criteria, evaluation results, loop runs, loop results)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Final, Literal, TypeAlias

import msgspec

CriterionKind: TypeAlias = Literal[
    "test_pass",
    "build_success",
    "lint_clean",
    "type_check",
    "custom",
]

CRITERION_KINDS: Final[tuple[str, ...]] = (
    "test_pass",
    "build_success",
    "lint_clean",
    "type_check",
    "custom",
)

LoopStatus: TypeAlias = Literal["running", "success", "failed", "stopped"]

RUNNING: Final = "running"
SUCCESS: Final = "success"
FAILED: Final = "failed"
STOPPED: Final = "stopped"

TERMINAL_STATUSES: Final[frozenset[str]] = frozenset({SUCCESS, FAILED, STOPPED})

LoopReason: TypeAlias = Literal["success", "max_iterations", "stopped", "error"]

# Exit code reported when a command did not finish before its deadline.
TIMEOUT_EXIT_CODE: Final = -1


class SuccessCriterion(msgspec.Struct, kw_only=True, frozen=True, omit_defaults=True):
    kind: CriterionKind = msgspec.field(name="type")
    command: str | None = None
    expected_exit_code: int = 0
    timeout_ms: Annotated[int, msgspec.Meta(gt=0)] | None = None


def encode_criteria(criteria: list[SuccessCriterion]) -> str:
    return msgspec.json.encode(criteria).decode("utf-8")


def decode_criteria(raw: str) -> list[SuccessCriterion]:
    return msgspec.json.decode(raw, type=list[SuccessCriterion])


@dataclass(frozen=True, slots=True)
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    success: bool
    exit_code: int
    output: str
    reason: str
    suggestions: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Verdict:
    """Outcome reported by a judge function."""

    success: bool
    reason: str
    suggestions: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class LoopRun:
    id: str
    session_id: str
    task: str
    criteria: str
    status: LoopStatus
    iterations: int
    max_iterations: int
    started_at: str
    ended_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class IterationContext:
    iteration: int
    task: str
    loop_run_id: str


@dataclass(frozen=True, slots=True)
class IterationResult:
    success: bool
    output: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class LoopResult:
    success: bool
    iterations: int
    reason: LoopReason
    loop_run_id: str
    error: str | None = None
