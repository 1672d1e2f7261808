import os

import pytest

from ralphmem import criteria as criteria_module
from ralphmem.criteria import (
    DEFAULT_COMMANDS,
    TIMEOUT_SUGGESTION,
    CriteriaEvaluator,
    extract_suggestions,
    resolve_command,
)
from ralphmem.model import TIMEOUT_EXIT_CODE, SuccessCriterion, Verdict

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


class TestResolveCommand:
    def test_default_for_test_pass(self) -> None:
        assert resolve_command(SuccessCriterion(kind="test_pass")) == ("pytest", [])

    def test_default_for_build_success(self) -> None:
        program, args = resolve_command(SuccessCriterion(kind="build_success"))
        assert program == "python"
        assert args == ["-m", "build"]

    def test_default_for_lint_clean(self) -> None:
        program, args = resolve_command(SuccessCriterion(kind="lint_clean"))
        assert program == "ruff"
        assert "check" in args

    def test_default_for_type_check(self) -> None:
        program, _ = resolve_command(SuccessCriterion(kind="type_check"))
        assert program == "mypy"

    def test_every_builtin_kind_has_a_default(self) -> None:
        assert set(DEFAULT_COMMANDS) == {
            "test_pass",
            "build_success",
            "lint_clean",
            "type_check",
        }

    def test_command_override_wins(self) -> None:
        criterion = SuccessCriterion(kind="test_pass", command="bun test")
        assert resolve_command(criterion) == ("bun", ["test"])

    def test_custom_without_command_is_empty(self) -> None:
        assert resolve_command(SuccessCriterion(kind="custom")) == ("", [])

    def test_custom_with_command(self) -> None:
        criterion = SuccessCriterion(kind="custom", command="./run-checks.sh")
        assert resolve_command(criterion) == ("./run-checks.sh", [])


class TestExtractSuggestions:
    def test_failed_tests(self) -> None:
        output = "FAIL tests/example.test.ts\nTypeError: undefined is not a function"
        suggestions = extract_suggestions("test_pass", output, "")

        assert "Fix failing tests: FAIL tests/example.test.ts" in suggestions
        assert "Check for runtime errors in test files" in suggestions

    def test_pytest_summary_lines(self) -> None:
        output = (
            "=================== FAILURES ===================\n"
            "FAILED tests/test_a.py::test_one - assert 1 == 2\n"
            "FAILED tests/test_a.py::test_two - KeyError: 'x'\n"
        )
        suggestions = extract_suggestions("test_pass", output, "")

        assert suggestions == [
            "Fix failing tests: FAILED tests/test_a.py::test_one - assert 1 == 2",
            "Fix failing tests: FAILED tests/test_a.py::test_two - KeyError: 'x'",
        ]

    def test_failing_test_hints_are_capped(self) -> None:
        output = "\n".join(f"FAILED tests/test_a.py::test_{i}" for i in range(12))
        suggestions = extract_suggestions("test_pass", output, "")

        assert len(suggestions) == 5

    def test_build_failures(self) -> None:
        output = "Cannot find module 'lodash'\nSyntaxError: Unexpected token"
        suggestions = extract_suggestions("build_success", output, "")

        assert "Install missing dependencies" in suggestions
        assert "Fix syntax errors in source files" in suggestions

    def test_build_failure_on_stderr(self) -> None:
        suggestions = extract_suggestions(
            "build_success", "", "ModuleNotFoundError: No module named 'hatchling'"
        )

        assert suggestions == ["Install missing dependencies"]

    def test_typescript_codes(self) -> None:
        output = (
            "error TS2339: Property 'x' does not exist\n"
            "error TS2304: Cannot find name 'y'"
        )
        suggestions = extract_suggestions("type_check", output, "")

        assert suggestions == ["Fix type errors: TS2339, TS2304"]

    def test_mypy_codes(self) -> None:
        output = (
            'app.py:3: error: "int" has no attribute "x"  [attr-defined]\n'
            "app.py:9: error: Incompatible return value type  [return-value]\n"
            'app.py:12: error: "str" has no attribute "y"  [attr-defined]\n'
        )
        suggestions = extract_suggestions("type_check", output, "")

        assert suggestions == ["Fix type errors: attr-defined, return-value"]

    def test_lint_errors_and_warnings(self) -> None:
        output = "error: Unexpected console statement\nwarning: Missing semicolon"
        suggestions = extract_suggestions("lint_clean", output, "")

        assert "Fix linting errors" in suggestions
        assert "Consider fixing linting warnings" in suggestions

    def test_clean_output(self) -> None:
        assert extract_suggestions("test_pass", "All tests passed", "") == []

    def test_custom_kind_has_no_heuristics(self) -> None:
        assert extract_suggestions("custom", "FAIL error: SyntaxError", "") == []


class TestEvaluate:
    @pytest.mark.anyio
    async def test_successful_command(self) -> None:
        evaluator = CriteriaEvaluator()
        criterion = SuccessCriterion(kind="custom", command="echo success")

        result = await evaluator.evaluate(criterion)

        assert result.success is True
        assert result.exit_code == 0
        assert result.output.strip() == "success"
        assert "passed" in result.reason
        assert result.suggestions == []

    @posix_only
    @pytest.mark.anyio
    async def test_failing_command(self) -> None:
        evaluator = CriteriaEvaluator()
        criterion = SuccessCriterion(kind="custom", command="sh -c 'exit 1'")

        result = await evaluator.evaluate(criterion)

        assert result.success is False
        assert result.exit_code != 0
        assert "failed" in result.reason

    @posix_only
    @pytest.mark.anyio
    async def test_exit_builtin(self) -> None:
        result = await CriteriaEvaluator().evaluate(
            SuccessCriterion(kind="custom", command="exit 1")
        )

        assert result.success is False
        assert result.exit_code != 0

    @posix_only
    @pytest.mark.anyio
    async def test_custom_expected_exit_code(self) -> None:
        criterion = SuccessCriterion(
            kind="custom", command="sh -c 'exit 42'", expected_exit_code=42
        )

        result = await CriteriaEvaluator().evaluate(criterion)

        assert result.success is True
        assert result.exit_code == 42

    @posix_only
    @pytest.mark.anyio
    async def test_timeout(self) -> None:
        criterion = SuccessCriterion(kind="custom", command="sleep 2", timeout_ms=100)

        result = await CriteriaEvaluator().evaluate(criterion)

        assert result.success is False
        assert result.exit_code == TIMEOUT_EXIT_CODE
        assert "timed out" in result.reason
        assert TIMEOUT_SUGGESTION in result.suggestions

    @posix_only
    @pytest.mark.anyio
    async def test_default_timeout_applies(self) -> None:
        evaluator = CriteriaEvaluator(default_timeout_ms=100)
        criterion = SuccessCriterion(kind="custom", command="sleep 2")

        result = await evaluator.evaluate(criterion)

        assert result.exit_code == TIMEOUT_EXIT_CODE

    @pytest.mark.anyio
    async def test_custom_without_command(self, monkeypatch) -> None:
        async def _fail(*args, **kwargs):
            raise AssertionError("should not execute")

        monkeypatch.setattr(criteria_module, "execute_command", _fail)

        result = await CriteriaEvaluator().evaluate(SuccessCriterion(kind="custom"))

        assert result.success is False
        assert "requires a command" in result.reason

    @pytest.mark.anyio
    async def test_failure_carries_suggestions(self) -> None:
        criterion = SuccessCriterion(
            kind="build_success",
            command="sh -c 'echo SyntaxError: bad token; exit 2'",
        )

        result = await CriteriaEvaluator().evaluate(criterion)

        assert result.success is False
        assert result.exit_code == 2
        assert result.suggestions == ["Fix syntax errors in source files"]

    @pytest.mark.anyio
    async def test_runs_in_cwd(self, tmp_path) -> None:
        (tmp_path / "marker.txt").write_text("here")
        evaluator = CriteriaEvaluator(cwd=tmp_path)

        result = await evaluator.evaluate(
            SuccessCriterion(kind="custom", command="cat marker.txt")
        )

        assert result.success is True
        assert result.output == "here"


class TestEvaluateAll:
    @pytest.mark.anyio
    async def test_empty_list(self) -> None:
        result = await CriteriaEvaluator().evaluate_all([])

        assert result.success is True
        assert "No criteria" in result.reason

    @pytest.mark.anyio
    async def test_all_pass(self) -> None:
        result = await CriteriaEvaluator().evaluate_all(
            [
                SuccessCriterion(kind="custom", command="echo first"),
                SuccessCriterion(kind="custom", command="echo second"),
            ]
        )

        assert result.success is True
        assert "2 criteria passed" in result.reason
        assert result.output == "first\nsecond"

    @posix_only
    @pytest.mark.anyio
    async def test_stops_on_first_failure(self) -> None:
        result = await CriteriaEvaluator().evaluate_all(
            [
                SuccessCriterion(kind="custom", command="echo first"),
                SuccessCriterion(kind="custom", command="sh -c 'echo second; exit 3'"),
                SuccessCriterion(kind="custom", command="echo third"),
            ]
        )

        assert result.success is False
        assert result.exit_code == 3
        assert "failed" in result.reason
        assert "first" in result.output
        assert "third" not in result.output

    @pytest.mark.anyio
    async def test_failure_reason_comes_from_failing_criterion(self) -> None:
        result = await CriteriaEvaluator().evaluate_all(
            [
                SuccessCriterion(kind="custom", command="echo first"),
                SuccessCriterion(kind="custom"),
            ]
        )

        assert result.success is False
        assert "requires a command" in result.reason


class TestJudge:
    @pytest.mark.anyio
    async def test_judge_success_is_adopted(self) -> None:
        calls: list[tuple[str, str, int]] = []

        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            calls.append((kind, output, exit_code))
            return Verdict(success=True, reason="judge says it passed")

        evaluator = CriteriaEvaluator().with_judge(judge)

        result = await evaluator.evaluate(
            SuccessCriterion(kind="custom", command="echo test")
        )

        assert result.success is True
        assert result.reason == "judge says it passed"
        assert calls == [("custom", "test\n", 0)]

    @pytest.mark.anyio
    async def test_judge_failure_is_adopted(self) -> None:
        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            return Verdict(
                success=False,
                reason="judge detected an issue",
                suggestions=["Fix the code", "Run tests again"],
            )

        evaluator = CriteriaEvaluator(judge=judge)

        result = await evaluator.evaluate(
            SuccessCriterion(kind="custom", command="echo test")
        )

        assert result.success is False
        assert result.exit_code == 0
        assert result.reason == "judge detected an issue"
        assert result.suggestions == ["Fix the code", "Run tests again"]

    @posix_only
    @pytest.mark.anyio
    async def test_judge_sees_stdout_and_stderr(self) -> None:
        seen: list[str] = []

        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            seen.append(output)
            return Verdict(success=True, reason="ok")

        await CriteriaEvaluator(judge=judge).evaluate(
            SuccessCriterion(kind="custom", command="echo out; echo err >&2")
        )

        assert "out" in seen[0]
        assert "err" in seen[0]

    @pytest.mark.anyio
    async def test_judge_error_falls_back_to_exit_code(self) -> None:
        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            raise RuntimeError("API error")

        evaluator = CriteriaEvaluator(judge=judge)

        result = await evaluator.evaluate(
            SuccessCriterion(kind="custom", command="echo test")
        )

        assert result.success is True
        assert "passed" in result.reason

    @posix_only
    @pytest.mark.anyio
    async def test_judge_not_called_on_timeout(self) -> None:
        calls: list[int] = []

        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            calls.append(exit_code)
            return Verdict(success=True, reason="should not happen")

        evaluator = CriteriaEvaluator(judge=judge)

        result = await evaluator.evaluate(
            SuccessCriterion(kind="custom", command="sleep 2", timeout_ms=100)
        )

        assert result.success is False
        assert "timed out" in result.reason
        assert calls == []

    @pytest.mark.anyio
    async def test_evaluate_all_stops_on_first_judge_failure(self) -> None:
        calls: list[str] = []

        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            calls.append(output)
            if len(calls) == 1:
                return Verdict(success=True, reason="first passed")
            return Verdict(success=False, reason="second failed", suggestions=["Fix it"])

        evaluator = CriteriaEvaluator(judge=judge)

        result = await evaluator.evaluate_all(
            [
                SuccessCriterion(kind="custom", command="echo first"),
                SuccessCriterion(kind="custom", command="echo second"),
                SuccessCriterion(kind="custom", command="echo third"),
            ]
        )

        assert result.success is False
        assert result.reason == "second failed"
        assert result.suggestions == ["Fix it"]
        assert len(calls) == 2

    def test_with_judge_keeps_settings(self, tmp_path) -> None:
        async def judge(kind: str, output: str, exit_code: int) -> Verdict:
            return Verdict(success=True, reason="ok")

        base = CriteriaEvaluator(cwd=tmp_path, default_timeout_ms=1234)
        judged = base.with_judge(judge)

        assert judged is not base
        assert base.judge is None
        assert judged.judge is judge
        assert judged.cwd == tmp_path
        assert judged.default_timeout_ms == 1234
