"""Loop engine: run a task iteration after iteration until it succeeds.

The engine owns the durable run record. Each iteration is delegated to a
caller-supplied callback which reports success or failure; the engine
handles the iteration cap, the cooldown between attempts, cooperative
stop requests and the final status. Only one run may be ``running`` per
session at a time.
"""

from __future__ import annotations

import inspect
import threading
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeAlias

import anyio

from .config import LoopSettings, load_settings
from .logging import bind_run_context, clear_context, get_logger
from .model import (
    FAILED,
    RUNNING,
    STOPPED,
    SUCCESS,
    IterationContext,
    IterationResult,
    LoopReason,
    LoopResult,
    LoopRun,
    LoopStatus,
    SuccessCriterion,
    encode_criteria,
)
from .store import LoopRunStore, utc_now

logger = get_logger(__name__)

__all__ = [
    "CompleteCallback",
    "IterationCallback",
    "LoopAlreadyRunningError",
    "LoopEngine",
    "LoopError",
    "MissingIterationCallbackError",
]

IterationCallback: TypeAlias = Callable[
    [IterationContext], Awaitable[IterationResult] | IterationResult
]
CompleteCallback: TypeAlias = Callable[[LoopResult], None]


class LoopError(RuntimeError):
    pass


class LoopAlreadyRunningError(LoopError):
    def __init__(self, loop_run_id: str) -> None:
        self.loop_run_id = loop_run_id
        super().__init__(
            f"Loop already running: {loop_run_id}. Stop it first with stop()."
        )


class MissingIterationCallbackError(LoopError):
    def __init__(self) -> None:
        super().__init__(
            "No iteration callback set. Call on_iteration() before start()."
        )


class LoopEngine:
    """Iterate-until-done state machine bound to one session.

    Args:
        project_path: Project whose config and database are used.
        session_id: Logical session owning the runs.
        settings: Loop defaults; loaded from the project config when omitted.
        store: Run store to borrow. When omitted the engine opens the
            project database itself and closes it in ``close()``.
    """

    def __init__(
        self,
        project_path: str | Path,
        session_id: str,
        *,
        settings: LoopSettings | None = None,
        store: LoopRunStore | None = None,
    ) -> None:
        self.project_path = Path(project_path)
        self.session_id = session_id
        self.settings = (
            settings if settings is not None else load_settings(self.project_path).loop
        )
        self._owns_store = store is None
        self._store = store or LoopRunStore.for_project(self.project_path)
        self._closed = False
        self._current: LoopRun | None = None
        self._stop_requested = threading.Event()
        self._iteration_callback: IterationCallback | None = None
        self._complete_callback: CompleteCallback | None = None

    @property
    def store(self) -> LoopRunStore:
        return self._store

    def is_running(self) -> bool:
        run = self.current_run()
        return run is not None and run.status == RUNNING

    def current_run(self) -> LoopRun | None:
        """Re-read the run this engine started, if any."""
        if self._current is None:
            return None
        return self._store.get_loop_run(self._current.id)

    def on_iteration(self, callback: IterationCallback) -> None:
        self._iteration_callback = callback

    def on_complete(self, callback: CompleteCallback) -> None:
        self._complete_callback = callback

    async def start(
        self,
        task: str,
        *,
        criteria: list[SuccessCriterion] | None = None,
        max_iterations: int | None = None,
        cooldown_ms: int | None = None,
    ) -> LoopResult:
        callback = self._iteration_callback
        if callback is None:
            raise MissingIterationCallbackError()

        active = self._store.get_active_loop_run(self.session_id)
        if active is not None:
            raise LoopAlreadyRunningError(active.id)

        self._stop_requested.clear()

        criteria = criteria if criteria is not None else self.settings.success_criteria
        max_iterations = (
            max_iterations if max_iterations is not None else self.settings.max_iterations
        )
        cooldown_ms = cooldown_ms if cooldown_ms is not None else self.settings.cooldown_ms
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        if cooldown_ms < 0:
            raise ValueError(f"cooldown_ms must not be negative, got {cooldown_ms}")

        run = self._store.create_loop_run(
            session_id=self.session_id,
            task=task,
            criteria=encode_criteria(list(criteria)),
            max_iterations=max_iterations,
        )
        self._current = run
        bind_run_context(loop_run_id=run.id, session_id=self.session_id)
        logger.info(
            "loop.started",
            task=task,
            max_iterations=max_iterations,
            cooldown_ms=cooldown_ms,
        )
        try:
            result = await self._run_loop(run, callback, max_iterations, cooldown_ms)
        except anyio.get_cancelled_exc_class():
            with anyio.CancelScope(shield=True):
                self._store.finish_loop_run(run.id, STOPPED, ended_at=utc_now())
                self._current = self._store.get_loop_run(run.id)
                logger.info("loop.cancelled")
                clear_context()
            raise
        self._notify_complete(result)
        clear_context()
        return result

    async def _run_loop(
        self,
        run: LoopRun,
        callback: IterationCallback,
        max_iterations: int,
        cooldown_ms: int,
    ) -> LoopResult:
        iteration = 0
        last_error: str | None = None
        try:
            while iteration < max_iterations:
                if self._stop_pending(run.id):
                    return self._finish(run.id, STOPPED, "stopped", iteration)

                iteration += 1
                self._store.update_loop_run(run.id, iterations=iteration)
                logger.info("loop.iteration", iteration=iteration)

                outcome = callback(
                    IterationContext(
                        iteration=iteration, task=run.task, loop_run_id=run.id
                    )
                )
                if inspect.isawaitable(outcome):
                    outcome = await outcome

                if outcome.success:
                    return self._finish(run.id, SUCCESS, "success", iteration)

                if outcome.error:
                    last_error = outcome.error

                if iteration < max_iterations and not self._stop_requested.is_set():
                    await anyio.sleep(cooldown_ms / 1000)
        except Exception as e:
            logger.warning("loop.iteration.failed", iteration=iteration, error=str(e))
            return self._finish(
                run.id, FAILED, "error", iteration, error=str(e) or repr(e)
            )

        return self._finish(
            run.id, FAILED, "max_iterations", iteration, error=last_error
        )

    def _stop_pending(self, run_id: str) -> bool:
        if self._stop_requested.is_set():
            return True
        persisted = self._store.get_loop_run(run_id)
        return persisted is not None and persisted.status != RUNNING

    def _finish(
        self,
        run_id: str,
        status: LoopStatus,
        reason: LoopReason,
        iterations: int,
        *,
        error: str | None = None,
    ) -> LoopResult:
        if not self._store.finish_loop_run(run_id, status, ended_at=utc_now()):
            persisted = self._store.get_loop_run(run_id)
            if persisted is not None and persisted.status == STOPPED:
                status, reason = STOPPED, "stopped"
        self._current = self._store.get_loop_run(run_id) or self._current
        logger.info(
            "loop.finished",
            status=status,
            reason=reason,
            iterations=iterations,
            error=error,
        )
        return LoopResult(
            success=status == SUCCESS,
            iterations=iterations,
            reason=reason,
            loop_run_id=run_id,
            error=error,
        )

    def _notify_complete(self, result: LoopResult) -> None:
        if self._complete_callback is None:
            return
        try:
            self._complete_callback(result)
        except Exception:
            logger.exception("loop.on_complete.failed")

    def stop(self) -> None:
        """Request a cooperative stop.

        The loop exits at its next loop-top check; an iteration in flight is
        not interrupted. The run is marked ``stopped`` in the store right
        away so other readers see it immediately.
        """
        self._stop_requested.set()
        run = self._current
        if run is None:
            return
        if self._store.finish_loop_run(run.id, STOPPED, ended_at=utc_now()):
            logger.info("loop.stop_requested", loop_run_id=run.id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_store:
            self._store.close()

    def __enter__(self) -> LoopEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
