from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .model import RUNNING, LoopRun, LoopStatus
from .paths import ensure_project_dirs, project_db_path

_COLUMNS = (
    "id, session_id, task, criteria, status, iterations, max_iterations, "
    "started_at, ended_at"
)


def generate_loop_id() -> str:
    return f"loop-{uuid.uuid4().hex[:12]}"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS loop_runs (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            task TEXT NOT NULL,
            criteria TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('running', 'success', 'failed', 'stopped')),
            iterations INTEGER NOT NULL DEFAULT 0,
            max_iterations INTEGER NOT NULL DEFAULT 10,
            started_at TEXT NOT NULL,
            ended_at TEXT
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_loop_runs_session ON loop_runs(session_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_loop_runs_status ON loop_runs(status)"
    )
    conn.commit()


def _row_to_run(row: sqlite3.Row | None) -> LoopRun | None:
    if row is None:
        return None
    return LoopRun(
        id=row["id"],
        session_id=row["session_id"],
        task=row["task"],
        criteria=row["criteria"],
        status=row["status"],
        iterations=row["iterations"],
        max_iterations=row["max_iterations"],
        started_at=row["started_at"],
        ended_at=row["ended_at"],
    )


class LoopRunStore:
    """SQLite-backed storage for loop runs.

    Every statement runs under a lock so one store can be shared between
    the loop and a ``stop()`` issued from another thread.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._closed = False
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        _init_schema(self._conn)

    @classmethod
    def for_project(cls, project_path: str | Path) -> LoopRunStore:
        ensure_project_dirs(project_path)
        return cls(project_db_path(project_path))

    def create_loop_run(
        self,
        *,
        session_id: str,
        task: str,
        criteria: str,
        max_iterations: int,
    ) -> LoopRun:
        run = LoopRun(
            id=generate_loop_id(),
            session_id=session_id,
            task=task,
            criteria=criteria,
            status=RUNNING,
            iterations=0,
            max_iterations=max_iterations,
            started_at=utc_now(),
        )
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO loop_runs (
                    id, session_id, task, criteria, status, iterations,
                    max_iterations, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.session_id,
                    run.task,
                    run.criteria,
                    run.status,
                    run.iterations,
                    run.max_iterations,
                    run.started_at,
                ),
            )
            self._conn.commit()
        return run

    def get_loop_run(self, run_id: str) -> LoopRun | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM loop_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return _row_to_run(row)

    def update_loop_run(
        self,
        run_id: str,
        *,
        status: LoopStatus | None = None,
        iterations: int | None = None,
        ended_at: str | None = None,
    ) -> None:
        updates: list[str] = []
        values: list[object] = []
        if status is not None:
            updates.append("status = ?")
            values.append(status)
        if iterations is not None:
            updates.append("iterations = ?")
            values.append(iterations)
        if ended_at is not None:
            updates.append("ended_at = ?")
            values.append(ended_at)
        if not updates:
            return
        values.append(run_id)
        with self._lock:
            self._conn.execute(
                f"UPDATE loop_runs SET {', '.join(updates)} WHERE id = ?", values
            )
            self._conn.commit()

    def finish_loop_run(
        self, run_id: str, status: LoopStatus, *, ended_at: str | None = None
    ) -> bool:
        """Move a running loop run to ``status``.

        Returns False when the run is missing or already terminal; a
        terminal status is never overwritten.
        """
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE loop_runs SET status = ?, ended_at = ?
                WHERE id = ? AND status = ?
                """,
                (status, ended_at or utc_now(), run_id, RUNNING),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def get_active_loop_run(self, session_id: str) -> LoopRun | None:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM loop_runs
                WHERE session_id = ? AND status = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT 1
                """,
                (session_id, RUNNING),
            ).fetchone()
        return _row_to_run(row)

    def list_loop_runs(self, session_id: str, *, limit: int = 10) -> list[LoopRun]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM loop_runs
                WHERE session_id = ?
                ORDER BY started_at DESC, rowid DESC
                LIMIT ?
                """,
                (session_id, limit),
            ).fetchall()
        return [run for row in rows if (run := _row_to_run(row)) is not None]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._lock:
            self._conn.close()

    def __enter__(self) -> LoopRunStore:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
