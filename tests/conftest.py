import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from ralphmem.store import LoopRunStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("RALPHMEM_SESSION_ID", raising=False)
    return home


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def store(project_dir: Path) -> Iterator[LoopRunStore]:
    handle = LoopRunStore.for_project(project_dir)
    try:
        yield handle
    finally:
        handle.close()
