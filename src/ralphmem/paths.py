from __future__ import annotations

from pathlib import Path

APP_DIR_NAME = "ralphmem"
PROJECT_DIR_NAME = ".ralphmem"
CONFIG_FILE_NAME = "config.toml"
DB_FILE_NAME = "memory.db"


def global_config_dir() -> Path:
    return Path.home() / ".config" / APP_DIR_NAME


def global_config_path() -> Path:
    return global_config_dir() / CONFIG_FILE_NAME


def project_data_dir(project_path: str | Path) -> Path:
    return Path(project_path).expanduser().resolve() / PROJECT_DIR_NAME


def project_config_path(project_path: str | Path) -> Path:
    return project_data_dir(project_path) / CONFIG_FILE_NAME


def project_db_path(project_path: str | Path) -> Path:
    return project_data_dir(project_path) / DB_FILE_NAME


def ensure_project_dirs(project_path: str | Path) -> Path:
    data_dir = project_data_dir(project_path)
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
