from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Annotated, Any, Literal

import msgspec

from .model import SuccessCriterion
from .paths import global_config_path, project_config_path

LogLevelName = Literal["debug", "info", "warning", "error"]


class ConfigError(RuntimeError):
    pass


def _default_criteria() -> list[SuccessCriterion]:
    return [SuccessCriterion(kind="test_pass")]


class LoopSettings(msgspec.Struct, kw_only=True, frozen=True):
    max_iterations: Annotated[int, msgspec.Meta(ge=1)] = 10
    cooldown_ms: Annotated[int, msgspec.Meta(ge=0)] = 1000
    timeout_ms: Annotated[int, msgspec.Meta(gt=0)] = 300_000
    success_criteria: list[SuccessCriterion] = msgspec.field(
        default_factory=_default_criteria
    )


class LoggingSettings(msgspec.Struct, kw_only=True, frozen=True):
    level: LogLevelName = "info"


class Settings(msgspec.Struct, kw_only=True, frozen=True):
    loop: LoopSettings = msgspec.field(default_factory=LoopSettings)
    logging: LoggingSettings = msgspec.field(default_factory=LoggingSettings)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; tables merge, lists replace."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _read_config(cfg_path: Path) -> dict[str, Any]:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def _read_optional(cfg_path: Path) -> dict[str, Any]:
    if not cfg_path.exists():
        return {}
    return _read_config(cfg_path)


def config_candidates(project_path: str | Path | None = None) -> list[Path]:
    """Config files in merge order, lowest priority first."""
    candidates = [global_config_path()]
    if project_path is not None:
        project_cfg = project_config_path(project_path)
        if project_cfg != candidates[0]:
            candidates.append(project_cfg)
    return candidates


def parse_settings(data: dict[str, Any], source: str = "config") -> Settings:
    try:
        settings = msgspec.convert(data, Settings)
    except msgspec.ValidationError as e:
        raise ConfigError(f"Invalid {source}: {e}") from None
    for index, criterion in enumerate(settings.loop.success_criteria):
        if criterion.kind == "custom" and not criterion.command:
            raise ConfigError(
                f"Invalid {source}: `loop.success_criteria[{index}]` "
                "has type `custom` but no `command`."
            )
    return settings


def load_settings(
    project_path: str | Path | None = None,
    path: str | Path | None = None,
) -> Settings:
    """Load settings: defaults < global config < project config.

    An explicit ``path`` replaces the layered lookup and must exist.
    """
    if path:
        cfg_path = Path(path).expanduser()
        return parse_settings(_read_config(cfg_path), str(cfg_path))

    merged: dict[str, Any] = {}
    sources: list[str] = []
    for candidate in config_candidates(project_path):
        data = _read_optional(candidate)
        if data:
            merged = deep_merge(merged, data)
            sources.append(str(candidate))
    return parse_settings(merged, ", ".join(sources) or "default config")
