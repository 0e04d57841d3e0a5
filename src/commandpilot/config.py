"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from commandpilot.agent.prompts import DEFAULT_PERSONA
from commandpilot.agent.session import DEFAULT_HISTORY_LIMIT, DEFAULT_MAX_CONTINUATIONS
from commandpilot.llm.client import DEFAULT_API_URL
from commandpilot.shell.terminal import DEFAULT_SNAPSHOT_LINES

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _to_bool(value: str | None, default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables and config files."""

    api_key: str | None
    model: str
    reasoning_effort: str | None
    api_url: str
    request_timeout: float
    log_dir: str | None
    log_level: str
    persona: str
    shell: str
    working_directory: str | None
    history_limit: int
    max_continuations: int
    snapshot_lines: int
    command_timeout: float | None
    track_goals: bool
    include_snapshot_in_initial: bool

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openai_from_file = file_config.get("openai")
        openai_config = openai_from_file if isinstance(openai_from_file, dict) else {}
        models_from_file = file_config.get("models")
        model_config = models_from_file if isinstance(models_from_file, dict) else {}

        selected_model = os.getenv("COMMANDPILOT_MODEL") or str(
            file_config.get("default_model", "gpt-5.2")
        )
        selected_model_entry = model_config.get(selected_model)
        selected_model_config = (
            selected_model_entry if isinstance(selected_model_entry, dict) else {}
        )

        return cls(
            api_key=(
                os.getenv("COMMANDPILOT_OPENAI_API_KEY")
                or os.getenv("COMMANDPILOT_API_KEY")
                or _to_optional_string(openai_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=selected_model,
            reasoning_effort=(
                os.getenv("COMMANDPILOT_REASONING_EFFORT")
                or _to_optional_string(selected_model_config.get("reasoning_effort"))
                or _default_reasoning_effort(selected_model)
            ),
            api_url=(
                os.getenv("COMMANDPILOT_API_URL")
                or _to_optional_string(openai_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            request_timeout=_to_positive_float(
                os.getenv("COMMANDPILOT_REQUEST_TIMEOUT") or file_config.get("request_timeout"),
                default=60.0,
            ),
            log_dir=(
                os.getenv("COMMANDPILOT_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=_resolve_log_level(
                os.getenv("COMMANDPILOT_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
            ),
            persona=(
                os.getenv("COMMANDPILOT_PERSONA")
                or _to_optional_string(file_config.get("persona"))
                or DEFAULT_PERSONA
            ),
            shell=_resolve_shell(
                os.getenv("COMMANDPILOT_SHELL")
                or _to_optional_string(file_config.get("shell"))
            ),
            working_directory=(
                os.getenv("COMMANDPILOT_CWD")
                or _to_optional_string(file_config.get("cwd"))
            ),
            history_limit=_to_non_negative_int(
                os.getenv("COMMANDPILOT_HISTORY_LIMIT") or file_config.get("history_limit"),
                default=DEFAULT_HISTORY_LIMIT,
            ),
            max_continuations=_to_non_negative_int(
                os.getenv("COMMANDPILOT_MAX_CONTINUATIONS")
                or file_config.get("max_continuations"),
                default=DEFAULT_MAX_CONTINUATIONS,
            ),
            snapshot_lines=_to_non_negative_int(
                os.getenv("COMMANDPILOT_SNAPSHOT_LINES") or file_config.get("snapshot_lines"),
                default=DEFAULT_SNAPSHOT_LINES,
            ),
            command_timeout=_to_optional_positive_float(
                os.getenv("COMMANDPILOT_COMMAND_TIMEOUT") or file_config.get("command_timeout")
            ),
            track_goals=_to_bool(
                os.getenv("COMMANDPILOT_TRACK_GOALS"),
                default=_file_bool(file_config.get("track_goals"), default=True),
            ),
            include_snapshot_in_initial=_to_bool(
                os.getenv("COMMANDPILOT_SNAPSHOT_IN_INITIAL"),
                default=_file_bool(file_config.get("include_snapshot_in_initial"), default=True),
            ),
        )


def _file_bool(value: object, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _to_bool(value, default=default)
    return default


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("COMMANDPILOT_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("commandpilot.config.json")
    local_override = _load_file_config("commandpilot.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _default_reasoning_effort(model: str) -> str | None:
    """Provide practical defaults for reasoning-capable model families."""
    normalized = model.strip().lower()
    if normalized.startswith("gpt-5") or normalized.startswith("o"):
        return "medium"
    return None


def _resolve_shell(value: str | None) -> str:
    if value is None:
        return "bash"
    normalized = value.strip().lower()
    return "sh" if normalized == "sh" else "bash"


def _resolve_log_level(value: str | None) -> str:
    if value is None:
        return "WARNING"
    normalized = value.strip().upper()
    return normalized if normalized in LOG_LEVELS else "WARNING"


def _to_non_negative_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value >= 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed >= 0 else default
    return default


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_optional_positive_float(value)
    return default if parsed is None else parsed


def _to_optional_positive_float(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if parsed > 0 else None
    return None
