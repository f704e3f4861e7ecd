"""Load, validate, and resolve runner.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from claude_runner.config.models import RunnerConfig

DEFAULT_CONFIG_NAME = "runner.yaml"

#: Keys whose values are filesystem paths resolved against the config dir.
_PATH_KEYS = ("working_directory", "log_dir")
_PATH_LIST_KEYS = ("allowed_directories", "mcp_config_paths")


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None, **overrides: Any) -> RunnerConfig:
    """Load and validate a runner.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              runner.yaml in the current directory.
        overrides: Field values applied on top of the file (e.g. callbacks
              or a working directory chosen at run time).

    Returns:
        A validated RunnerConfig instance.

    Raises:
        ConfigError: On missing file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    raw = _read_yaml(config_path)
    base_dir = config_path.parent.resolve()
    _load_env(base_dir)
    _resolve_system_prompt(raw, base_dir)
    _resolve_paths(raw, base_dir)
    _expand_env(raw)
    raw.update(overrides)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    if not default.is_file():
        msg = (
            f"No {DEFAULT_CONFIG_NAME} found in {Path.cwd()}. "
            "Run `claude-runner init` to create one."
        )
        raise ConfigError(msg)
    return default


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _resolve_system_prompt(raw: dict[str, Any], base_dir: Path) -> None:
    for key in ("system_prompt", "append_system_prompt"):
        value = raw.get(key)
        if not isinstance(value, str):
            continue
        if not (value.startswith("./") or value.startswith("/")):
            continue
        prompt_path = (base_dir / value).resolve()
        if not prompt_path.is_relative_to(base_dir.resolve()):
            msg = f"Prompt file for '{key}' escapes project directory: {value}"
            raise ConfigError(msg)
        if not prompt_path.is_file():
            msg = f"Prompt file not found for '{key}': {value}"
            raise ConfigError(msg)
        raw[key] = prompt_path.read_text(encoding="utf-8").strip()


def _resolve_paths(raw: dict[str, Any], base_dir: Path) -> None:
    for key in _PATH_KEYS:
        value = raw.get(key)
        if isinstance(value, str):
            raw[key] = _anchor(value, base_dir)
    for key in _PATH_LIST_KEYS:
        values = raw.get(key)
        if isinstance(values, list):
            raw[key] = [
                _anchor(v, base_dir) if isinstance(v, str) else v for v in values
            ]


def _anchor(value: str, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def _expand_env(raw: dict[str, Any]) -> None:
    env = raw.get("env")
    if not isinstance(env, dict):
        return
    raw["env"] = {
        str(k): os.path.expandvars(v) if isinstance(v, str) else v
        for k, v in env.items()
    }


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _validate(raw: dict[str, Any]) -> RunnerConfig:
    try:
        return RunnerConfig.model_validate(raw)
    except ValidationError as exc:
        errors = exc.errors()
        parts: list[str] = []
        for err in errors:
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            # Make certain error messages more user-friendly
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
