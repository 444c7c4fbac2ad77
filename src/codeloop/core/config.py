"""Configuration loading (TOML, env vars, CODELOOP.md)."""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from codeloop.errors import ConfigError
from codeloop.permissions.rules import PermissionConfig
from codeloop.types.config import (
    PermissionMode,
    QueryConfig,
    RunConfig,
    ShellConfig,
)

logger = logging.getLogger(__name__)

# Load .env from current directory (and parents), won't override existing env vars
load_dotenv()

CONFIG_DIR_NAME = ".codeloop"
PROJECT_DOC_NAMES = ("CODELOOP.md", ".codeloop/CODELOOP.md")


def user_config_dir() -> Path:
    return Path.home() / CONFIG_DIR_NAME


def load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}

    if key := os.environ.get("ANTHROPIC_API_KEY"):
        config["anthropic_api_key"] = key
    if model := os.environ.get("CODELOOP_MODEL"):
        config["model"] = model
    if bash := os.environ.get("CODELOOP_BASH"):
        config["shell_path"] = bash

    return config


def find_config_file(cwd: str | None = None) -> Path | None:
    """First of ``<cwd>/.codeloop/config.toml`` and ``~/.codeloop/config.toml``."""
    candidates = [
        Path(cwd or Path.cwd()) / CONFIG_DIR_NAME / "config.toml",
        user_config_dir() / "config.toml",
    ]
    for path in candidates:
        if path.is_file():
            return path
    return None


def load_toml_config(cwd: str | None = None) -> dict[str, Any]:
    """Load configuration from .codeloop/config.toml if it exists."""
    path = find_config_file(cwd)
    if path is None:
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return {}


def load_project_docs(cwd: str | None = None) -> str | None:
    """Load CODELOOP.md from the project directory."""
    root = Path(cwd or Path.cwd())
    for name in PROJECT_DOC_NAMES:
        md_path = root / name
        if md_path.is_file():
            try:
                return md_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not read %s: %s", md_path, exc)
    return None


def resolve_api_key(explicit_key: str | None = None) -> str | None:
    """Resolve the Anthropic API key from explicit value, environment, or config file."""
    if explicit_key:
        return explicit_key

    val = os.environ.get("ANTHROPIC_API_KEY")
    if val:
        return val

    # Fallback: check ~/.codeloop/config.toml
    config_path = user_config_dir() / "config.toml"
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return None
        key = data.get("providers", {}).get("anthropic", {}).get("api_key")
        if isinstance(key, str) and key:
            return key

    return None


# ---------------------------------------------------------------------------
# Typed sections
# ---------------------------------------------------------------------------

def _expect(section: str, key: str, value: Any, kind: type | tuple[type, ...]) -> Any:
    # bool is an int subclass; never accept it for numeric keys
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigError(f"[{section}] {key} has the wrong type: {value!r}")
    return value


def _string_list(section: str, key: str, value: Any) -> list[str]:
    _expect(section, key, value, list)
    if not all(isinstance(item, str) for item in value):
        raise ConfigError(f"[{section}] {key} must be a list of strings")
    return list(value)


def parse_permission_mode(value: str) -> PermissionMode:
    try:
        return PermissionMode(value)
    except ValueError:
        valid = ", ".join(m.value for m in PermissionMode)
        raise ConfigError(f"Unknown permission mode {value!r} (expected one of: {valid})") from None


def parse_shell_config(data: dict[str, Any]) -> ShellConfig:
    """Build a ShellConfig from the ``[shell]`` table."""
    kwargs: dict[str, Any] = {}
    if "timeout_ms" in data:
        timeout = _expect("shell", "timeout_ms", data["timeout_ms"], int)
        if timeout <= 0:
            raise ConfigError("[shell] timeout_ms must be positive")
        kwargs["timeout_ms"] = timeout
    if "blocked_commands" in data:
        kwargs["blocked_commands"] = tuple(
            _string_list("shell", "blocked_commands", data["blocked_commands"]),
        )
    if "path" in data:
        kwargs["shell_path"] = _expect("shell", "path", data["path"], str)
    return ShellConfig(**kwargs)


def parse_query_config(data: dict[str, Any]) -> QueryConfig:
    """Build a QueryConfig from the ``[query]`` table."""
    kwargs: dict[str, Any] = {}
    if "max_tool_concurrency" in data:
        value = _expect("query", "max_tool_concurrency", data["max_tool_concurrency"], int)
        if value < 1:
            raise ConfigError("[query] max_tool_concurrency must be at least 1")
        kwargs["max_tool_concurrency"] = value
    if "max_thinking_tokens" in data:
        value = _expect("query", "max_thinking_tokens", data["max_thinking_tokens"], int)
        if value < 0:
            raise ConfigError("[query] max_thinking_tokens must not be negative")
        kwargs["max_thinking_tokens"] = value
    if "compaction_threshold" in data:
        value = _expect(
            "query", "compaction_threshold", data["compaction_threshold"], (int, float),
        )
        if not 0 < value <= 1:
            raise ConfigError("[query] compaction_threshold must be in (0, 1]")
        kwargs["compaction_threshold"] = float(value)
    if "context_window" in data:
        kwargs["context_window"] = _expect("query", "context_window", data["context_window"], int)
    if "max_turns" in data:
        kwargs["max_turns"] = _expect("query", "max_turns", data["max_turns"], int)
    return QueryConfig(**kwargs)


def load_run_config(cwd: str | None = None, **overrides: Any) -> RunConfig:
    """Merge config file, environment and explicit *overrides* into a RunConfig.

    Explicit overrides win over the environment, which wins over the file.
    """
    data = load_toml_config(cwd)
    env = load_env_config()

    permissions = data.get("permissions", {})
    config = RunConfig(cwd=cwd)
    if "mode" in permissions:
        config.permission_mode = parse_permission_mode(
            _expect("permissions", "mode", permissions["mode"], str),
        )
    if "allow" in permissions:
        config.allow_rules = _string_list("permissions", "allow", permissions["allow"])
    if "deny" in permissions:
        config.deny_rules = _string_list("permissions", "deny", permissions["deny"])
    # Parse once so bad rules fail at load time
    PermissionConfig.from_strings(config.allow_rules, config.deny_rules)

    config.shell = parse_shell_config(data.get("shell", {}))
    if env.get("shell_path") and config.shell.shell_path is None:
        config.shell = dataclasses.replace(config.shell, shell_path=env["shell_path"])
    config.query = parse_query_config(data.get("query", {}))

    if isinstance(data.get("model"), str):
        config.model = data["model"]
    if "model" in env:
        config.model = env["model"]

    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, key):
            raise ConfigError(f"Unknown configuration option: {key}")
        setattr(config, key, value)
    return config


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def save_allowed_rule(rule: str, cwd: str | None = None) -> Path:
    """Append *rule* to ``[permissions] allow`` in the project config.

    Returns the config file path.
    """
    config_dir = Path(cwd or Path.cwd()) / CONFIG_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.toml"

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)

    permissions = data.setdefault("permissions", {})
    allow = permissions.setdefault("allow", [])
    if rule not in allow:
        allow.append(rule)

    _write_toml(config_path, data)
    return config_path


def save_api_key(api_key: str) -> Path:
    """Save an API key to ~/.codeloop/config.toml and set it in the current process.

    Returns the path written to.
    """
    config_dir = user_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.toml"

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Replacing unreadable %s: %s", config_path, exc)

    data.setdefault("providers", {}).setdefault("anthropic", {})["api_key"] = api_key
    _write_toml(config_path, data)

    # Set env var so it takes effect immediately in this process
    os.environ["ANTHROPIC_API_KEY"] = api_key
    return config_path


def _write_toml(path: Path, data: dict[str, Any]) -> None:
    """Write a dict as TOML to *path* (minimal writer, no external dependency)."""
    lines: list[str] = []
    # Write top-level simple keys first
    for k, v in data.items():
        if not isinstance(v, dict):
            lines.append(f"{k} = {_toml_value(v)}")
    # Write sections
    for k, v in data.items():
        if isinstance(v, dict):
            _write_toml_section(lines, [k], v)
    path.write_text("\n".join(lines) + "\n")
    # Restrict permissions — config may contain API keys
    try:
        path.chmod(0o600)
    except OSError:
        pass  # Windows or other OS that doesn't support chmod


def _write_toml_section(lines: list[str], prefix: list[str], d: dict[str, Any]) -> None:
    """Recursively write TOML sections."""
    simple: list[tuple[str, Any]] = []
    nested: list[tuple[str, dict[str, Any]]] = []
    for k, v in d.items():
        if isinstance(v, dict):
            nested.append((k, v))
        else:
            simple.append((k, v))
    if simple:
        lines.append(f"\n[{'.'.join(prefix)}]")
        for k, v in simple:
            lines.append(f"{k} = {_toml_value(v)}")
    for k, v in nested:
        _write_toml_section(lines, prefix + [k], v)


def _toml_value(v: Any) -> str:
    """Format a Python value as a TOML literal."""
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    if isinstance(v, str):
        escaped = v.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    if isinstance(v, (list, tuple)):
        items = ", ".join(_toml_value(item) for item in v)
        return f"[{items}]"
    raise ConfigError(f"Cannot write {type(v).__name__} value to TOML")
