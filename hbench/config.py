"""Persistent sandbox supervisor configuration helpers."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hbench.contracts import CONFIG_SCHEMA_V1

logger = logging.getLogger("hbench.config")

CONFIG_PATH = Path.home() / ".hbench.json"
DEFAULT_SANDBOX_ROOT = Path.home() / ".hbench"
DEFAULT_AGENTS = ["amp", "claude", "codex"]
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4000
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
DEFAULT_STOP_DELAYS = {
    "interrupt": 0.25,
    "second_interrupt": 0.35,
    "term": 1.2,
    "kill": 0.5,
}
MAX_AGENTS = 16
AGENT_NAME_RE = re.compile(r"^(?!\.+$)[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class StopDelays:
    """Per-step wait (seconds) of the stop escalation ladder."""

    interrupt: float = DEFAULT_STOP_DELAYS["interrupt"]
    second_interrupt: float = DEFAULT_STOP_DELAYS["second_interrupt"]
    term: float = DEFAULT_STOP_DELAYS["term"]
    kill: float = DEFAULT_STOP_DELAYS["kill"]


@dataclass(frozen=True)
class HbenchConfig:
    """Validated runtime configuration."""

    agents: tuple[str, ...] = tuple(DEFAULT_AGENTS)
    agent_commands: dict[str, list[str]] = field(default_factory=dict)
    sandbox_root: Path = DEFAULT_SANDBOX_ROOT
    default_cols: int = DEFAULT_COLS
    default_rows: int = DEFAULT_ROWS
    stop_delays: StopDelays = field(default_factory=StopDelays)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    def command_for(self, agent: str) -> list[str]:
        """Return argv used to launch an agent (defaults to the agent name)."""
        return list(self.agent_commands.get(agent) or [agent])


def parse_port(value: str | int | None) -> int | None:
    """Return a valid TCP port or None for missing/malformed values."""
    if value is None:
        return None
    text = str(value).strip()
    if not text or not text.isdigit():
        return None
    parsed = int(text)
    if parsed < 1 or parsed > 65535:
        return None
    return parsed


def default_config() -> dict[str, Any]:
    return {
        "schema_version": CONFIG_SCHEMA_V1,
        "agents": list(DEFAULT_AGENTS),
        "agent_commands": {},
        "sandbox_root": str(DEFAULT_SANDBOX_ROOT),
        "default_cols": DEFAULT_COLS,
        "default_rows": DEFAULT_ROWS,
        "stop_delays": dict(DEFAULT_STOP_DELAYS),
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
    }


def _validate_agents(raw: Any) -> list[str]:
    if not isinstance(raw, list) or not raw:
        raise ValueError("agents must be non-empty list")
    agents: list[str] = []
    for item in raw:
        name = str(item).strip()
        if not AGENT_NAME_RE.match(name):
            raise ValueError(f"invalid agent name: {name!r}")
        if name not in agents:
            agents.append(name)
    if len(agents) > MAX_AGENTS:
        raise ValueError(f"agents exceeds max {MAX_AGENTS}")
    return agents


def _validate_commands(raw: Any, agents: list[str]) -> dict[str, list[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("agent_commands must be object")
    commands: dict[str, list[str]] = {}
    for agent, argv in raw.items():
        if agent not in agents:
            continue
        if isinstance(argv, str):
            argv = [argv]
        if not isinstance(argv, list) or not argv or not all(isinstance(part, str) and part for part in argv):
            raise ValueError(f"agent_commands.{agent} must be non-empty list of strings")
        commands[agent] = list(argv)
    return commands


def _validate_terminal_size(value: Any, name: str, low: int, high: int) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be integer") from None
    if size < low or size > high:
        raise ValueError(f"{name} must be between {low} and {high}")
    return size


def _validate_stop_delays(raw: Any) -> dict[str, float]:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("stop_delays must be object")
    delays = dict(DEFAULT_STOP_DELAYS)
    for key, value in raw.items():
        if key not in delays:
            continue
        try:
            seconds = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"stop_delays.{key} must be number") from None
        if seconds <= 0 or seconds > 30:
            raise ValueError(f"stop_delays.{key} must be in (0, 30]")
        delays[key] = seconds
    return delays


def validate_config(config: dict[str, Any]) -> dict[str, Any]:
    """Validate config schema, agent set and terminal constraints."""
    if not isinstance(config, dict):
        raise ValueError("config must be object")
    schema_version = config.get("schema_version", CONFIG_SCHEMA_V1)
    if schema_version != CONFIG_SCHEMA_V1:
        raise ValueError("unsupported config schema_version")
    agents = _validate_agents(config.get("agents", DEFAULT_AGENTS))
    sandbox_root = str(config.get("sandbox_root") or DEFAULT_SANDBOX_ROOT).strip()
    port = parse_port(config.get("port", DEFAULT_PORT))
    if port is None:
        raise ValueError("port must be integer between 1 and 65535")
    return {
        "schema_version": CONFIG_SCHEMA_V1,
        "agents": agents,
        "agent_commands": _validate_commands(config.get("agent_commands"), agents),
        "sandbox_root": sandbox_root,
        "default_cols": _validate_terminal_size(config.get("default_cols", DEFAULT_COLS), "default_cols", 2, 2000),
        "default_rows": _validate_terminal_size(config.get("default_rows", DEFAULT_ROWS), "default_rows", 1, 1000),
        "stop_delays": _validate_stop_delays(config.get("stop_delays")),
        "host": str(config.get("host") or DEFAULT_HOST).strip(),
        "port": port,
    }


def build_config(validated: dict[str, Any]) -> HbenchConfig:
    """Freeze a validated config mapping into an HbenchConfig."""
    return HbenchConfig(
        agents=tuple(validated["agents"]),
        agent_commands=dict(validated["agent_commands"]),
        sandbox_root=Path(validated["sandbox_root"]).expanduser(),
        default_cols=validated["default_cols"],
        default_rows=validated["default_rows"],
        stop_delays=StopDelays(**validated["stop_delays"]),
        host=validated["host"],
        port=validated["port"],
    )


def _resolve_config_path(path: Path | None) -> Path:
    if path is not None:
        return path
    override = os.getenv("HBENCH_CONFIG", "").strip()
    return Path(override).expanduser() if override else CONFIG_PATH


def load_config_dict(path: Path | None = None) -> dict[str, Any]:
    """Load config from disk or return defaults."""
    config_path = _resolve_config_path(path)
    if not config_path.exists():
        return default_config()
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except Exception as exc:
        logger.warning("Unreadable config at %s, using defaults: %s", config_path, exc)
        return default_config()
    if not isinstance(raw, dict):
        return default_config()
    try:
        return validate_config(raw)
    except ValueError as exc:
        logger.warning("Invalid config at %s, using defaults: %s", config_path, exc)
        return default_config()


def load_config(path: Path | None = None) -> HbenchConfig:
    """Load validated config and apply environment overrides."""
    validated = load_config_dict(path)
    sandbox_override = os.getenv("HBENCH_SANDBOX_ROOT", "").strip()
    if sandbox_override:
        validated["sandbox_root"] = sandbox_override
    for env_name in ("HBENCH_PORT", "PORT"):
        port = parse_port(os.getenv(env_name))
        if port is not None:
            validated["port"] = port
            break
    return build_config(validated)


def save_config(config: dict[str, Any], path: Path | None = None) -> dict[str, Any]:
    """Validate and persist config to disk."""
    validated = validate_config(config)
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(validated, indent=2), encoding="utf-8")
    return validated
