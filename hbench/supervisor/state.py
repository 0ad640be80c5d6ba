# Runtime state for the supervisor.
# Nothing here is persisted: handles die with the server process.

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any


class AgentPhase(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    INTERRUPT_SENT = "interrupt_sent"
    INTERRUPT_SENT_TWICE = "interrupt_sent_twice"
    TERM_SENT = "term_sent"
    KILL_SENT = "kill_sent"


@dataclass(eq=False)
class TrackedProcess:
    """Live PTY process currently owned by one agent."""

    agent: str
    terminal: Any
    phase: AgentPhase = AgentPhase.RUNNING
    stopping: asyncio.Future | None = None

    @property
    def pid(self) -> int:
        return self.terminal.pid

    @property
    def returncode(self) -> int | None:
        return self.terminal.returncode

    def describe(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "pid": self.pid,
            "phase": self.phase.value,
            "cols": self.terminal.cols,
            "rows": self.terminal.rows,
            "returncode": self.returncode,
        }


class ProcessTable:
    """
    In-memory table of tracked processes keyed by agent.
    Removal is identity-checked so a late exit of a replaced process
    never evicts its successor.
    """

    def __init__(self) -> None:
        self._processes: dict[str, TrackedProcess] = {}

    def register(self, tracked: TrackedProcess) -> None:
        self._processes[tracked.agent] = tracked

    def get(self, agent: str) -> TrackedProcess | None:
        return self._processes.get(agent)

    def remove(self, agent: str, tracked: TrackedProcess) -> bool:
        if self._processes.get(agent) is tracked:
            del self._processes[agent]
            return True
        return False

    def entries(self) -> list[TrackedProcess]:
        return list(self._processes.values())
