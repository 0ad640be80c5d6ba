"""Spawn, track and escalate-stop one PTY process per agent."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import signal
import subprocess
from typing import Any, Awaitable, Callable

from hbench.config import HbenchConfig
from hbench.errors import SpawnFailed, UnknownAgent, WorktreeNotConfigured
from hbench.sandbox.state import WorktreeTable
from hbench.supervisor.state import AgentPhase, ProcessTable, TrackedProcess
from hbench.supervisor.terminal import AgentTerminal

logger = logging.getLogger("hbench.supervisor.process_supervisor")

MIN_COLS, MAX_COLS = 2, 2000
MIN_ROWS, MAX_ROWS = 1, 1000

OutputCallback = Callable[[str, bytes], None]
SpawnFn = Callable[..., Awaitable[Any]]


def _coerce_dimension(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.trunc(number)


def normalize_terminal_size(cols: Any, rows: Any) -> tuple[int, int] | None:
    """Return truncated (cols, rows) when inside terminal bounds, else None."""
    safe_cols = _coerce_dimension(cols)
    safe_rows = _coerce_dimension(rows)
    if safe_cols is None or safe_rows is None:
        return None
    if not MIN_COLS <= safe_cols <= MAX_COLS:
        return None
    if not MIN_ROWS <= safe_rows <= MAX_ROWS:
        return None
    return safe_cols, safe_rows


def build_agent_env() -> dict[str, str]:
    env = dict(os.environ)
    env.setdefault("TERM", "xterm-256color")
    env.setdefault("COLORTERM", "truecolor")
    return env


class ProcessSupervisor:
    """Sole owner of agent processes.

    Every agent has at most one tracked process. Launching an agent that is
    already running first walks the full stop ladder, so two processes for
    one agent never coexist.
    """

    def __init__(
        self,
        config: HbenchConfig,
        worktrees: WorktreeTable,
        *,
        spawn: SpawnFn = AgentTerminal.spawn,
    ) -> None:
        self.config = config
        self.agents = list(config.agents)
        self._worktrees = worktrees
        self._spawn = spawn
        self._processes = ProcessTable()
        self._launch_locks: dict[str, asyncio.Lock] = {}
        self._launching: set[str] = set()
        self._stop_all_in_flight: asyncio.Future | None = None

    def tracked(self, agent: str) -> TrackedProcess | None:
        return self._processes.get(agent)

    def phase(self, agent: str) -> AgentPhase:
        tracked = self._processes.get(agent)
        if tracked is not None:
            return tracked.phase
        if agent in self._launching:
            return AgentPhase.LAUNCHING
        return AgentPhase.IDLE

    def snapshot(self) -> list[dict[str, Any]]:
        """Describe every configured agent's process state."""
        rows: list[dict[str, Any]] = []
        for agent in self.agents:
            tracked = self._processes.get(agent)
            if tracked is not None:
                rows.append(tracked.describe())
            else:
                rows.append({"agent": agent, "pid": None, "phase": self.phase(agent).value})
        return rows

    async def launch(self, agent: str, on_output: OutputCallback) -> TrackedProcess:
        """Stop any running process for agent, then start a fresh one."""
        if agent not in self.agents:
            raise UnknownAgent(agent)
        cwd = self._worktrees.get(agent)
        if cwd is None:
            raise WorktreeNotConfigured(agent)

        lock = self._launch_locks.setdefault(agent, asyncio.Lock())
        async with lock:
            self._launching.add(agent)
            try:
                await self.stop(agent)
                argv = self.config.command_for(agent)
                logger.info("Launching %s: %s (cwd=%s)", agent, " ".join(argv), cwd)
                try:
                    terminal = await self._spawn(
                        argv,
                        cwd=cwd,
                        cols=self.config.default_cols,
                        rows=self.config.default_rows,
                        on_data=lambda data: on_output(agent, data),
                        on_exit=self._handle_exit,
                        env=build_agent_env(),
                    )
                except (OSError, subprocess.SubprocessError) as exc:
                    logger.warning("Failed to spawn %s: %s", agent, exc)
                    raise SpawnFailed(agent, exc) from exc

                tracked = TrackedProcess(agent=agent, terminal=terminal)
                if terminal.returncode is not None:
                    # Exited before registration; its exit callback will find no entry.
                    logger.info("Agent %s exited during launch (code %s)", agent, terminal.returncode)
                    self._close_terminal(tracked)
                    tracked.phase = AgentPhase.IDLE
                    return tracked
                self._processes.register(tracked)
                return tracked
            finally:
                self._launching.discard(agent)

    def _handle_exit(self, terminal: Any) -> None:
        for tracked in self._processes.entries():
            if tracked.terminal is not terminal:
                continue
            if tracked.stopping is None:
                # Exited on its own: release the PTY here since no ladder will.
                self._close_terminal(tracked)
            self._processes.remove(tracked.agent, tracked)
            logger.info("Agent %s process exited (code %s)", tracked.agent, terminal.returncode)
            return

    def write(self, agent: str, data: str | bytes) -> bool:
        tracked = self._processes.get(agent)
        if tracked is None:
            return False
        try:
            tracked.terminal.write(data)
        except OSError as exc:
            logger.warning("Failed to write input for %s: %s", agent, exc)
        return True

    def resize(self, agent: str, cols: Any, rows: Any) -> bool:
        """Best-effort resize; returns True when forwarded to the terminal."""
        size = normalize_terminal_size(cols, rows)
        if size is None:
            return False
        tracked = self._processes.get(agent)
        if tracked is None:
            return False
        safe_cols, safe_rows = size
        try:
            tracked.terminal.resize(safe_cols, safe_rows)
        except OSError as exc:
            logger.warning("Failed to resize terminal for %s to %sx%s: %s", agent, safe_cols, safe_rows, exc)
        return True

    async def stop(self, agent: str) -> None:
        tracked = self._processes.get(agent)
        if tracked is None:
            return
        await self._stop_tracked(tracked)

    async def _stop_tracked(self, tracked: TrackedProcess) -> None:
        if tracked.stopping is None:
            tracked.stopping = asyncio.ensure_future(self._run_stop_ladder(tracked))
        # Callers may be cancelled; the ladder itself always runs to completion.
        await asyncio.shield(tracked.stopping)

    def _stop_steps(self) -> list[tuple[AgentPhase, Callable[[TrackedProcess], None], float]]:
        delays = self.config.stop_delays
        return [
            (AgentPhase.INTERRUPT_SENT, self._send_interrupt, delays.interrupt),
            (AgentPhase.INTERRUPT_SENT_TWICE, self._send_interrupt, delays.second_interrupt),
            (AgentPhase.TERM_SENT, self._send_term, delays.term),
            (AgentPhase.KILL_SENT, self._send_kill, delays.kill),
        ]

    async def _run_stop_ladder(self, tracked: TrackedProcess) -> None:
        terminal = tracked.terminal
        try:
            for phase, send, timeout in self._stop_steps():
                if terminal.returncode is not None:
                    break
                tracked.phase = phase
                send(tracked)
                if await terminal.wait_for_exit(timeout):
                    break
            if terminal.returncode is None:
                logger.warning("Agent %s (pid %s) still running after SIGKILL", tracked.agent, tracked.pid)
        finally:
            self._close_terminal(tracked)
            tracked.phase = AgentPhase.IDLE
            self._processes.remove(tracked.agent, tracked)

    def _send_interrupt(self, tracked: TrackedProcess) -> None:
        try:
            tracked.terminal.interrupt()
        except OSError as exc:
            logger.warning("Failed to send interrupt to %s: %s", tracked.agent, exc)

    def _send_term(self, tracked: TrackedProcess) -> None:
        self._send_signal(tracked, signal.SIGTERM)

    def _send_kill(self, tracked: TrackedProcess) -> None:
        self._send_signal(tracked, signal.SIGKILL)

    def _send_signal(self, tracked: TrackedProcess, sig: signal.Signals) -> None:
        try:
            tracked.terminal.send_signal(sig)
        except (ProcessLookupError, OSError) as exc:
            logger.warning("Failed to send %s to %s: %s", sig.name, tracked.agent, exc)

    def _close_terminal(self, tracked: TrackedProcess) -> None:
        try:
            tracked.terminal.close()
        except OSError as exc:
            logger.warning("Failed to close terminal for %s: %s", tracked.agent, exc)

    async def stop_all(self) -> None:
        """Stop every tracked process in parallel; overlapping calls share one run."""
        if self._stop_all_in_flight is None:
            self._stop_all_in_flight = asyncio.ensure_future(self._stop_all_once())
        await asyncio.shield(self._stop_all_in_flight)

    async def _stop_all_once(self) -> None:
        try:
            # Agents launched while a round is in flight are picked up by the next one.
            while True:
                entries = self._processes.entries()
                if not entries:
                    break
                logger.info("Stopping %d agent processes", len(entries))
                results = await asyncio.gather(
                    *(self._stop_tracked(tracked) for tracked in entries),
                    return_exceptions=True,
                )
                for tracked, result in zip(entries, results):
                    if isinstance(result, BaseException):
                        logger.warning("Stopping %s failed: %s", tracked.agent, result)
                    self._processes.remove(tracked.agent, tracked)
        finally:
            self._stop_all_in_flight = None
