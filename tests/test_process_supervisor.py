"""Tests for PTY process tracking, stop escalation and stop-all coalescing."""

from __future__ import annotations

import asyncio
import math
import os
import shutil
import signal
import tempfile
import time
import unittest
from pathlib import Path

from agent_fakes import FakeSpawner, fast_config

from hbench.config import StopDelays
from hbench.errors import SpawnFailed, UnknownAgent, WorktreeNotConfigured
from hbench.sandbox.state import WorktreeTable
from hbench.supervisor.process_supervisor import ProcessSupervisor, normalize_terminal_size
from hbench.supervisor.state import AgentPhase


def _noop_output(agent: str, data: bytes) -> None:
    return None


class TerminalSizeTests(unittest.TestCase):
    """Validate resize bounds and coercion."""

    def test_rejects_out_of_bounds(self) -> None:
        self.assertIsNone(normalize_terminal_size(1, 24))
        self.assertIsNone(normalize_terminal_size(2001, 24))
        self.assertIsNone(normalize_terminal_size(80, 0))
        self.assertIsNone(normalize_terminal_size(80, 1001))

    def test_rejects_non_finite_and_non_numeric(self) -> None:
        self.assertIsNone(normalize_terminal_size(math.inf, 24))
        self.assertIsNone(normalize_terminal_size(80, math.nan))
        self.assertIsNone(normalize_terminal_size("wide", 24))
        self.assertIsNone(normalize_terminal_size(None, 24))
        self.assertIsNone(normalize_terminal_size(True, 24))

    def test_accepts_and_truncates(self) -> None:
        self.assertEqual(normalize_terminal_size(80, 24), (80, 24))
        self.assertEqual(normalize_terminal_size(120.9, 40.2), (120, 40))
        self.assertEqual(normalize_terminal_size(2, 1), (2, 1))
        self.assertEqual(normalize_terminal_size(2000, 1000), (2000, 1000))


class ProcessSupervisorTests(unittest.IsolatedAsyncioTestCase):
    """Exercise launch/stop semantics against fake terminals."""

    async def asyncSetUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self._tmpdir.name)
        self.worktrees = WorktreeTable()
        for agent in ("amp", "claude", "codex"):
            path = self.root / agent
            path.mkdir()
            self.worktrees.set(agent, path)

    async def asyncTearDown(self) -> None:
        self._tmpdir.cleanup()

    def _supervisor(self, spawner: FakeSpawner) -> ProcessSupervisor:
        return ProcessSupervisor(fast_config(self.root), self.worktrees, spawn=spawner)

    async def test_launch_requires_worktree(self) -> None:
        supervisor = self._supervisor(FakeSpawner())
        self.worktrees.clear()
        with self.assertRaises(WorktreeNotConfigured):
            await supervisor.launch("amp", _noop_output)

    async def test_launch_rejects_unknown_agent(self) -> None:
        supervisor = self._supervisor(FakeSpawner())
        with self.assertRaises(UnknownAgent):
            await supervisor.launch("gemini", _noop_output)

    async def test_launch_uses_worktree_and_default_size(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        tracked = await supervisor.launch("amp", _noop_output)
        self.assertIs(supervisor.tracked("amp"), tracked)
        self.assertEqual(spawner.calls[0]["argv"], ["amp"])
        self.assertEqual(spawner.calls[0]["cwd"], self.root / "amp")
        self.assertEqual((spawner.calls[0]["cols"], spawner.calls[0]["rows"]), (80, 24))
        self.assertEqual(supervisor.phase("amp"), AgentPhase.RUNNING)

    async def test_spawn_failure_is_wrapped(self) -> None:
        supervisor = self._supervisor(FakeSpawner(error=FileNotFoundError("amp")))
        with self.assertRaises(SpawnFailed) as ctx:
            await supervisor.launch("amp", _noop_output)
        self.assertEqual(ctx.exception.agent, "amp")
        self.assertIsNone(supervisor.tracked("amp"))

    async def test_output_is_tagged_with_agent(self) -> None:
        received: list[tuple[str, bytes]] = []
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("codex", lambda agent, data: received.append((agent, data)))
        spawner.terminals[0].on_data(b"hello")
        self.assertEqual(received, [("codex", b"hello")])

    async def test_stop_skips_remaining_steps_after_exit(self) -> None:
        spawner = FakeSpawner(exit_after=1)
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        await supervisor.stop("amp")
        terminal = spawner.terminals[0]
        self.assertEqual(terminal.interrupts, 1)
        self.assertEqual(terminal.signals, [])
        self.assertTrue(terminal.closed)
        self.assertIsNone(supervisor.tracked("amp"))
        self.assertEqual(supervisor.phase("amp"), AgentPhase.IDLE)

    async def test_stop_escalates_to_term(self) -> None:
        spawner = FakeSpawner(exit_after=3)
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        await supervisor.stop("amp")
        terminal = spawner.terminals[0]
        self.assertEqual(terminal.interrupts, 2)
        self.assertEqual(terminal.signals, [signal.SIGTERM])
        self.assertTrue(terminal.closed)

    async def test_stop_escalates_to_kill_and_clears_unresponsive_process(self) -> None:
        spawner = FakeSpawner(exit_after=None)
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        await supervisor.stop("amp")
        terminal = spawner.terminals[0]
        self.assertEqual(terminal.signals, [signal.SIGTERM, signal.SIGKILL])
        self.assertTrue(terminal.closed)
        self.assertIsNone(supervisor.tracked("amp"))

    async def test_stop_without_process_is_noop(self) -> None:
        supervisor = self._supervisor(FakeSpawner())
        await supervisor.stop("amp")
        self.assertFalse(supervisor.write("amp", "ls\r"))
        self.assertFalse(supervisor.resize("amp", 80, 24))

    async def test_relaunch_stops_previous_process_first(self) -> None:
        spawner = FakeSpawner(exit_after=2)
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        second = await supervisor.launch("amp", _noop_output)
        first_terminal, second_terminal = spawner.terminals
        self.assertEqual(first_terminal.interrupts, 2)
        self.assertTrue(first_terminal.closed)
        self.assertIsNotNone(first_terminal.returncode)
        self.assertIs(supervisor.tracked("amp"), second)
        self.assertIs(second.terminal, second_terminal)

    async def test_late_exit_of_replaced_process_keeps_successor(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        replacement = await supervisor.launch("amp", _noop_output)
        supervisor._handle_exit(spawner.terminals[0])
        self.assertIs(supervisor.tracked("amp"), replacement)

    async def test_natural_exit_untracks_and_closes(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        spawner.terminals[0].finish(0)
        self.assertIsNone(supervisor.tracked("amp"))
        self.assertTrue(spawner.terminals[0].closed)

    async def test_write_and_resize_forward_to_terminal(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        self.assertTrue(supervisor.write("amp", "ls\r"))
        self.assertTrue(supervisor.resize("amp", 80, 24))
        self.assertFalse(supervisor.resize("amp", 1, 24))
        self.assertFalse(supervisor.resize("amp", 2001, 24))
        self.assertFalse(supervisor.resize("amp", 80, 0))
        self.assertFalse(supervisor.resize("amp", 80, 1001))
        self.assertFalse(supervisor.resize("amp", math.inf, 24))
        terminal = spawner.terminals[0]
        self.assertEqual(terminal.writes, ["ls\r"])
        self.assertEqual(terminal.resizes, [(80, 24)])

    async def test_resize_failure_is_absorbed(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)

        def broken_resize(cols: int, rows: int) -> None:
            raise OSError("bad fd")

        spawner.terminals[0].resize = broken_resize
        self.assertTrue(supervisor.resize("amp", 100, 30))

    async def test_concurrent_stop_all_runs_one_ladder_per_process(self) -> None:
        spawner = FakeSpawner(exit_after=3)
        supervisor = self._supervisor(spawner)
        for agent in ("amp", "claude", "codex"):
            await supervisor.launch(agent, _noop_output)

        await asyncio.gather(supervisor.stop_all(), supervisor.stop_all(), supervisor.stop("amp"))

        for terminal in spawner.terminals:
            self.assertEqual(terminal.signals, [signal.SIGTERM])
            self.assertEqual(terminal.interrupts, 2)
            self.assertIsNotNone(terminal.returncode)
            self.assertTrue(terminal.closed)
        self.assertEqual(supervisor.snapshot()[0]["phase"], "idle")
        for agent in ("amp", "claude", "codex"):
            self.assertIsNone(supervisor.tracked(agent))

    async def test_stop_all_can_run_again_after_completion(self) -> None:
        spawner = FakeSpawner()
        supervisor = self._supervisor(spawner)
        await supervisor.launch("amp", _noop_output)
        await supervisor.stop_all()
        await supervisor.launch("amp", _noop_output)
        await supervisor.stop_all()
        self.assertEqual(len(spawner.terminals), 2)
        self.assertTrue(all(terminal.closed for terminal in spawner.terminals))
        self.assertIsNone(supervisor.tracked("amp"))

    async def test_stop_ladder_runs_agents_in_parallel(self) -> None:
        spawner = FakeSpawner(exit_after=None)
        supervisor = ProcessSupervisor(
            fast_config(self.root, stop_delays=StopDelays(0.1, 0.1, 0.1, 0.1)),
            self.worktrees,
            spawn=spawner,
        )
        for agent in ("amp", "claude", "codex"):
            await supervisor.launch(agent, _noop_output)
        started = time.monotonic()
        await supervisor.stop_all()
        # One ladder is ~0.4s; three sequential ladders would take ~1.2s.
        self.assertLess(time.monotonic() - started, 1.0)

    async def test_stop_all_also_stops_agents_launched_mid_run(self) -> None:
        spawner = FakeSpawner(exit_after=None)
        supervisor = ProcessSupervisor(
            fast_config(self.root, stop_delays=StopDelays(0.1, 0.1, 0.1, 0.1)),
            self.worktrees,
            spawn=spawner,
        )
        await supervisor.launch("amp", _noop_output)
        stopping = asyncio.ensure_future(supervisor.stop_all())
        await asyncio.sleep(0.05)
        await supervisor.launch("claude", _noop_output)
        await stopping

        amp_terminal, claude_terminal = spawner.terminals
        for terminal in (amp_terminal, claude_terminal):
            self.assertEqual(terminal.signals, [signal.SIGTERM, signal.SIGKILL])
            self.assertTrue(terminal.closed)
        self.assertIsNone(supervisor.tracked("claude"))

        await supervisor.launch("claude", _noop_output)
        open_claude_terminals = [
            call for call, terminal in zip(spawner.calls, spawner.terminals)
            if call["cwd"] == self.root / "claude" and not terminal.closed
        ]
        self.assertEqual(len(open_claude_terminals), 1)
        await supervisor.stop_all()

    async def test_process_exited_before_registration_is_closed(self) -> None:
        spawner = FakeSpawner()

        async def spawn_already_exited(argv, **kwargs):
            terminal = await spawner(argv, **kwargs)
            terminal.returncode = 0
            asyncio.get_running_loop().call_soon(terminal.on_exit, terminal)
            return terminal

        supervisor = ProcessSupervisor(fast_config(self.root), self.worktrees, spawn=spawn_already_exited)
        tracked = await supervisor.launch("amp", _noop_output)
        await asyncio.sleep(0)

        self.assertIsNone(supervisor.tracked("amp"))
        self.assertEqual(tracked.phase, AgentPhase.IDLE)
        self.assertTrue(spawner.terminals[0].closed)


@unittest.skipUnless(os.name == "posix" and shutil.which("sh"), "requires a POSIX shell")
class RealTerminalTests(unittest.IsolatedAsyncioTestCase):
    """End-to-end PTY launch/stop against real child processes."""

    async def asyncSetUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self._tmpdir.name)
        self.worktrees = WorktreeTable()
        worktree = self.root / "amp"
        worktree.mkdir()
        self.worktrees.set("amp", worktree)

    async def asyncTearDown(self) -> None:
        self._tmpdir.cleanup()

    def _supervisor(self, command: list[str]) -> ProcessSupervisor:
        config = fast_config(
            self.root,
            agents=("amp",),
            agent_commands={"amp": command},
            stop_delays=StopDelays(),
        )
        return ProcessSupervisor(config, self.worktrees)

    async def test_launch_streams_output_and_stop_finishes_within_ladder(self) -> None:
        chunks: list[bytes] = []
        supervisor = self._supervisor(["sh", "-c", "echo hbench-ready; exec sleep 30"])
        tracked = await supervisor.launch("amp", lambda agent, data: chunks.append(data))

        deadline = time.monotonic() + 5
        while b"hbench-ready" not in b"".join(chunks) and tracked.returncode is None:
            if time.monotonic() > deadline:
                self.fail("no output from agent process")
            await asyncio.sleep(0.05)

        self.assertTrue(supervisor.resize("amp", 100, 30))
        self.assertEqual((tracked.terminal.cols, tracked.terminal.rows), (100, 30))

        started = time.monotonic()
        await supervisor.stop("amp")
        self.assertLess(time.monotonic() - started, 2.6)
        self.assertIsNotNone(tracked.returncode)
        self.assertTrue(tracked.terminal.closed)
        self.assertIsNone(supervisor.tracked("amp"))

    async def test_input_reaches_process(self) -> None:
        chunks: list[bytes] = []
        supervisor = self._supervisor(["sh", "-c", "read line; echo got-$line"])
        tracked = await supervisor.launch("amp", lambda agent, data: chunks.append(data))
        supervisor.write("amp", "ping\r")

        deadline = time.monotonic() + 5
        while b"got-ping" not in b"".join(chunks):
            if time.monotonic() > deadline:
                self.fail("process never echoed input")
            await asyncio.sleep(0.05)
        await supervisor.stop("amp")
        self.assertIsNotNone(tracked.returncode)

    async def test_process_that_exits_on_its_own_is_untracked(self) -> None:
        supervisor = self._supervisor(["sh", "-c", "exit 3"])
        tracked = await supervisor.launch("amp", _noop_output)
        deadline = time.monotonic() + 5
        while supervisor.tracked("amp") is not None:
            if time.monotonic() > deadline:
                self.fail("exited process still tracked")
            await asyncio.sleep(0.05)
        self.assertEqual(tracked.returncode, 3)
        self.assertTrue(tracked.terminal.closed)

    async def test_missing_executable_raises_spawn_failed(self) -> None:
        supervisor = self._supervisor(["hbench-definitely-missing-binary"])
        with self.assertRaises(SpawnFailed):
            await supervisor.launch("amp", _noop_output)
        self.assertIsNone(supervisor.tracked("amp"))


if __name__ == "__main__":
    unittest.main()
