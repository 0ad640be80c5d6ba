"""Pseudo-terminal process handle driven by the asyncio event loop."""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import signal
import struct
import termios
from pathlib import Path
from typing import Callable

logger = logging.getLogger("hbench.supervisor.terminal")

READ_CHUNK_SIZE = 65536
# Upper bound on chunks drained synchronously when the terminal is closed.
MAX_DRAIN_READS = 64
INTERRUPT = b"\x03"

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[["AgentTerminal"], None]


def set_terminal_size(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); makes the PTY slave (fd 0) its
    # controlling terminal so ^C and SIGWINCH reach the foreground group.
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


class AgentTerminal:
    """One child process attached to the slave side of a fresh PTY."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        *,
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.process = process
        self.master_fd = master_fd
        self.cols = cols
        self.rows = rows
        self._on_data = on_data
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()
        self._exited = asyncio.Event()
        self._pending = bytearray()
        self._reading = False
        self._writing = False
        self._closed = False
        self._watcher: asyncio.Task | None = None

    @classmethod
    async def spawn(
        cls,
        argv: list[str],
        *,
        cwd: Path,
        cols: int,
        rows: int,
        on_data: DataCallback,
        on_exit: ExitCallback | None = None,
        env: dict[str, str] | None = None,
    ) -> "AgentTerminal":
        """Start argv inside a new session whose stdio is a PTY slave."""
        master_fd, slave_fd = os.openpty()
        try:
            set_terminal_size(slave_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=env,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise
        os.close(slave_fd)
        os.set_blocking(master_fd, False)

        terminal = cls(
            process,
            master_fd,
            cols=cols,
            rows=rows,
            on_data=on_data,
            on_exit=on_exit,
        )
        terminal._start()
        return terminal

    def _start(self) -> None:
        self._loop.add_reader(self.master_fd, self._on_readable)
        self._reading = True
        self._watcher = asyncio.ensure_future(self._watch_exit())

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        logger.info("Process %s exited with code %s", self.pid, returncode)
        self._exited.set()
        if self._on_exit is not None:
            try:
                self._on_exit(self)
            except Exception:
                logger.exception("Exit callback failed for process %s", self.pid)

    async def wait_for_exit(self, timeout: float) -> bool:
        """Wait up to timeout seconds; return True once the process has exited."""
        if self._exited.is_set():
            return True
        try:
            await asyncio.wait_for(self._exited.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._exited.is_set()

    def _read_once(self) -> bool:
        try:
            data = os.read(self.master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return False
        except OSError:
            # EIO: every slave descriptor is closed.
            self._stop_reading()
            return False
        if not data:
            self._stop_reading()
            return False
        try:
            self._on_data(data)
        except Exception:
            logger.exception("Output callback failed for process %s", self.pid)
        return True

    def _on_readable(self) -> None:
        self._read_once()

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self.master_fd)
            self._reading = False

    def write(self, data: str | bytes) -> None:
        """Queue raw input for the child; bytes are forwarded verbatim."""
        if self._closed:
            return
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        if not payload:
            return
        if self._pending:
            self._pending.extend(payload)
            return
        try:
            written = os.write(self.master_fd, payload)
        except BlockingIOError:
            written = 0
        if written < len(payload):
            self._pending.extend(payload[written:])
            self._loop.add_writer(self.master_fd, self._flush_pending)
            self._writing = True

    def _flush_pending(self) -> None:
        try:
            written = os.write(self.master_fd, self._pending)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning("Dropping %d pending input bytes for process %s: %s", len(self._pending), self.pid, exc)
            written = len(self._pending)
        del self._pending[:written]
        if not self._pending:
            self._loop.remove_writer(self.master_fd)
            self._writing = False

    def interrupt(self) -> None:
        self.write(INTERRUPT)

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        set_terminal_size(self.master_fd, cols, rows)
        self.cols = cols
        self.rows = rows

    def send_signal(self, sig: signal.Signals) -> None:
        """Signal the child's process group, falling back to the child alone."""
        if self.returncode is not None:
            return
        try:
            os.killpg(self.pid, sig)
        except OSError:
            self.process.send_signal(sig)

    def close(self) -> None:
        """Flush buffered output to the callback and release the PTY master."""
        if self._closed:
            return
        if self._reading:
            for _ in range(MAX_DRAIN_READS):
                if not self._reading or not self._read_once():
                    break
        self._stop_reading()
        if self._writing:
            self._loop.remove_writer(self.master_fd)
            self._writing = False
        self._pending.clear()
        self._closed = True
        os.close(self.master_fd)
