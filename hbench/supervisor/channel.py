"""Duplex terminal channel: demultiplex control/input, multiplex agent output."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Coroutine

from pydantic import BaseModel, ValidationError

from hbench.contracts import (
    MISSING_REPO_URL_MESSAGE,
    MSG_INPUT,
    MSG_RESIZE,
    MSG_SETUP,
    MSG_SETUP_STATUS,
    MSG_USE_EXISTING,
    MSG_WIPE,
    MSG_WIPE_STATUS,
    NO_WORKTREE_NOTICE,
    SETUP_MODE_EXISTING,
    STATUS_ERROR,
    STATUS_START,
    STATUS_SUCCESS,
)
from hbench.errors import HbenchError, SpawnFailed, WorktreeNotConfigured
from hbench.sandbox.store import SandboxStore
from hbench.sandbox.worktrees import WorktreeProvisioner
from hbench.supervisor.models import (
    InputMessage,
    OutputFrame,
    RepoMessage,
    ResizeMessage,
    StatusFrame,
    encode_frame,
)
from hbench.supervisor.process_supervisor import ProcessSupervisor

logger = logging.getLogger("hbench.supervisor.channel")

SendFn = Callable[[str], Awaitable[None]]


def _error_message(error: BaseException) -> str:
    return str(error) or "Unknown error"


class ChannelMultiplexer:
    """Routes one live connection's messages to the supervisor and provisioner.

    Inbound handling never raises: garbage is logged and dropped. Slow work
    (launch, setup, wipe) runs in background tasks so that input and resize
    for other agents keep flowing while a stop ladder or clone is pending.
    Outbound frames go through a single queue drained by `run_sender`.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        provisioner: WorktreeProvisioner,
        store: SandboxStore,
        send: SendFn,
    ) -> None:
        self.supervisor = supervisor
        self.provisioner = provisioner
        self.store = store
        self._send = send
        self._outbound: asyncio.Queue[str | None] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def agents(self) -> list[str]:
        return self.supervisor.agents

    # outbound

    def push(self, frame: BaseModel) -> None:
        if self._closed:
            return
        self._outbound.put_nowait(encode_frame(frame))

    def on_output(self, agent: str, data: bytes) -> None:
        self.push(OutputFrame.from_bytes(agent, data))

    def send_notice(self, agent: str, message: str) -> None:
        self.on_output(agent, f"{message}\r\n".encode("utf-8"))

    def send_status(self, frame_type: str, status: str, **context: Any) -> None:
        self.push(StatusFrame(type=frame_type, status=status, **context))

    async def run_sender(self) -> None:
        """Forward queued frames to the connection until the channel closes."""
        while True:
            frame = await self._outbound.get()
            if frame is None:
                return
            await self._send(frame)

    # inbound

    async def handle_message(self, message: Any) -> None:
        if not isinstance(message, str):
            logger.debug("Ignoring non-text channel message")
            return
        if message in self.agents:
            self._spawn_task(self.launch(message))
            return
        if not message.startswith("{"):
            logger.debug("Ignoring unrecognized channel message: %.80s", message)
            return
        try:
            payload = json.loads(message)
        except ValueError as exc:
            logger.warning("Invalid message payload: %s", exc)
            return
        if not isinstance(payload, dict):
            return
        try:
            await self._dispatch(payload)
        except ValidationError as exc:
            logger.warning("Invalid %s message: %s", payload.get("type"), exc.errors())

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        message_type = payload.get("type")
        if message_type == MSG_INPUT:
            request = InputMessage.model_validate(payload)
            if request.agent in self.agents:
                self.supervisor.write(request.agent, request.data)
        elif message_type == MSG_RESIZE:
            resize = ResizeMessage.model_validate(payload)
            if resize.agent in self.agents:
                self.supervisor.resize(resize.agent, resize.cols, resize.rows)
        elif message_type == MSG_SETUP:
            setup = RepoMessage.model_validate(payload)
            self._spawn_task(self.setup(setup.repo_url))
        elif message_type == MSG_USE_EXISTING:
            existing = RepoMessage.model_validate(payload)
            self.use_existing(existing.repo_url)
        elif message_type == MSG_WIPE:
            self._spawn_task(self.wipe())
        else:
            logger.debug("Ignoring message with unknown type %r", message_type)

    # operations

    async def launch(self, agent: str) -> None:
        try:
            await self.supervisor.launch(agent, self.on_output)
        except WorktreeNotConfigured:
            logger.warning("Missing worktree for agent %s", agent)
            self.send_notice(agent, NO_WORKTREE_NOTICE)
        except SpawnFailed as exc:
            self.send_notice(agent, _error_message(exc))

    async def setup(self, repo_url: Any) -> None:
        if not isinstance(repo_url, str) or not repo_url:
            self.send_status(MSG_SETUP_STATUS, STATUS_ERROR, message=MISSING_REPO_URL_MESSAGE)
            return
        self.send_status(MSG_SETUP_STATUS, STATUS_START, repo_url=repo_url)
        try:
            await self.provisioner.provision(repo_url)
        except (HbenchError, OSError) as exc:
            logger.warning("Setup failed for %s: %s", repo_url, exc)
            self.send_status(MSG_SETUP_STATUS, STATUS_ERROR, repo_url=repo_url, message=_error_message(exc))
            return
        self.send_status(MSG_SETUP_STATUS, STATUS_SUCCESS, repo_url=repo_url)

    def use_existing(self, repo_url: Any) -> None:
        if not isinstance(repo_url, str) or not repo_url:
            self.send_status(
                MSG_SETUP_STATUS,
                STATUS_ERROR,
                message=MISSING_REPO_URL_MESSAGE,
                mode=SETUP_MODE_EXISTING,
            )
            return
        self.send_status(MSG_SETUP_STATUS, STATUS_START, repo_url=repo_url, mode=SETUP_MODE_EXISTING)
        try:
            self.provisioner.load_existing(repo_url)
        except HbenchError as exc:
            logger.warning("Use existing worktrees failed for %s: %s", repo_url, exc)
            self.send_status(
                MSG_SETUP_STATUS,
                STATUS_ERROR,
                repo_url=repo_url,
                mode=SETUP_MODE_EXISTING,
                message=_error_message(exc),
            )
            return
        self.send_status(MSG_SETUP_STATUS, STATUS_SUCCESS, repo_url=repo_url, mode=SETUP_MODE_EXISTING)

    async def wipe(self) -> None:
        self.send_status(MSG_WIPE_STATUS, STATUS_START)
        try:
            await self.supervisor.stop_all()
            await asyncio.to_thread(self.store.wipe)
        except (HbenchError, OSError) as exc:
            logger.warning("Wipe failed: %s", exc)
            self.send_status(MSG_WIPE_STATUS, STATUS_ERROR, message=_error_message(exc))
            return
        self.send_status(MSG_WIPE_STATUS, STATUS_SUCCESS)

    # lifecycle

    def _spawn_task(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Channel task failed: %s", exc, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every background operation started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> asyncio.Task:
        """Stop accepting frames and stop every process without blocking the close."""
        self._closed = True
        self._outbound.put_nowait(None)
        stopping = asyncio.ensure_future(self.supervisor.stop_all())
        stopping.add_done_callback(_log_stop_failure)
        return stopping


def _log_stop_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Failed to stop processes on channel close: %s", exc)
