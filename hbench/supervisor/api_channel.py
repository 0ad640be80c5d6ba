"""WebSocket endpoint carrying every agent's terminal over one connection."""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from hbench.supervisor.channel import ChannelMultiplexer

logger = logging.getLogger("hbench.supervisor.api_channel")

router = APIRouter()


@router.websocket("/api/vt")
async def terminal_channel(websocket: WebSocket):
    """Relay agent terminals until the client disconnects, then stop every agent."""
    runtime = websocket.app.state.runtime
    await websocket.accept()
    logger.info("Terminal channel opened")
    channel = ChannelMultiplexer(
        runtime.supervisor,
        runtime.provisioner,
        runtime.store,
        websocket.send_text,
    )

    async def send_frames() -> None:
        try:
            await channel.run_sender()
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug("Terminal channel sender stopped: %s", exc)

    sender = asyncio.create_task(send_frames())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            await channel.handle_message(message.get("text"))
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Terminal channel closing")
        channel.close()
        if not sender.done():
            sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
