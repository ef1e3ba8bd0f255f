import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from errors import SignalingError
from logging_config import get_logger

logger = get_logger(__name__)

channel_router = APIRouter(tags=["channel"])


async def forward_deliveries(websocket: WebSocket, pubsub, client_id: str, stop: asyncio.Event):
    """Background task that pushes messages published for `client_id` down its WebSocket.

    Owns `pubsub`: it is closed here once the last blocking read has returned.
    """
    logger.info(f"Starting delivery listener for {client_id}")
    loop = asyncio.get_running_loop()

    def get_message():
        """Blocking call to get next message from Redis pub/sub with timeout."""
        return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)

    try:
        while not stop.is_set():
            message = await loop.run_in_executor(None, get_message)
            if message is None:
                # Timeout or no message, continue loop
                continue
            if message.get('type') != 'message':
                continue
            # Payload is already JSON encoded by the sender and is forwarded as is
            await websocket.send_text(message['data'])
            logger.debug(f"Delivered message to {client_id}")
    except Exception as e:
        logger.error(f"Error in delivery listener for {client_id}: {e}", exc_info=True)
    finally:
        try:
            pubsub.close()
            logger.debug(f"Closed pub/sub connection for {client_id}")
        except Exception as e:
            logger.error(f"Error closing pub/sub for {client_id}: {e}")


def release_client(coordinator, token: str, client_id: str, connected: bool):
    """Revoke the channel token and, if the client was attached, remove it from its room."""
    try:
        coordinator.channel.revoke(token)
    except SignalingError as e:
        logger.warning(f"Could not revoke channel token for {client_id}: {e}")

    if connected:
        try:
            coordinator.peer_disconnected(client_id)
        except SignalingError as e:
            logger.error(f"Could not remove {client_id} from its room: {e}")


@channel_router.websocket("/channel/{token}/ws")
async def channel_endpoint(token: str, websocket: WebSocket):
    """Attach the delivery stream of the client that owns `token`.

    Text frames received from the client are parsed as JSON and relayed to
    its peer. Closing the socket removes the client from its room.
    """
    coordinator = websocket.app.state.coordinator
    channel = coordinator.channel

    try:
        client_id = await run_in_threadpool(channel.resolve, token)
    except SignalingError as e:
        logger.error(f"Could not resolve channel token: {e}", exc_info=True)
        await websocket.close(code=1011, reason="Channel lookup failed")
        return
    if not client_id:
        logger.info("Channel connection rejected: unknown or expired token")
        await websocket.close(code=1008, reason="Invalid channel token")
        return

    await websocket.accept()
    logger.info(f"Channel connection accepted for {client_id}")

    stop = asyncio.Event()
    listener = None
    connected = False
    try:
        # Listener MUST be subscribed before peer_connected notifies this client
        pubsub = await run_in_threadpool(channel.subscribe, client_id)
        listener = asyncio.create_task(forward_deliveries(websocket, pubsub, client_id, stop))

        # Coordinator calls may wait on a room lock, keep them off the event loop
        await run_in_threadpool(coordinator.peer_connected, client_id)
        connected = True

        message_count = 0
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from {client_id}")
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring non-JSON message from {client_id}")
                continue
            await run_in_threadpool(coordinator.relay_message, client_id, payload)
    except WebSocketDisconnect:
        logger.info(f"Channel disconnected normally for {client_id}")
    except SignalingError as e:
        logger.error(f"Signaling error for {client_id}: {e}", exc_info=True)
    finally:
        stop.set()
        # Submitted before the first await so the thread runs even if this task is cancelled
        cleanup = asyncio.get_running_loop().run_in_executor(
            None, release_client, coordinator, token, client_id, connected
        )
        await asyncio.shield(cleanup)

        if listener:
            # Shielded so a cancelled endpoint never interrupts a pub/sub read mid-flight
            await asyncio.shield(listener)

        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
