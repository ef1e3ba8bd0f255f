import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from schemas.rooms import JoinRoomRequest, JoinRoomResponse, RoomDetailsResponse, StatusResponse
from coordinator import SignalingCoordinator
from errors import ClientIdParseError, OccupantExistsError, RoomFullError, RoomNotFoundError, StorageError, UserIdGenerationError
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_coordinator(request: Request) -> SignalingCoordinator:
    return request.app.state.coordinator


def channel_ws_url(request: Request, token: str) -> str:
    # Replace http/https with ws/wss
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/channel/{token}/ws"


@rooms_router.post("/connected", response_model=StatusResponse)
def peer_connected(
    client_id: str = Query(..., alias="from"),
    coordinator: SignalingCoordinator = Depends(get_coordinator),
):
    logger.info(f"Connected notification from {client_id}")
    try:
        coordinator.peer_connected(client_id)
    except ClientIdParseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFoundError as e:
        logger.error(f"Could not get room for {client_id}: {e}")
        raise HTTPException(status_code=404, detail="Room not found")
    except StorageError as e:
        logger.error(f"Connected notification failed for {client_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update room")
    return StatusResponse(message="OK")


@rooms_router.post("/disconnected", response_model=StatusResponse)
@rooms_router.post("/disconnect", response_model=StatusResponse)
def peer_disconnected(
    client_id: str = Query(..., alias="from"),
    coordinator: SignalingCoordinator = Depends(get_coordinator),
):
    # /disconnect is sent by the client itself on page unload, /disconnected by the transport
    logger.info(f"Disconnect notification from {client_id}")
    try:
        coordinator.peer_disconnected(client_id)
    except ClientIdParseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFoundError as e:
        logger.error(f"Could not get room for {client_id}: {e}")
        raise HTTPException(status_code=404, detail="Room not found")
    except StorageError as e:
        logger.error(f"Disconnect notification failed for {client_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update room")
    return StatusResponse(message="OK")


@rooms_router.post("/message", response_model=StatusResponse)
async def relay_message(
    request: Request,
    client_id: str = Query(..., alias="from"),
    coordinator: SignalingCoordinator = Depends(get_coordinator),
):
    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Error reading JSON message from {client_id}: {e}")
        raise HTTPException(status_code=400, detail="Message body must be JSON")

    logger.debug(f"Received channel data message from {client_id}: {body[:200]!r}")
    try:
        # Store calls block, keep them off the event loop
        await run_in_threadpool(coordinator.relay_message, client_id, payload)
    except ClientIdParseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RoomNotFoundError as e:
        logger.error(f"Error while retrieving room for {client_id}: {e}")
        raise HTTPException(status_code=404, detail="Room not found")
    except StorageError as e:
        logger.error(f"Relay failed for {client_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to relay message")
    return StatusResponse(message="OK")


@rooms_router.post("/{room_name}/join", response_model=JoinRoomResponse)
def join_room(
    room_name: str,
    request: Request,
    join_room_request: Optional[JoinRoomRequest] = None,
    coordinator: SignalingCoordinator = Depends(get_coordinator),
):
    requested_user = join_room_request.user if join_room_request else None
    logger.info(f"Join room request for {room_name} from {request.client.host if request.client else 'unknown'}")
    try:
        result = coordinator.join(room_name, requested_user)
    except RoomFullError:
        raise HTTPException(status_code=403, detail="Room is full")
    except OccupantExistsError:
        raise HTTPException(status_code=409, detail="User already in room")
    except ClientIdParseError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UserIdGenerationError as e:
        logger.error(f"Error joining room {room_name}: {e}")
        raise HTTPException(status_code=500, detail="Could not allocate a user identifier")
    except StorageError as e:
        logger.error(f"Error joining room {room_name}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to join room")

    return JoinRoomResponse(
        room=result.room,
        user=result.user,
        token=result.token,
        ws_url=channel_ws_url(request, result.token),
        occupancy=result.occupancy,
    )


@rooms_router.get("/{room_name}", response_model=RoomDetailsResponse)
def get_room_details(room_name: str, coordinator: SignalingCoordinator = Depends(get_coordinator)):
    """
    Get the pairing state of a room.

    Returns:
    - name: Room name
    - occupancy: Number of occupied slots (1 or 2)
    - connected_count: Occupants whose delivery channel is attached
    - is_full: Whether a further join would be rejected
    """
    try:
        room = coordinator.get_room(room_name)
    except RoomNotFoundError:
        raise HTTPException(status_code=404, detail="Room not found")
    except StorageError as e:
        logger.error(f"Error fetching room {room_name}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch room")

    return RoomDetailsResponse(
        name=room_name,
        occupancy=room.occupancy(),
        connected_count=room.connected_count(),
        is_full=room.is_full(),
    )
