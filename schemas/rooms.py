from pydantic import BaseModel
from typing import Optional


class JoinRoomRequest(BaseModel):
    user: Optional[str] = None

class JoinRoomResponse(BaseModel):
    room: str
    user: str
    token: str
    ws_url: str
    occupancy: int

class RoomDetailsResponse(BaseModel):
    name: str
    occupancy: int
    connected_count: int
    is_full: bool

class StatusResponse(BaseModel):
    message: str
