class SignalingError(Exception):
    """Base class for every failure raised by the signaling core."""


class RoomNotFoundError(SignalingError):
    """The room does not exist in storage. Expected on first join."""

    def __init__(self, room_name: str):
        super().__init__(f"Room {room_name} not found")
        self.room_name = room_name


class RoomFullError(SignalingError):
    """A join was attempted on a room that already holds two occupants."""

    def __init__(self, room_name: str):
        super().__init__(f"Room {room_name} is full")
        self.room_name = room_name


class OccupantExistsError(SignalingError):
    def __init__(self, room_name: str, user: str):
        super().__init__(f"User {user} already occupies room {room_name}")
        self.room_name = room_name
        self.user = user


class StorageError(SignalingError):
    """Room store or token store failure. Fatal for the current event."""


class DeliveryError(SignalingError):
    """The addressed client is not attached to its delivery channel."""

    def __init__(self, client_id: str, reason: str = "client not attached"):
        super().__init__(f"Could not deliver to {client_id}: {reason}")
        self.client_id = client_id


class ClientIdParseError(SignalingError, ValueError):
    """Malformed composite client identity."""


class UserIdGenerationError(SignalingError):
    """No identifier distinct from the room's current occupant could be drawn."""
