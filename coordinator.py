from typing import Any, Callable, NamedTuple, Optional

from constants import CONNECTED, DISCONNECTED
from errors import DeliveryError, OccupantExistsError, RoomFullError, RoomNotFoundError, UserIdGenerationError
from identity import UserIdGenerator, make_client_id, parse_client_id
from logging_config import get_logger
from room import Room

logger = get_logger(__name__)

# Bound on redraws when a generated identifier collides with the occupant already in the room
MAX_USER_ID_ATTEMPTS = 5


class JoinResult(NamedTuple):
    room: str
    user: str
    token: str
    occupancy: int


class SignalingCoordinator:
    """Handles join, presence and relay events for two-party rooms.

    Each event loads the room from the store, applies one state machine
    transition, writes the result back and then notifies the other occupant
    over the delivery channel. Notifications are best effort: a failed send
    is logged and never undoes the store write that preceded it.
    """

    def __init__(self, store, channel, user_id_generator: Optional[Callable[[], str]] = None):
        self.store = store
        self.channel = channel
        self.user_id_generator = user_id_generator or UserIdGenerator()

    def get_room(self, room_name: str) -> Room:
        return self.store.get_room(room_name)

    def join(self, room_name: str, user: Optional[str] = None) -> JoinResult:
        if not room_name:
            raise ValueError("room_name must be non-empty")
        if user is not None:
            # Validates the identifier before anything is written
            make_client_id(room_name, user)

        with self.store.lock_room(room_name):
            try:
                room = self.store.get_room(room_name)
            except RoomNotFoundError:
                logger.debug(f"Room {room_name} not found, creating it")
                room = Room()

            occupancy = room.occupancy()
            if occupancy >= 2:
                logger.warning(f"Join rejected: room {room_name} is full")
                raise RoomFullError(room_name)

            if user is None:
                user = self._new_user_id(room_name, room)
            elif room.has_occupant(user):
                logger.warning(f"Join rejected: {user} already in room {room_name}")
                raise OccupantExistsError(room_name, user)

            room.add_occupant(user)
            self.store.put_room(room_name, room)

        if occupancy == 0:
            logger.info(f"Created room {room_name} for user {user}")
        else:
            logger.info(f"User {user} joined room {room_name}")

        token = self.channel.open(make_client_id(room_name, user))
        return JoinResult(room=room_name, user=user, token=token, occupancy=room.occupancy())

    def peer_connected(self, client_id: str):
        room_name, user = parse_client_id(client_id)
        with self.store.lock_room(room_name):
            room = self.store.get_room(room_name)
            room.mark_connected(user)
            self.store.put_room(room_name, room)
        logger.info(f"Connected user {user} to room {room_name}")

        self._notify(room_name, room.other_occupant(user), CONNECTED)
        self._notify(room_name, user, CONNECTED)

    def peer_disconnected(self, client_id: str):
        room_name, user = parse_client_id(client_id)
        with self.store.lock_room(room_name):
            room = self.store.get_room(room_name)
            # Resolve the peer before the slot is cleared
            other = room.other_occupant(user)
            empty = room.remove_occupant(user)
            if empty:
                self.store.delete_room(room_name)
            else:
                self.store.put_room(room_name, room)

        if empty:
            logger.info(f"Removed user {user}, room {room_name} is empty and was deleted")
            return
        logger.info(f"Removed user {user} from room {room_name}")
        self._notify(room_name, other, DISCONNECTED)
        self._notify(room_name, user, DISCONNECTED)

    def relay_message(self, client_id: str, payload: Any) -> bool:
        """Forward `payload` untouched to the sender's peer. Returns True if delivered."""
        room_name, user = parse_client_id(client_id)
        room = self.store.get_room(room_name)
        other = room.other_occupant(user)
        if other is None:
            logger.warning(f"Dropping message from {user} in room {room_name}: no peer to relay to")
            return False
        logger.debug(f"Relaying message from {user} to {other} in room {room_name}")
        return self._notify(room_name, other, payload)

    def _notify(self, room_name: str, user: Optional[str], payload: Any) -> bool:
        if not user:
            logger.debug(f"No occupant to notify in room {room_name}")
            return False
        try:
            self.channel.send(make_client_id(room_name, user), payload)
        except DeliveryError as e:
            logger.warning(f"Error while sending to {user} in room {room_name}: {e}")
            return False
        return True

    def _new_user_id(self, room_name: str, room: Room) -> str:
        for _ in range(MAX_USER_ID_ATTEMPTS):
            user = self.user_id_generator()
            if not room.has_occupant(user):
                make_client_id(room_name, user)
                return user
        raise UserIdGenerationError(f"Could not generate a fresh user identifier for room {room_name}")
