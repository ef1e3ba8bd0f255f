import random
from typing import NamedTuple, Optional

from constants import CLIENT_ID_SEPARATOR, USER_ID_ALPHABET, USER_ID_LENGTH
from errors import ClientIdParseError


class ClientIdentity(NamedTuple):
    room: str
    user: str

    def encode(self) -> str:
        return make_client_id(self.room, self.user)


def make_client_id(room: str, user: str) -> str:
    if not user or CLIENT_ID_SEPARATOR in user:
        raise ClientIdParseError(f"Invalid user identifier: {user!r}")
    return f"{user}{CLIENT_ID_SEPARATOR}{room}"


def parse_client_id(client_id: str) -> ClientIdentity:
    """Split `user@room` on the first separator. Everything after it is the room."""
    if not client_id:
        raise ClientIdParseError("Empty client id")
    user, separator, room = client_id.partition(CLIENT_ID_SEPARATOR)
    if not separator or not user or not room:
        raise ClientIdParseError(f"Malformed client id: {client_id!r}")
    return ClientIdentity(room=room, user=user)


class UserIdGenerator:
    """Produces short, human-copyable user identifiers.

    Holds its own random source so that seeding is explicit and
    process-wide random state is never touched.
    """

    def __init__(self, length: int = USER_ID_LENGTH, alphabet: str = USER_ID_ALPHABET, rng: Optional[random.Random] = None):
        if length <= 0:
            raise ValueError("length must be positive")
        if not alphabet or CLIENT_ID_SEPARATOR in alphabet:
            raise ValueError(f"alphabet must be non-empty and exclude {CLIENT_ID_SEPARATOR!r}")
        self.length = length
        self.alphabet = alphabet
        self.rng = rng or random.Random()

    def __call__(self) -> str:
        return ''.join(self.rng.choices(self.alphabet, k=self.length))
