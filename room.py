from typing import Dict, Optional

from pydantic import BaseModel, model_validator


class Room(BaseModel):
    """Pairing state of a named rendezvous point.

    A room has two occupant slots. Each slot is either empty (None) or holds
    a user identifier, and carries a connected flag that is only set once the
    occupant has attached its delivery channel.
    """

    user1: Optional[str] = None
    user2: Optional[str] = None
    connected1: bool = False
    connected2: bool = False

    @model_validator(mode="after")
    def check_connected_slots(self):
        if self.connected1 and not self.user1:
            raise ValueError("connected1 is set but slot 1 is empty")
        if self.connected2 and not self.user2:
            raise ValueError("connected2 is set but slot 2 is empty")
        return self

    def add_occupant(self, user: str):
        # Full rooms are left untouched; callers check occupancy() first
        if not self.user1:
            self.user1 = user
        elif not self.user2:
            self.user2 = user

    def occupancy(self) -> int:
        occupancy = 0
        if self.user1:
            occupancy += 1
        if self.user2:
            occupancy += 1
        return occupancy

    def is_full(self) -> bool:
        return self.occupancy() == 2

    def has_occupant(self, user: str) -> bool:
        return bool(user) and user in (self.user1, self.user2)

    def other_occupant(self, user: str) -> Optional[str]:
        """Return the occupant of the slot not held by `user`.

        None when `user` is not in the room, or when the other slot is empty.
        """
        if user and user == self.user2:
            return self.user1
        if user and user == self.user1:
            return self.user2
        return None

    def mark_connected(self, user: str):
        if user and user == self.user1:
            self.connected1 = True
        if user and user == self.user2:
            self.connected2 = True

    def remove_occupant(self, user: str) -> bool:
        """Clear the slot held by `user`. Returns True if the room is now empty."""
        if user and user == self.user2:
            self.user2 = None
            self.connected2 = False
        if user and user == self.user1:
            self.user1 = None
            self.connected1 = False
        return self.occupancy() == 0

    def connected_count(self) -> int:
        return int(self.connected1) + int(self.connected2)

    def to_hash(self) -> Dict[str, str]:
        """Flatten into Redis hash fields. Empty slots are stored as ""."""
        return {
            "user1": self.user1 or "",
            "user2": self.user2 or "",
            "connected1": "1" if self.connected1 else "0",
            "connected2": "1" if self.connected2 else "0",
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "Room":
        return cls(
            user1=data.get("user1") or None,
            user2=data.get("user2") or None,
            connected1=data.get("connected1") == "1",
            connected2=data.get("connected2") == "1",
        )
