import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_SOCKET_TIMEOUT = float(os.getenv("REDIS_SOCKET_TIMEOUT", 5))

# Client identities are encoded as user + CLIENT_ID_SEPARATOR + room
CLIENT_ID_SEPARATOR = "@"

# Upper case only because the link will be upper case when copied
USER_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
USER_ID_LENGTH = int(os.getenv("USER_ID_LENGTH", 10))

CHANNEL_TOKEN_TTL = int(os.getenv("CHANNEL_TOKEN_TTL", 7200))
SUBSCRIBE_TIMEOUT = 1.0

ROOM_LOCKING = os.getenv("ROOM_LOCKING", "true").lower() in ("1", "true", "yes")
ROOM_LOCK_TIMEOUT = float(os.getenv("ROOM_LOCK_TIMEOUT", 10))
ROOM_LOCK_BLOCKING_TIMEOUT = float(os.getenv("ROOM_LOCK_BLOCKING_TIMEOUT", 5))

CONNECTED = "connected"
DISCONNECTED = "disconnected"
