import json
import uuid
from contextlib import contextmanager
from typing import Any, Optional

import redis

from constants import (
    CHANNEL_TOKEN_TTL,
    REDIS_HOST,
    REDIS_PASSWORD,
    REDIS_PORT,
    REDIS_SOCKET_TIMEOUT,
    ROOM_LOCK_BLOCKING_TIMEOUT,
    ROOM_LOCK_TIMEOUT,
    ROOM_LOCKING,
    SUBSCRIBE_TIMEOUT,
)
from errors import DeliveryError, RoomNotFoundError, StorageError
from logging_config import get_logger
from redis_keys import REDIS_CLIENT_CHANNEL, REDIS_ROOM_KEY, REDIS_ROOM_LOCK_KEY, REDIS_TOKEN_KEY
from room import Room

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    try:
        client = redis.Redis(
            host=REDIS_HOST,
            port=REDIS_PORT,
            password=REDIS_PASSWORD,
            socket_timeout=REDIS_SOCKET_TIMEOUT,
            decode_responses=True,
        )
        # Test connection
        client.ping()
        logger.info(f"Redis client connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return client
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
        raise


class RedisRoomStore:
    """Durable Room records keyed by room name. Last writer wins."""

    def __init__(self, redis_client: redis.Redis, locking: bool = ROOM_LOCKING,
                 lock_timeout: float = ROOM_LOCK_TIMEOUT, lock_blocking_timeout: float = ROOM_LOCK_BLOCKING_TIMEOUT):
        self.redis_client = redis_client
        self.locking = locking
        self.lock_timeout = lock_timeout
        self.lock_blocking_timeout = lock_blocking_timeout
        logger.info(f"Initializing RedisRoomStore (locking={'on' if locking else 'off'})")

    def get_room(self, name: str) -> Room:
        logger.debug(f"Fetching room {name}")
        key = REDIS_ROOM_KEY.format(name=name)
        try:
            room_data = self.redis_client.hgetall(key)
        except redis.RedisError as e:
            raise StorageError(f"Could not get room {name}: {e}") from e
        if not room_data:
            raise RoomNotFoundError(name)
        try:
            return Room.from_hash(room_data)
        except ValueError as e:
            raise StorageError(f"Corrupt record for room {name}: {e}") from e

    def put_room(self, name: str, room: Room):
        key = REDIS_ROOM_KEY.format(name=name)
        try:
            self.redis_client.hset(key, mapping=room.to_hash())
        except redis.RedisError as e:
            raise StorageError(f"Could not put room {name}: {e}") from e
        logger.debug(f"Room {name} saved: occupancy={room.occupancy()}")

    def delete_room(self, name: str):
        key = REDIS_ROOM_KEY.format(name=name)
        try:
            deleted = self.redis_client.delete(key)
        except redis.RedisError as e:
            raise StorageError(f"Could not delete room {name}: {e}") from e
        logger.debug(f"Room {name} deleted: meta_key={deleted}")

    @contextmanager
    def lock_room(self, name: str):
        """Serialize read-modify-write cycles on one room across all instances."""
        if not self.locking:
            yield
            return

        lock = self.redis_client.lock(
            REDIS_ROOM_LOCK_KEY.format(name=name),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_blocking_timeout,
        )
        try:
            acquired = lock.acquire()
        except redis.RedisError as e:
            raise StorageError(f"Could not lock room {name}: {e}") from e
        if not acquired:
            raise StorageError(f"Timed out waiting for lock on room {name}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # Lock expired while held; the write already happened
                logger.warning(f"Lock on room {name} expired before release: {e}")
            except redis.RedisError as e:
                logger.error(f"Could not release lock on room {name}: {e}")


class RedisDeliveryChannel:
    """Push delivery to attached clients over one Redis pub/sub channel per client."""

    def __init__(self, redis_client: redis.Redis, pubsub_client: Optional[redis.Redis] = None,
                 token_ttl: int = CHANNEL_TOKEN_TTL):
        self.redis_client = redis_client
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis_client
        self.token_ttl = token_ttl

    def get_client_channel_name(self, client_id: str) -> str:
        return REDIS_CLIENT_CHANNEL.format(client_id=client_id)

    def open(self, client_id: str) -> str:
        """Issue a token the client presents to attach its delivery stream."""
        token = uuid.uuid4().hex
        try:
            self.redis_client.set(REDIS_TOKEN_KEY.format(token=token), client_id, ex=self.token_ttl)
        except redis.RedisError as e:
            raise StorageError(f"Could not create channel for {client_id}: {e}") from e
        logger.debug(f"Opened channel for {client_id}")
        return token

    def resolve(self, token: str) -> Optional[str]:
        try:
            return self.redis_client.get(REDIS_TOKEN_KEY.format(token=token))
        except redis.RedisError as e:
            raise StorageError(f"Could not resolve channel token: {e}") from e

    def revoke(self, token: str):
        try:
            self.redis_client.delete(REDIS_TOKEN_KEY.format(token=token))
        except redis.RedisError as e:
            raise StorageError(f"Could not revoke channel token: {e}") from e

    def send(self, client_id: str, payload: Any):
        """Publish a JSON value to the client. Raises DeliveryError if nobody is listening."""
        channel = self.get_client_channel_name(client_id)
        message_json = json.dumps(payload)
        try:
            subscribers = self.redis_client.publish(channel, message_json)
        except redis.RedisError as e:
            raise DeliveryError(client_id, str(e)) from e
        if not subscribers:
            raise DeliveryError(client_id)
        logger.debug(f"Delivered message to {client_id} on {channel}, {subscribers} subscribers")

    def subscribe(self, client_id: str):
        """Create a pubsub subscriber for the client's delivery channel."""
        channel = self.get_client_channel_name(client_id)
        logger.debug(f"Subscribing to Redis channel {channel}")
        pubsub = self.pubsub_client.pubsub()
        try:
            pubsub.subscribe(channel)
            # Wait for the subscribe confirmation so sends issued right after attach are not lost
            pubsub.get_message(timeout=SUBSCRIBE_TIMEOUT)
        except redis.RedisError as e:
            pubsub.close()
            raise StorageError(f"Could not subscribe to {channel}: {e}") from e
        logger.debug(f"Successfully subscribed to channel {channel}")
        return pubsub
