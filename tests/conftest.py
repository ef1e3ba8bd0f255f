"""Shared fixtures: in-memory room store and a delivery channel that records sends."""

import asyncio
import json
import queue
import threading
from collections import defaultdict
from contextlib import contextmanager

import pytest

from coordinator import SignalingCoordinator
from errors import DeliveryError, RoomNotFoundError
from room import Room


def _in_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class MemoryRoomStore:
    """Room store double keeping copies of rooms in a dict."""

    def __init__(self):
        self.rooms = {}
        self.deleted = []
        self.event_loop_calls = 0
        self._locks = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def get_room(self, name):
        if _in_event_loop():
            self.event_loop_calls += 1
        if name not in self.rooms:
            raise RoomNotFoundError(name)
        return self.rooms[name].model_copy()

    def put_room(self, name, room):
        self.rooms[name] = room.model_copy()

    def delete_room(self, name):
        self.rooms.pop(name, None)
        self.deleted.append(name)

    @contextmanager
    def lock_room(self, name):
        with self._locks_guard:
            lock = self._locks[name]
        with lock:
            yield


class MemoryPubSub:
    """Subscription double fed by RecordingChannel.send."""

    def __init__(self, channel, client_id):
        self.channel = channel
        self.client_id = client_id
        self.messages = queue.Queue()
        self.reading = False
        self.closed = False
        self.closed_during_read = False

    def get_message(self, timeout=0.0, ignore_subscribe_messages=False):
        self.reading = True
        try:
            return self.messages.get(timeout=timeout)
        except queue.Empty:
            return None
        finally:
            self.reading = False

    def close(self):
        self.closed = True
        self.closed_during_read = self.reading
        self.channel.attached.discard(self.client_id)
        self.channel.subscriptions.pop(self.client_id, None)


class RecordingChannel:
    """Delivery channel double. Only clients in `attached` receive messages."""

    def __init__(self):
        self.attached = set()
        self.subscriptions = {}
        self.tokens = {}
        self.sent = []
        self.failed = []
        self.opened = 0

    def open(self, client_id):
        self.opened += 1
        token = f"token-{self.opened}"
        self.tokens[token] = client_id
        return token

    def resolve(self, token):
        return self.tokens.get(token)

    def revoke(self, token):
        self.tokens.pop(token, None)

    def send(self, client_id, payload):
        if client_id not in self.attached:
            self.failed.append((client_id, payload))
            raise DeliveryError(client_id)
        self.sent.append((client_id, payload))
        if client_id in self.subscriptions:
            self.subscriptions[client_id].messages.put({"type": "message", "data": json.dumps(payload)})

    def subscribe(self, client_id):
        pubsub = MemoryPubSub(self, client_id)
        self.subscriptions[client_id] = pubsub
        self.attached.add(client_id)
        return pubsub

    def delivered_to(self, client_id):
        return [payload for target, payload in self.sent if target == client_id]


class SequenceGenerator:
    """Returns queued identifiers in order."""

    def __init__(self, *user_ids):
        self.user_ids = list(user_ids)

    def __call__(self):
        return self.user_ids.pop(0)


@pytest.fixture
def store():
    return MemoryRoomStore()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def coordinator(store, channel):
    return SignalingCoordinator(store, channel, user_id_generator=SequenceGenerator("U1", "U2", "U3", "U4"))


@pytest.fixture
def paired_room(store):
    store.put_room("alpha", Room(user1="U1", user2="U2"))
    return "alpha"
