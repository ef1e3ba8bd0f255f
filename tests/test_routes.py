"""Tests for the HTTP routes and the delivery WebSocket."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from fastapi import WebSocketDisconnect

from app import create_app
from coordinator import SignalingCoordinator
from errors import StorageError
from room import Room
from conftest import MemoryPubSub, RecordingChannel, SequenceGenerator
from routers.channel import forward_deliveries, release_client


@pytest.fixture
def client(coordinator):
    return TestClient(create_app(coordinator))


class TestJoinRoute:
    def test_join_creates_then_pairs(self, client, store):
        first = client.post("/rooms/alpha/join")
        second = client.post("/rooms/alpha/join")

        assert first.status_code == 200
        assert first.json()["user"] == "U1"
        assert first.json()["occupancy"] == 1
        assert first.json()["ws_url"] == f"ws://testserver/channel/{first.json()['token']}/ws"
        assert second.json()["user"] == "U2"
        assert second.json()["occupancy"] == 2
        assert store.rooms["alpha"] == Room(user1="U1", user2="U2")

    def test_full_room(self, client, store):
        client.post("/rooms/alpha/join")
        client.post("/rooms/alpha/join")

        response = client.post("/rooms/alpha/join")

        assert response.status_code == 403
        assert response.json()["detail"] == "Room is full"

    def test_requested_user(self, client):
        response = client.post("/rooms/alpha/join", json={"user": "ALICE"})

        assert response.status_code == 200
        assert response.json()["user"] == "ALICE"

    def test_duplicate_user(self, client):
        client.post("/rooms/alpha/join", json={"user": "ALICE"})

        response = client.post("/rooms/alpha/join", json={"user": "ALICE"})

        assert response.status_code == 409

    def test_user_with_separator(self, client):
        response = client.post("/rooms/alpha/join", json={"user": "a@b"})

        assert response.status_code == 400

    def test_identifier_exhaustion(self, store, channel):
        client = TestClient(create_app(SignalingCoordinator(store, channel, SequenceGenerator("U1", *["U1"] * 5))))
        client.post("/rooms/alpha/join")

        response = client.post("/rooms/alpha/join")

        assert response.status_code == 500
        assert response.json()["detail"] == "Could not allocate a user identifier"

    def test_storage_failure(self, channel):
        store = MagicMock()
        store.get_room.side_effect = StorageError("redis down")
        client = TestClient(create_app(SignalingCoordinator(store, channel, SequenceGenerator("U1"))))

        response = client.post("/rooms/alpha/join")

        assert response.status_code == 500


class TestRoomDetails:
    def test_details(self, client, store):
        store.put_room("alpha", Room(user1="U1", user2="U2", connected2=True))

        response = client.get("/rooms/alpha")

        assert response.status_code == 200
        assert response.json() == {"name": "alpha", "occupancy": 2, "connected_count": 1, "is_full": True}

    def test_missing_room(self, client):
        assert client.get("/rooms/nowhere").status_code == 404


class TestPresenceRoutes:
    def test_connected(self, client, store, channel, paired_room):
        channel.attached.add("U2@alpha")

        response = client.post("/rooms/connected", params={"from": "U1@alpha"})

        assert response.status_code == 200
        assert store.rooms["alpha"].connected1
        assert channel.delivered_to("U2@alpha") == ["connected"]

    @pytest.mark.parametrize("path", ["/rooms/disconnected", "/rooms/disconnect"])
    def test_disconnected(self, client, store, channel, paired_room, path):
        channel.attached.add("U2@alpha")

        response = client.post(path, params={"from": "U1@alpha"})

        assert response.status_code == 200
        assert store.rooms["alpha"] == Room(user2="U2")
        assert channel.delivered_to("U2@alpha") == ["disconnected"]

    def test_unknown_room(self, client):
        response = client.post("/rooms/connected", params={"from": "U1@ghost"})

        assert response.status_code == 404

    def test_malformed_client_id(self, client):
        response = client.post("/rooms/disconnected", params={"from": "nobody"})

        assert response.status_code == 400

    def test_missing_from(self, client):
        assert client.post("/rooms/connected").status_code == 422


class TestMessageRoute:
    def test_relays_body(self, client, channel, paired_room):
        channel.attached.add("U2@alpha")
        payload = {"type": "offer", "sdp": "v=0"}

        response = client.post("/rooms/message", params={"from": "U1@alpha"}, content=json.dumps(payload))

        assert response.status_code == 200
        assert response.json() == {"message": "OK"}
        assert channel.sent == [("U2@alpha", payload)]

    def test_peer_offline_still_ok(self, client, channel, paired_room):
        response = client.post("/rooms/message", params={"from": "U1@alpha"}, content='{"type": "bye"}')

        assert response.status_code == 200
        assert channel.sent == []

    def test_rejects_non_json(self, client, channel, paired_room):
        response = client.post("/rooms/message", params={"from": "U1@alpha"}, content="not json")

        assert response.status_code == 400
        assert channel.sent == []


class TestChannelWebSocket:
    def test_unknown_token_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/channel/bogus/ws"):
                pass

        assert exc_info.value.code == 1008

    def test_signaling_session(self, client, store, channel):
        first = client.post("/rooms/alpha/join").json()
        second = client.post("/rooms/alpha/join").json()
        offer = {"type": "offer", "sdp": "v=0"}

        with client.websocket_connect(f"/channel/{first['token']}/ws") as ws1:
            assert ws1.receive_json() == "connected"

            with client.websocket_connect(f"/channel/{second['token']}/ws") as ws2:
                assert ws2.receive_json() == "connected"
                assert ws1.receive_json() == "connected"

                ws1.send_text(json.dumps(offer))
                assert ws2.receive_json() == offer

            assert ws1.receive_json() == "disconnected"
            assert store.rooms["alpha"] == Room(user1="U1", connected1=True)
            assert second["token"] not in channel.tokens

        assert "alpha" not in store.rooms
        assert store.event_loop_calls == 0


def test_room_routes_keep_store_off_event_loop(client, store, channel):
    client.post("/rooms/alpha/join")
    client.post("/rooms/alpha/join")
    client.get("/rooms/alpha")
    client.post("/rooms/connected", params={"from": "U1@alpha"})
    client.post("/rooms/message", params={"from": "U1@alpha"}, content='{"type": "offer"}')
    client.post("/rooms/disconnected", params={"from": "U1@alpha"})

    assert store.rooms["alpha"] == Room(user2="U2")
    assert store.event_loop_calls == 0


class TestDeliveryListener:
    def test_forwards_published_messages(self):
        channel = RecordingChannel()
        pubsub = channel.subscribe("U1@alpha")
        websocket = AsyncMock()

        async def scenario():
            stop = asyncio.Event()
            listener = asyncio.create_task(forward_deliveries(websocket, pubsub, "U1@alpha", stop))
            channel.send("U1@alpha", {"type": "answer"})
            while not websocket.send_text.await_count:
                await asyncio.sleep(0.01)
            stop.set()
            await listener

        asyncio.run(scenario())

        websocket.send_text.assert_awaited_once_with('{"type": "answer"}')
        assert pubsub.closed

    def test_pubsub_closed_only_after_last_read(self):
        pubsub = MemoryPubSub(RecordingChannel(), "U1@alpha")

        async def scenario():
            stop = asyncio.Event()
            listener = asyncio.create_task(forward_deliveries(AsyncMock(), pubsub, "U1@alpha", stop))
            while not pubsub.reading:
                await asyncio.sleep(0.01)
            stop.set()
            await listener

        asyncio.run(scenario())

        assert pubsub.closed
        assert not pubsub.closed_during_read


class TestReleaseClient:
    def test_revokes_token_and_leaves_room(self, coordinator, store, channel, paired_room):
        token = channel.open("U1@alpha")
        channel.attached.add("U2@alpha")

        release_client(coordinator, token, "U1@alpha", connected=True)

        assert token not in channel.tokens
        assert store.rooms["alpha"] == Room(user2="U2")
        assert channel.delivered_to("U2@alpha") == ["disconnected"]

    def test_unattached_client_keeps_its_slot(self, coordinator, store, channel, paired_room):
        token = channel.open("U1@alpha")

        release_client(coordinator, token, "U1@alpha", connected=False)

        assert token not in channel.tokens
        assert store.rooms["alpha"] == Room(user1="U1", user2="U2")

    def test_revoke_failure_still_leaves_room(self, coordinator, store, channel, paired_room):
        coordinator.channel = MagicMock(wraps=channel)
        coordinator.channel.revoke.side_effect = StorageError("redis down")

        release_client(coordinator, "tok", "U1@alpha", connected=True)

        assert store.rooms["alpha"] == Room(user2="U2")
