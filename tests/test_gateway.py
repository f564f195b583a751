"""
Tests for the WebSocket connection gateway.

Each test runs a real websockets server on an ephemeral port, backed by its own
MessageStore, and talks to it with websockets clients.

Test Organization:
    TestFrameCodec: encode/decode of {"event", "data"} frames
    TestInitialSync: what a freshly connected client receives
    TestChatEvents: chatMessage / editMessage / deleteMessage / markRead broadcasts
    TestConnectionState: join / leave / disconnect bookkeeping
    TestMalformedInput: bad frames and payloads do not break the connection
"""

import asyncio
import json

import pytest
import websockets

from chatrelay.server import ChatGateway, decode_event, encode_event
from chatrelay.store import MessageStore
from conftest import make_message

RECV_TIMEOUT = 2


# =============================================================================
# Fixtures & helpers
# =============================================================================


@pytest.fixture
def gateway(store):
    return ChatGateway(store)


@pytest.fixture
async def url(gateway):
    async with gateway.serve("127.0.0.1", 0) as server:
        port = list(server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


async def send_event(ws, event, data):
    await ws.send(json.dumps({"event": event, "data": data}))


async def recv_event(ws):
    frame = json.loads(await asyncio.wait_for(ws.recv(), RECV_TIMEOUT))
    return frame["event"], frame["data"]


async def connect(url):
    """Connect and consume the two initial sync frames."""
    ws = await websockets.connect(url)
    assert (await recv_event(ws))[0] == "messages"
    assert (await recv_event(ws))[0] == "deletedMessages"
    return ws


async def wait_for(predicate):
    for _ in range(100):
        if predicate():
            return
        await asyncio.sleep(0.02)
    raise AssertionError("condition not reached")


# =============================================================================
# Frame codec
# =============================================================================


class TestFrameCodec:
    def test_encode_event(self):
        assert json.loads(encode_event("messageDeleted", "1")) == {"event": "messageDeleted", "data": "1"}

    def test_decode_event(self):
        assert decode_event('{"event": "markRead", "data": "alice"}') == ("markRead", "alice")

    def test_decode_event_without_data(self):
        assert decode_event('{"event": "leave"}') == ("leave", None)

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"data": 1}', '{"event": 5}', b"\xff\xfe"])
    def test_decode_rejects_malformed_frames(self, raw):
        assert decode_event(raw) is None


# =============================================================================
# Initial sync
# =============================================================================


class TestInitialSync:
    async def test_new_client_receives_current_state(self, store, url):
        store.add_message(make_message("1", text="kept"))
        store.add_message(make_message("2", text="gone"))
        store.delete_message("2")

        async with websockets.connect(url) as ws:
            assert await recv_event(ws) == ("messages", [make_message("1", text="kept")])
            assert await recv_event(ws) == ("deletedMessages", [make_message("2", text="gone")])

    async def test_empty_store_sends_empty_lists(self, url):
        async with websockets.connect(url) as ws:
            assert await recv_event(ws) == ("messages", [])
            assert await recv_event(ws) == ("deletedMessages", [])


# =============================================================================
# Chat events
# =============================================================================


class TestChatEvents:
    async def test_chat_message_broadcast_to_all_including_sender(self, store, url):
        sender = await connect(url)
        other = await connect(url)
        message = {"id": "1", "text": "hi", "editHistory": []}

        await send_event(sender, "chatMessage", message)

        assert await recv_event(sender) == ("chatMessage", message)
        assert await recv_event(other) == ("chatMessage", message)
        assert store.messages == [message]

        await sender.close()
        await other.close()

    async def test_messages_stored_in_arrival_order(self, store, url):
        ws = await connect(url)

        for i in range(3):
            await send_event(ws, "chatMessage", make_message(str(i)))
            await recv_event(ws)

        assert [m["id"] for m in store.messages] == ["0", "1", "2"]
        await ws.close()

    async def test_edit_message_broadcasts_inbound_payload(self, store, url):
        ws = await connect(url)
        await send_event(ws, "chatMessage", make_message("1", text="hi"))
        await recv_event(ws)

        await send_event(ws, "editMessage", {"id": "1", "newText": "hello"})

        assert await recv_event(ws) == ("messageEdited", {"id": "1", "newText": "hello"})
        assert store.messages[0]["text"] == "hello"
        assert store.messages[0]["editHistory"][0]["text"] == "hi"
        await ws.close()

    async def test_edit_unknown_id_sends_nothing(self, store, url):
        ws = await connect(url)

        await send_event(ws, "editMessage", {"id": "missing", "newText": "hello"})
        await send_event(ws, "chatMessage", make_message("1"))

        # The next frame is the chat message, so the edit produced no broadcast.
        assert (await recv_event(ws))[0] == "chatMessage"
        await ws.close()

    async def test_delete_message_broadcasts_id_then_deleted_list(self, store, url):
        ws = await connect(url)
        other = await connect(url)
        await send_event(ws, "chatMessage", make_message("1", text="bye"))
        await recv_event(ws)
        await recv_event(other)

        await send_event(ws, "deleteMessage", "1")

        for client in (ws, other):
            assert await recv_event(client) == ("messageDeleted", "1")
            assert await recv_event(client) == ("deletedMessages", [make_message("1", text="bye")])
        assert store.messages == []

        await ws.close()
        await other.close()

    async def test_delete_unknown_id_sends_nothing(self, store, url):
        ws = await connect(url)

        await send_event(ws, "deleteMessage", "missing")
        await send_event(ws, "chatMessage", make_message("1"))

        assert (await recv_event(ws))[0] == "chatMessage"
        assert store.deleted_messages == []
        await ws.close()

    async def test_mark_read_broadcasts_read_status(self, store, url):
        ws = await connect(url)
        await send_event(ws, "chatMessage", make_message("1"))
        await recv_event(ws)

        await send_event(ws, "markRead", "alice")

        event, data = await recv_event(ws)
        assert event == "readStatus"
        assert data == {"messages": [make_message("1", readBy=["alice"])]}
        await ws.close()

    async def test_mark_read_with_null_read_by_still_broadcasts(self, url):
        ws = await connect(url)
        await send_event(ws, "chatMessage", make_message("1", readBy=None))
        await recv_event(ws)

        await send_event(ws, "markRead", "alice")

        assert await recv_event(ws) == ("readStatus", {"messages": [make_message("1", readBy=["alice"])]})
        await ws.close()

    async def test_late_joiner_sees_state_after_events(self, url):
        ws = await connect(url)
        await send_event(ws, "chatMessage", make_message("1"))
        await send_event(ws, "chatMessage", make_message("2"))
        await send_event(ws, "deleteMessage", "1")
        for _ in range(4):
            await recv_event(ws)

        async with websockets.connect(url) as late:
            assert await recv_event(late) == ("messages", [make_message("2")])
            assert await recv_event(late) == ("deletedMessages", [make_message("1")])
        await ws.close()


# =============================================================================
# Connection state
# =============================================================================


class TestConnectionState:
    async def test_join_and_leave_track_user(self, gateway, url):
        ws = await connect(url)

        await send_event(ws, "join", "alice")
        await wait_for(lambda: "alice" in gateway.users.values())

        await send_event(ws, "leave", "alice")
        await wait_for(lambda: "alice" not in gateway.users.values())
        await ws.close()

    async def test_disconnect_unregisters_connection(self, gateway, url):
        ws = await connect(url)
        await send_event(ws, "join", "alice")
        await wait_for(lambda: "alice" in gateway.users.values())

        await ws.close()

        await wait_for(lambda: not gateway.connections)
        assert gateway.users == {}

    async def test_gateways_do_not_share_state(self, url, store):
        other = ChatGateway(MessageStore())
        async with other.serve("127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            ws = await connect(url)
            await send_event(ws, "chatMessage", make_message("1"))
            await recv_event(ws)

            async with websockets.connect(f"ws://127.0.0.1:{port}") as isolated:
                assert await recv_event(isolated) == ("messages", [])
            await ws.close()

        assert len(store.messages) == 1
        assert other.store.messages == []


# =============================================================================
# Malformed input
# =============================================================================


class TestMalformedInput:
    async def test_malformed_frames_are_ignored(self, store, url):
        ws = await connect(url)

        await ws.send("not json")
        await ws.send(json.dumps(["chatMessage", {}]))
        await ws.send(json.dumps({"event": "noSuchEvent", "data": 1}))
        await send_event(ws, "chatMessage", make_message("1"))

        assert (await recv_event(ws))[0] == "chatMessage"
        assert len(store.messages) == 1
        await ws.close()

    async def test_handler_error_keeps_connection_open(self, store, url):
        ws = await connect(url)
        await send_event(ws, "chatMessage", {"id": "1", "text": "no history"})
        await recv_event(ws)

        # Fails inside the store: the message has no editHistory list.
        await send_event(ws, "editMessage", {"id": "1", "newText": "hello"})
        # Fails in the gateway: the payload is not an object.
        await send_event(ws, "editMessage", "1")
        await send_event(ws, "chatMessage", make_message("2"))

        assert await recv_event(ws) == ("chatMessage", make_message("2"))
        assert store.messages[0]["text"] == "no history"
        await ws.close()
