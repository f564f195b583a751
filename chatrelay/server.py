# chatrelay/server.py
# This file contains the connection gateway for the chatrelay WebSocket server.
# Responsibilities include:
# - Accepting client connections and sending each new client the current chat state.
# - Decoding named events ({"event": ..., "data": ...}) from clients.
# - Applying chat events to the injected MessageStore.
# - Broadcasting the resulting events to every connected client, sender included.
# - Tracking which user a connection claims to be (join/leave), purely informational.

import asyncio          # For the event loop used by the server.
import json             # For parsing and serializing event frames.
import logging          # For logging server events, warnings, and errors.

import websockets       # The WebSocket library used for the server implementation.

from . import config
from .store import MessageStore


# --- Outbound event names ---
EVENT_MESSAGES = 'messages'
EVENT_DELETED_MESSAGES = 'deletedMessages'
EVENT_CHAT_MESSAGE = 'chatMessage'
EVENT_MESSAGE_EDITED = 'messageEdited'
EVENT_MESSAGE_DELETED = 'messageDeleted'
EVENT_READ_STATUS = 'readStatus'


def encode_event(event, data):
    """Serializes an event name and its payload into the JSON frame sent over the wire."""
    return json.dumps({"event": event, "data": data})


def decode_event(raw):
    """
    Parses a raw frame into an (event, data) pair.

    Returns:
        tuple[str, object] | None: The event name and payload, or None when the frame is not
            a JSON object with a string 'event' key. A missing 'data' key yields None as payload.
    """
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    return frame["event"], frame.get("data")


class ChatGateway:
    """
    Relays chat events between WebSocket clients and a MessageStore.

    Attributes:
        store (MessageStore): The chat log this gateway reads and mutates.
        connections (set): Currently open WebSocket connections; broadcast targets.
        users (dict): Maps a connection to the user identifier it announced with 'join'.
    """

    def __init__(self, store=None):
        # store: The message log shared by every connection of this gateway.
        # Injected so that several gateways (e.g. in tests) each keep their own isolated state.
        self.store = store if store is not None else MessageStore()

        # connections: Set of open WebSocket connection objects. Every broadcast goes to all of them.
        # A connection is added before its initial sync and removed when its handler exits.
        # Example: {<ServerConnection 127.0.0.1:50412>, <ServerConnection 127.0.0.1:50418>}
        self.connections = set()

        # users: Dictionary mapping a connection to the user identifier it announced with 'join'.
        # Purely informational (used in log lines); None until 'join' and again after 'leave'.
        # Example: {<ServerConnection 127.0.0.1:50412>: 'alice', <ServerConnection 127.0.0.1:50418>: None}
        self.users = {}

        # _handlers: Inbound event name -> handler. Handlers receive (websocket, data).
        self._handlers = {
            'join': self.on_join,
            'chatMessage': self.on_chat_message,
            'editMessage': self.on_edit_message,
            'deleteMessage': self.on_delete_message,
            'markRead': self.on_mark_read,
            'leave': self.on_leave,
        }

    def _describe(self, websocket):
        return f"{websocket.remote_address} ({self.users.get(websocket) or 'anonymous'})"

    # --- Outbound helpers ---

    async def send_json(self, websocket, event, data):
        """
        Sends a single event to one client.
        A connection that closed in the meantime is logged and otherwise ignored.
        """
        message = encode_event(event, data)
        if config.DEBUG:
            logging.info(f"Sending to {self._describe(websocket)}: {message}")
        try:
            await websocket.send(message)
        except websockets.exceptions.ConnectionClosed:
            logging.warning(f"Failed to send to {self._describe(websocket)} because connection is closed.")

    def broadcast(self, event, data):
        """
        Sends an event to every connection registered at the moment of the call.
        Closed connections are skipped; there is no retry or acknowledgment.
        """
        message = encode_event(event, data)
        if config.DEBUG:
            logging.info(f"Broadcasting to {len(self.connections)} client(s): {message}")
        websockets.broadcast(self.connections, message)

    # --- Inbound event handlers ---

    def on_join(self, websocket, user):
        # Remember who this connection claims to be. Not validated, not unique.
        self.users[websocket] = user
        logging.info(f"Client {websocket.remote_address} joined as '{user}'")

    def on_leave(self, websocket, user):
        # Forget the identity but keep the connection registered; it still receives broadcasts.
        self.users[websocket] = None
        logging.info(f"Client {websocket.remote_address} left (was '{user}')")

    def on_chat_message(self, websocket, message):
        # Store first, then fan the exact payload out to everyone, sender included.
        self.store.add_message(message)
        self.broadcast(EVENT_CHAT_MESSAGE, message)

    def on_edit_message(self, websocket, data):
        # The edit payload is echoed back unchanged, not the stored message.
        if self.store.edit_message(data.get("id"), data.get("newText")) is not None:
            self.broadcast(EVENT_MESSAGE_EDITED, data)

    def on_delete_message(self, websocket, message_id):
        # A lookup miss returns None: nothing changes and nothing is broadcast.
        # On success clients get the deleted id first, then the full deleted list.
        if self.store.delete_message(message_id) is not None:
            self.broadcast(EVENT_MESSAGE_DELETED, message_id)
            self.broadcast(EVENT_DELETED_MESSAGES, self.store.deleted_messages)

    def on_mark_read(self, websocket, user):
        # Read status is always broadcast, carrying the whole active list with updated readBy lists.
        messages = self.store.mark_read(user)
        self.broadcast(EVENT_READ_STATUS, {"messages": messages})

    def dispatch(self, websocket, event, data):
        """
        Applies one inbound event. Unknown events are logged and ignored.
        Exceptions raised by a handler propagate to the caller.
        """
        # Look up the handler for this event name.
        handler = self._handlers.get(event)
        if handler is None:
            logging.warning(f"Unknown event '{event}' from {self._describe(websocket)}. Ignoring.")
            return
        handler(websocket, data)

    # --- Connection lifecycle ---

    async def connection_handler(self, websocket):
        """
        Handles an individual client's connection lifecycle:
        1. Registers the connection and sends it the current messages and deleted messages.
        2. Reads frames until the connection closes, dispatching each decoded event.
        3. Clears the user association and unregisters the connection on close.

        Args:
            websocket (websockets.asyncio.server.ServerConnection): The connected client.
        """
        logging.info(f"Client connected from {websocket.remote_address}")
        # Register before the initial sync so no broadcast issued after the snapshot is missed.
        self.connections.add(websocket)
        self.users[websocket] = None

        try:
            # Initial sync goes to this client only; both lists are captured before any await.
            messages, deleted_messages = self.store.snapshot()
            await self.send_json(websocket, EVENT_MESSAGES, messages)
            await self.send_json(websocket, EVENT_DELETED_MESSAGES, deleted_messages)

            # --- Main Message Loop ---
            # Iterates over frames until the client disconnects.
            async for raw in websocket:
                if config.DEBUG:
                    logging.info(f"Raw message received from {self._describe(websocket)}: {raw}")

                # --- Envelope Validation ---
                # Only the {"event", "data"} envelope is checked; payloads are passed through as-is.
                decoded = decode_event(raw)
                if decoded is None:
                    logging.warning(f"Malformed frame from {self._describe(websocket)}. Ignoring.")
                    continue

                event, data = decoded
                try:
                    self.dispatch(websocket, event, data)
                except Exception:
                    # Payloads are not validated; a bad one must not take the connection down.
                    logging.exception(f"Error handling '{event}' from {self._describe(websocket)}")

        except websockets.exceptions.ConnectionClosedOK:
            logging.info(f"Client {websocket.remote_address} disconnected gracefully.")
        except websockets.exceptions.ConnectionClosedError as e:
            logging.info(f"Client {websocket.remote_address} disconnected with error: {e}")
        finally:
            # --- Cleanup ---
            # Runs however the connection ended: drop the user association and stop broadcasting to it.
            self.users.pop(websocket, None)
            self.connections.discard(websocket)
            logging.info(f"Connection closed for {websocket.remote_address}")

    def serve(self, host, port):
        """
        Returns the websockets server for this gateway, to be used as an async context manager.
        Port 0 binds an ephemeral port.
        """
        return websockets.serve(
            self.connection_handler,
            host,
            port,
            max_size=config.MAX_MESSAGE_SIZE,
        )


async def start_server(host, port, gateway=None):
    """
    Starts the WebSocket gateway and runs it until the process is stopped.

    Args:
        host (str): The hostname or IP address to bind to.
        port (int): The port number to bind to.
        gateway (ChatGateway | None): Gateway to serve; a fresh one with an empty store by default.
    """
    gateway = gateway if gateway is not None else ChatGateway()
    logging.info(f"Starting chat gateway on ws://{host}:{port}")
    logging.info(f"Maximum WebSocket message size set to: {config.MAX_MESSAGE_SIZE} bytes")
    logging.info(f"Server Debug Logging: {'ENABLED' if config.DEBUG else 'DISABLED'}")

    try:
        async with gateway.serve(host, port):
            await asyncio.Future() # This runs forever.
    except OSError:
        logging.exception(f"OSError starting gateway on {host}:{port} - Is the port already in use?")
        raise
