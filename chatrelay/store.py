# chatrelay/store.py
# In-memory message store for the chat relay.
# Holds the ordered list of active messages and the append-only list of deleted message snapshots.
# Messages are kept as the plain dictionaries clients send, so any extra keys (user, imageUrl, ...)
# survive untouched and are rebroadcast exactly as received.
#
# The store does no locking: the gateway calls it from a single asyncio event loop and every
# operation below runs to completion without awaiting.

import logging  # For logging store mutations when debugging.
import time     # For millisecond timestamps on edits.

from . import config


def now_ms():
    """Returns the current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def _message_id(message):
    # Non-object payloads are stored too; they just never match a lookup.
    return message.get('id') if isinstance(message, dict) else None


def _same_id(stored_id, message_id):
    """
    Strict id comparison: values must be equal without cross-type coercion.
    Python treats True == 1, so booleans only match booleans; containers never match,
    since two separately decoded JSON arrays or objects are never the same identifier.
    """
    if isinstance(stored_id, (list, dict)) or isinstance(message_id, (list, dict)):
        return False
    if isinstance(stored_id, bool) or isinstance(message_id, bool):
        return type(stored_id) is type(message_id) and stored_id == message_id
    return stored_id == message_id


class MessageStore:
    """
    Owns the chat log for one relay instance.

    Attributes:
        messages (list[dict]): Active messages in arrival order.
        deleted_messages (list[dict]): Snapshots of deleted messages in deletion order.
    """

    def __init__(self, clock=now_ms):
        """
        Args:
            clock (callable): Zero-argument callable returning the current time in milliseconds.
                Used for edit timestamps; tests pass a fake one.
        """
        # messages: Active messages, oldest first. New messages are appended, edits happen in place,
        # and a delete removes the entry.
        # Example: [{'id': '1', 'text': 'hi', 'timestamp': 1700000000000, 'editHistory': [], 'readBy': ['alice']}]
        self.messages = []
        # deleted_messages: Copies of messages taken at the moment they were deleted. Never pruned.
        # Example: [{'id': '2', 'text': 'oops', 'timestamp': 1700000005000, 'editHistory': []}]
        self.deleted_messages = []
        # _clock: Source of edit timestamps (milliseconds since the epoch).
        self._clock = clock

    def snapshot(self):
        """
        Returns shallow copies of both lists for the initial sync of a new connection.

        Returns:
            tuple[list[dict], list[dict]]: (active messages, deleted messages).
        """
        return list(self.messages), list(self.deleted_messages)

    def find_message(self, message_id):
        """Returns the first active message whose 'id' equals message_id, or None."""
        if message_id is None:
            return None
        for message in self.messages:
            if _same_id(_message_id(message), message_id):
                return message
        return None

    def add_message(self, message):
        """
        Appends a new message to the active list.
        The payload is not validated: whatever the client sent is stored as-is.
        """
        # Arrival order is the only ordering the relay guarantees.
        self.messages.append(message)
        if config.DEBUG:
            logging.info(f"Stored message {_message_id(message)!r} ({len(self.messages)} active)")
        return message

    def edit_message(self, message_id, new_text):
        """
        Replaces the text of an active message and records the previous text in its edit history.

        Args:
            message_id: Identifier of the message to edit.
            new_text (str): Replacement text.

        Returns:
            dict | None: The edited message, or None if no active message has that id.

        Raises:
            KeyError: If the stored message has no 'editHistory' list. Clients are expected
                to send it (usually empty) with every new message.
        """
        message = self.find_message(message_id)
        if message is None:
            if config.DEBUG:
                logging.info(f"Edit ignored, no active message with id {message_id!r}")
            return None

        # One clock reading is used for both the history entry and the new timestamp.
        edited_at = self._clock()
        # Archive the current text before replacing it. A message sent without 'editHistory'
        # raises KeyError here and is left unchanged.
        message['editHistory'].append({'text': message.get('text'), 'timestamp': edited_at})
        message['text'] = new_text
        message['timestamp'] = edited_at
        return message

    def delete_message(self, message_id):
        """
        Moves an active message into the deleted list.
        The deleted list receives a shallow copy frozen at deletion time.

        Returns:
            dict | None: The deleted snapshot, or None if no active message has that id.
        """
        message = self.find_message(message_id)
        if message is None:
            if config.DEBUG:
                logging.info(f"Delete ignored, no active message with id {message_id!r}")
            return None

        # Freeze a shallow copy so later changes to the active entry cannot leak into the deleted list.
        deleted = dict(message)
        self.deleted_messages.append(deleted)
        # Rebuild the active list without every entry carrying this id.
        self.messages = [m for m in self.messages if not _same_id(_message_id(m), message_id)]
        return deleted

    def mark_read(self, user):
        """
        Adds user to the readBy list of every active message.
        Idempotent: a user already present is not added again.

        Returns:
            list[dict]: The active messages after the update.
        """
        for message in self.messages:
            # Non-object payloads have nowhere to record a read receipt.
            if not isinstance(message, dict):
                continue
            # A missing, null or otherwise empty readBy starts a fresh list.
            read_by = message.get('readBy')
            if not read_by:
                read_by = message['readBy'] = []
            # Membership check keeps each user at most once per message.
            if user not in read_by:
                read_by.append(user)
        return self.messages
