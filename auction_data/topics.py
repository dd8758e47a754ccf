"""
Topic names shared with the auction server's message broker.

Broadcast topics (server -> client) live under /topic, command topics
(client -> server) under /app. The strings must match the server exactly.
"""

from typing import Optional

GLOBAL_TOPIC = "/topic/bidUpdates"
ITEM_TOPIC_PREFIX = "/topic/bid/"
BID_COMMAND_PREFIX = "/app/bid/"

# String forms a missing id takes when it has been stringified upstream
_MISSING_ID_STRINGS = {"", "undefined", "null", "none"}


def normalize_item_id(item_id) -> Optional[str]:
    """
    Return the topic form of an item id, or None if it is not usable.

    Accepts ints and non-empty strings. Rejects None, bools, floats,
    placeholder strings ("undefined", "null") and anything that would
    change the shape of a topic path.
    """
    if item_id is None or isinstance(item_id, bool):
        return None
    if isinstance(item_id, int):
        return str(item_id)
    if not isinstance(item_id, str):
        return None
    text = item_id.strip()
    if text.lower() in _MISSING_ID_STRINGS:
        return None
    if "/" in text or any(ch.isspace() for ch in text):
        return None
    return text


def item_topic(item_id) -> str:
    key = normalize_item_id(item_id)
    if key is None:
        raise ValueError(f"Invalid item id: {item_id!r}")
    return ITEM_TOPIC_PREFIX + key


def bid_command_topic(item_id) -> str:
    key = normalize_item_id(item_id)
    if key is None:
        raise ValueError(f"Invalid item id: {item_id!r}")
    return BID_COMMAND_PREFIX + key
