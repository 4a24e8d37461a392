from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, TypedDict, Union

from src.api.config import DEFAULT_EMOJI

VoteValue = Union[int, float, str]


class Participant(TypedDict):
    id: str
    name: str
    emoji: str
    isReady: bool
    vote: Optional[VoteValue]
    spectator: bool


# Room documents are plain dicts keyed by "_id", as handed out by RoomStore.
# The mutators below change the document in place and return it, or return
# None without touching it when their precondition does not hold. That makes
# each of them usable directly as a RoomStore.find_one_and_update callback.


def new_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_participant(name: str, emoji: Optional[str] = None, default_emoji: str = DEFAULT_EMOJI) -> Participant:
    return {
        "id": new_id(),
        "name": name,
        "emoji": emoji or default_emoji,
        "isReady": False,
        "vote": None,
        "spectator": False,
    }


def make_room(
    room_name: str,
    owner_name: str,
    owner_emoji: Optional[str] = None,
    cards: Optional[list[VoteValue]] = None,
    default_emoji: str = DEFAULT_EMOJI,
) -> tuple[dict[str, Any], str]:
    """Build the initial room document; returns (document, owner_id)."""
    owner = make_participant(owner_name, owner_emoji, default_emoji)
    room = {
        "_id": new_id(),
        "name": room_name,
        "ownerId": owner["id"],
        "users": [owner],
        "revealed": False,
        "cards": list(cards or []),
        "createdAt": _now_ms(),
    }
    return room, owner["id"]


def find_participant(room: dict[str, Any], user_id: str) -> Optional[Participant]:
    return next((u for u in room["users"] if u["id"] == user_id), None)


def member_ids(room: dict[str, Any]) -> list[str]:
    return [u["id"] for u in room["users"]]


def push_participant(room: dict[str, Any], participant: Participant) -> dict[str, Any]:
    room["users"].append(participant)
    return room


def cast_vote(room: dict[str, Any], user_id: str, vote: VoteValue) -> Optional[dict[str, Any]]:
    user = find_participant(room, user_id)
    if user is None or user["spectator"]:
        return None
    user["vote"] = vote
    user["isReady"] = True
    return room


def set_spectator(room: dict[str, Any], user_id: str, spectator: bool) -> Optional[dict[str, Any]]:
    """Toggle spectator mode. The owner can never become a spectator."""
    user = find_participant(room, user_id)
    if user is None:
        return None
    if spectator and room["ownerId"] == user_id:
        return None
    user["spectator"] = spectator
    if spectator:
        user["vote"] = None
        user["isReady"] = False
    return room


def reveal_votes(room: dict[str, Any], requester_id: str) -> Optional[dict[str, Any]]:
    if room["ownerId"] != requester_id:
        return None
    room["revealed"] = True
    return room


def reset_votes(room: dict[str, Any], requester_id: str) -> Optional[dict[str, Any]]:
    if room["ownerId"] != requester_id:
        return None
    room["revealed"] = False
    for user in room["users"]:
        user["vote"] = None
        user["isReady"] = False
    return room


@dataclass(frozen=True)
class Removal:
    """Outcome of removing a participant: either the room is gone, or here is what is left."""

    deleted: bool
    room: Optional[dict[str, Any]] = None
    new_owner_id: Optional[str] = None


def remove_participant(room: dict[str, Any], user_id: str) -> Optional[Removal]:
    """
    Pull *user_id* from the room.

    Returns None if the participant is not a member (leaving twice is a
    no-op), Removal(deleted=True) if nobody would be left, otherwise the
    updated room with ownership handed to the earliest remaining joiner when
    the owner is the one leaving.
    """
    idx = next((i for i, u in enumerate(room["users"]) if u["id"] == user_id), None)
    if idx is None:
        return None
    remaining = room["users"][:idx] + room["users"][idx + 1 :]
    if not remaining:
        return Removal(deleted=True)

    room["users"] = remaining
    new_owner_id = None
    if room["ownerId"] == user_id:
        new_owner_id = remaining[0]["id"]
        room["ownerId"] = new_owner_id
        # The owner may never be a spectator.
        if remaining[0]["spectator"]:
            remaining[0]["spectator"] = False
    return Removal(deleted=False, room=room, new_owner_id=new_owner_id)


def to_public(doc: dict[str, Any], default_emoji: str = DEFAULT_EMOJI) -> dict[str, Any]:
    """Project a stored room document into the shape sent to clients."""
    return {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "ownerId": doc["ownerId"],
        "users": [
            {
                "id": u["id"],
                "name": u["name"],
                "emoji": u.get("emoji") or default_emoji,
                "isReady": bool(u.get("isReady")),
                "vote": u.get("vote"),
                "spectator": bool(u.get("spectator")),
            }
            for u in doc["users"]
        ],
        "revealed": bool(doc["revealed"]),
        "cards": list(doc.get("cards") or []),
        "createdAt": doc["createdAt"],
    }
