from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from src.api.errors import ValidationError

# Votes and cards mix numbers with sentinel tokens such as "?" or "unknown".
# Strict so that JSON booleans are not coerced into 0/1.
CardValue = Union[StrictInt, StrictFloat, StrictStr]


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class RoomCreate(_Command):
    type: Literal["room:create"]
    roomName: str = Field(..., min_length=1, description="Display name of the room.")
    ownerName: str = Field(..., min_length=1, description="Display name of the creator (moderator).")
    ownerEmoji: Optional[str] = Field(default=None, description="Optional display marker for the creator.")
    cards: list[CardValue] = Field(default_factory=list, description="Permissible vote values.")


class RoomJoin(_Command):
    type: Literal["room:join"]
    roomId: str = Field(..., min_length=1, description="Room to join.")
    userName: str = Field(..., min_length=1, description="Display name of the joining participant.")
    emoji: Optional[str] = Field(default=None, description="Optional display marker.")


class UserVote(_Command):
    type: Literal["user:vote"]
    vote: CardValue = Field(..., description="Chosen card.")


class UserSpectate(_Command):
    type: Literal["user:spectate"]
    spectator: StrictBool = Field(..., description="Enter (true) or leave (false) spectator mode.")


class RoomReveal(_Command):
    type: Literal["room:reveal"]


class RoomReset(_Command):
    type: Literal["room:reset"]


class RoomLeave(_Command):
    type: Literal["room:leave"]


class Ping(_Command):
    type: Literal["ping"]


Command = Annotated[
    Union[RoomCreate, RoomJoin, UserVote, UserSpectate, RoomReveal, RoomReset, RoomLeave, Ping],
    Field(discriminator="type"),
]

COMMAND_TYPES = frozenset(
    ["room:create", "room:join", "user:vote", "user:spectate", "room:reveal", "room:reset", "room:leave", "ping"]
)

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def _describe(err: PydanticValidationError) -> str:
    first = err.errors()[0]
    # loc starts with the discriminator tag, e.g. ("room:create", "roomName").
    field = ".".join(str(p) for p in first["loc"][1:]) or "payload"
    return f"Invalid '{field}': {first['msg']}"


def parse_command(raw: Any) -> Command:
    """Validate one inbound envelope; raise ValidationError for anything that is not a known command."""
    if not isinstance(raw, dict):
        raise ValidationError("Message must be a JSON object")
    msg_type = raw.get("type")
    if msg_type not in COMMAND_TYPES:
        raise ValidationError(f"Unknown message type: {msg_type}")
    try:
        return _command_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


def room_created(room: dict[str, Any], owner_id: str) -> dict[str, Any]:
    return {"type": "room:created", "room": room, "ownerId": owner_id}


def room_joined(room: dict[str, Any], user_id: str) -> dict[str, Any]:
    return {"type": "room:joined", "room": room, "userId": user_id}


def room_updated(room: dict[str, Any]) -> dict[str, Any]:
    return {"type": "room:updated", "room": room}


def room_left(room_id: str) -> dict[str, Any]:
    return {"type": "room:left", "roomId": room_id}


def room_error(message: str) -> dict[str, Any]:
    return {"type": "room:error", "message": message}


def pong() -> dict[str, Any]:
    return {"type": "pong"}
