from __future__ import annotations


class RoomError(Exception):
    """Base for command failures that are reported back to the requester only."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(RoomError):
    default_message = "Invalid message payload"


class NotFoundError(RoomError):
    default_message = "Room not found"


class NotBoundError(RoomError):
    default_message = "You are not in a room"


class ForbiddenError(RoomError):
    default_message = "Not allowed"


class StoreError(RoomError):
    # Never carries driver detail; the cause is chained for the logs.
    default_message = "Room store unavailable"
