from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from src.api.config import Settings
from src.api.db import MAX_WRITE_ATTEMPTS, RoomStore
from src.api.errors import ForbiddenError, NotBoundError, NotFoundError, RoomError, StoreError, ValidationError
from src.api.logging_config import get_logger
from src.api.messages import (
    Command,
    Ping,
    RoomCreate,
    RoomJoin,
    RoomLeave,
    RoomReset,
    RoomReveal,
    UserSpectate,
    UserVote,
    parse_command,
    pong,
    room_created,
    room_error,
    room_joined,
    room_left,
    room_updated,
)
from src.api.poker import (
    Removal,
    VoteValue,
    cast_vote,
    find_participant,
    make_participant,
    make_room,
    member_ids,
    push_participant,
    remove_participant,
    reset_votes,
    reveal_votes,
    set_spectator,
    to_public,
)
from src.api.ws_manager import Channel, ConnectionRegistry, RoomBroadcaster

logger = get_logger(__name__)


@dataclass
class ConnectionContext:
    """What the server knows about one live connection."""

    channel: Channel
    user_id: Optional[str] = None
    room_id: Optional[str] = None
    # Serialises this connection's commands and its disconnect cleanup.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_bound(self) -> bool:
        return self.user_id is not None and self.room_id is not None


class RoomSessionEngine:
    """
    Command handlers for planning-poker rooms.

    Each handler validates against the stored room, performs exactly one
    conditional write, and fans the resulting state out. Preconditions
    (membership, ownership, spectator status) live inside the write callback
    so the store evaluates them against the state it actually replaces; a
    failed write is then explained by a follow-up read purely to pick the
    error message.
    """

    def __init__(
        self,
        store: RoomStore,
        registry: ConnectionRegistry,
        broadcaster: Optional[RoomBroadcaster] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster or RoomBroadcaster(registry)
        self.settings = settings or Settings()
        self._cleanups: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args), timeout=self.settings.store_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Room store call {fn.__name__} timed out after {self.settings.store_timeout_seconds}s")
            raise StoreError() from e

    def _public(self, doc: dict[str, Any]) -> dict[str, Any]:
        return to_public(doc, self.settings.default_emoji)

    async def _broadcast_room(self, doc: dict[str, Any], exclude: Optional[str] = None) -> dict[str, Any]:
        room = self._public(doc)
        await self.broadcaster.send_to_room(room, room_updated(room), exclude=exclude)
        return room

    def _bind(self, ctx: ConnectionContext, user_id: str, room_id: str) -> None:
        self.registry.bind(user_id, ctx.channel)
        ctx.user_id = user_id
        ctx.room_id = room_id

    @staticmethod
    def _require_binding(ctx: ConnectionContext) -> tuple[str, str]:
        if not ctx.is_bound:
            raise NotBoundError()
        return ctx.user_id, ctx.room_id  # type: ignore[return-value]

    async def _explain_miss(self, room_id: str, user_id: str, forbidden: str) -> RoomError:
        """Turn an unmatched conditional write into the error the requester sees."""
        doc = await self._store_call(self.store.find_one, room_id)
        if doc is None:
            return NotFoundError()
        if find_participant(doc, user_id) is None:
            return NotBoundError("You are no longer in this room")
        return ForbiddenError(forbidden)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create(
        self,
        ctx: ConnectionContext,
        room_name: str,
        owner_name: str,
        owner_emoji: Optional[str] = None,
        cards: Optional[list[VoteValue]] = None,
    ) -> dict[str, Any]:
        if not room_name or not owner_name:
            raise ValidationError("Room name and user name are required")
        if ctx.is_bound:
            await self._leave(ctx)

        doc, owner_id = make_room(room_name, owner_name, owner_emoji, cards, self.settings.default_emoji)
        await self._store_call(self.store.insert_one, doc)
        self._bind(ctx, owner_id, doc["_id"])

        room = self._public(doc)
        await self.broadcaster.send_to(owner_id, room_created(room, owner_id))
        logger.info(f"Room created: {room_name} ({doc['_id']}) by {owner_name}")
        return room

    async def join(
        self, ctx: ConnectionContext, room_id: str, user_name: str, emoji: Optional[str] = None
    ) -> dict[str, Any]:
        if not room_id or not user_name:
            raise ValidationError("Room id and user name are required")
        existing = await self._store_call(self.store.find_one, room_id)
        if existing is None:
            raise NotFoundError()
        if ctx.room_id == room_id and find_participant(existing, ctx.user_id) is not None:
            # Already a member here: repeat the acknowledgement, keep id and ownership.
            room = self._public(existing)
            await self.broadcaster.send_to(ctx.user_id, room_joined(room, ctx.user_id))
            return room
        if ctx.is_bound:
            await self._leave(ctx)

        user = make_participant(user_name, emoji, self.settings.default_emoji)
        doc = await self._store_call(self.store.find_one_and_update, room_id, lambda d: push_participant(d, user))
        if doc is None:
            # Last member left between the read and the push.
            raise NotFoundError()
        self._bind(ctx, user["id"], room_id)

        room = self._public(doc)
        await self.broadcaster.send_to(user["id"], room_joined(room, user["id"]))
        await self.broadcaster.send_to_room(room, room_updated(room), exclude=user["id"])
        logger.info(f"{user_name} joined room {room_id} ({len(room['users'])} members)")
        return room

    async def vote(self, ctx: ConnectionContext, vote: VoteValue) -> dict[str, Any]:
        user_id, room_id = self._require_binding(ctx)
        doc = await self._store_call(self.store.find_one_and_update, room_id, lambda d: cast_vote(d, user_id, vote))
        if doc is None:
            raise await self._explain_miss(room_id, user_id, "Spectators cannot vote")
        logger.debug(f"{user_id} voted {vote!r} in room {room_id}")
        return await self._broadcast_room(doc)

    async def set_spectator(self, ctx: ConnectionContext, spectator: bool) -> dict[str, Any]:
        user_id, room_id = self._require_binding(ctx)
        doc = await self._store_call(
            self.store.find_one_and_update, room_id, lambda d: set_spectator(d, user_id, spectator)
        )
        if doc is None:
            raise await self._explain_miss(room_id, user_id, "The room owner cannot be a spectator")
        logger.info(f"{user_id} {'entered' if spectator else 'left'} spectator mode in room {room_id}")
        return await self._broadcast_room(doc)

    async def reveal(self, ctx: ConnectionContext) -> dict[str, Any]:
        user_id, room_id = self._require_binding(ctx)
        doc = await self._store_call(self.store.find_one_and_update, room_id, lambda d: reveal_votes(d, user_id))
        if doc is None:
            raise await self._explain_miss(room_id, user_id, "Only the moderator can reveal the votes")
        logger.info(f"Votes revealed in room {room_id}")
        return await self._broadcast_room(doc)

    async def reset(self, ctx: ConnectionContext) -> dict[str, Any]:
        user_id, room_id = self._require_binding(ctx)
        doc = await self._store_call(self.store.find_one_and_update, room_id, lambda d: reset_votes(d, user_id))
        if doc is None:
            raise await self._explain_miss(room_id, user_id, "Only the moderator can reset the votes")
        logger.info(f"Voting reset in room {room_id}")
        return await self._broadcast_room(doc)

    async def leave(self, ctx: ConnectionContext) -> Optional[Removal]:
        """Explicit leave; the connection stays open but is no longer in a room."""
        _, room_id = self._require_binding(ctx)
        removal = await self._leave(ctx)
        await self.broadcaster.send_direct(ctx.channel, room_left(room_id))
        return removal

    async def disconnect(self, ctx: ConnectionContext) -> Optional[Removal]:
        """
        Transport closed. Room errors are logged, not raised; the connection is gone either way.

        The binding is dropped before anything is awaited. The membership
        cleanup runs as its own task so that cancelling the caller (the
        transport tearing down the connection task) cannot stop it halfway.
        """
        if ctx.user_id is not None:
            self.registry.unbind(ctx.user_id, ctx.channel)
        task = asyncio.ensure_future(self._cleanup(ctx))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)
        return await asyncio.shield(task)

    async def wait_for_cleanups(self) -> None:
        """Block until every pending disconnect cleanup has finished."""
        while self._cleanups:
            await asyncio.gather(*list(self._cleanups), return_exceptions=True)

    async def _cleanup(self, ctx: ConnectionContext) -> Optional[Removal]:
        async with ctx.lock:
            try:
                return await self._leave(ctx)
            except RoomError as e:
                logger.warning(f"Cleanup after disconnect failed: {e.message}")
                return None

    async def _leave(self, ctx: ConnectionContext) -> Optional[Removal]:
        if not ctx.is_bound:
            return None
        user_id, room_id = ctx.user_id, ctx.room_id
        self.registry.unbind(user_id, ctx.channel)
        ctx.user_id = ctx.room_id = None

        removal = await self._remove_member(room_id, user_id)
        if removal is None:
            logger.debug(f"{user_id} already gone from room {room_id}")
            return None
        if removal.deleted:
            logger.info(f"Room {room_id} deleted (empty)")
            return removal
        if removal.new_owner_id is not None:
            logger.info(f"Room {room_id} ownership passed to {removal.new_owner_id}")
        logger.info(f"{user_id} left room {room_id}")
        await self._broadcast_room(removal.room)
        return removal

    async def _remove_member(self, room_id: str, user_id: str) -> Optional[Removal]:
        """Pull the member, deleting the room if they were the last one. Idempotent."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            deleted = await self._store_call(
                self.store.find_one_and_delete, room_id, lambda d: member_ids(d) == [user_id]
            )
            if deleted is not None:
                return Removal(deleted=True)

            outcome: dict[str, Optional[Removal]] = {}

            def pull(doc: dict[str, Any]) -> Optional[dict[str, Any]]:
                removal = remove_participant(doc, user_id)
                outcome["removal"] = removal
                if removal is None or removal.deleted:
                    return None
                return removal.room

            doc = await self._store_call(self.store.find_one_and_update, room_id, pull)
            if doc is not None:
                return Removal(deleted=False, room=doc, new_owner_id=outcome["removal"].new_owner_id)
            if outcome.get("removal") is None:
                return None
            # Everyone else left in the meantime; go round and delete.
        raise StoreError()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, ctx: ConnectionContext, command: Command) -> Any:
        if isinstance(command, RoomCreate):
            return await self.create(ctx, command.roomName, command.ownerName, command.ownerEmoji, command.cards)
        if isinstance(command, RoomJoin):
            return await self.join(ctx, command.roomId, command.userName, command.emoji)
        if isinstance(command, UserVote):
            return await self.vote(ctx, command.vote)
        if isinstance(command, UserSpectate):
            return await self.set_spectator(ctx, command.spectator)
        if isinstance(command, RoomReveal):
            return await self.reveal(ctx)
        if isinstance(command, RoomReset):
            return await self.reset(ctx)
        if isinstance(command, RoomLeave):
            return await self.leave(ctx)
        if isinstance(command, Ping):
            await self.broadcaster.send_direct(ctx.channel, pong())
            return None
        raise ValidationError(f"Unknown message type: {getattr(command, 'type', None)}")

    async def handle(self, ctx: ConnectionContext, raw: Any) -> None:
        """Process one inbound envelope; command failures go back to the requester only."""
        async with ctx.lock:
            try:
                command = parse_command(raw)
                await self.dispatch(ctx, command)
            except RoomError as e:
                logger.info(f"Command {raw.get('type') if isinstance(raw, dict) else raw!r} rejected: {e.message}")
                await self.broadcaster.send_direct(ctx.channel, room_error(e.message))
