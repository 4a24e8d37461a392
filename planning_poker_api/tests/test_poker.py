from src.api.config import DEFAULT_EMOJI
from src.api.poker import (
    cast_vote,
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


def _room_with(*names):
    room, owner_id = make_room("Sprint 42", names[0], cards=[1, 2, 3, "?"])
    for name in names[1:]:
        push_participant(room, make_participant(name))
    return room, owner_id


def test_make_room_has_single_owner():
    room, owner_id = make_room("R", "Alice", cards=[1, 2, 3])
    assert room["ownerId"] == owner_id
    assert [u["name"] for u in room["users"]] == ["Alice"]
    assert room["revealed"] is False
    assert room["cards"] == [1, 2, 3]
    assert isinstance(room["createdAt"], int)
    owner = room["users"][0]
    assert owner["vote"] is None and owner["isReady"] is False and owner["spectator"] is False
    assert owner["emoji"] == DEFAULT_EMOJI


def test_join_preserves_order_and_unique_ids():
    room, _ = _room_with("Alice", "Bob", "Carol", "Dave")
    assert [u["name"] for u in room["users"]] == ["Alice", "Bob", "Carol", "Dave"]
    assert len(set(member_ids(room))) == 4


def test_rejoining_name_gets_new_id():
    a = make_participant("Bob")
    b = make_participant("Bob")
    assert a["id"] != b["id"]


def test_vote_marks_ready():
    room, owner_id = _room_with("Alice")
    assert cast_vote(room, owner_id, 2) is room
    assert room["users"][0]["vote"] == 2
    assert room["users"][0]["isReady"] is True


def test_vote_rejected_for_spectator_and_stranger():
    room, _ = _room_with("Alice", "Bob")
    bob = room["users"][1]
    set_spectator(room, bob["id"], True)
    assert cast_vote(room, bob["id"], 3) is None
    assert bob["vote"] is None
    assert cast_vote(room, "nobody", 3) is None


def test_entering_spectator_clears_vote():
    room, _ = _room_with("Alice", "Bob")
    bob = room["users"][1]
    cast_vote(room, bob["id"], 3)
    set_spectator(room, bob["id"], True)
    assert bob["spectator"] is True
    assert bob["vote"] is None
    assert bob["isReady"] is False


def test_leaving_spectator_only_flips_flag():
    room, _ = _room_with("Alice", "Bob")
    bob = room["users"][1]
    set_spectator(room, bob["id"], True)
    set_spectator(room, bob["id"], False)
    assert bob["spectator"] is False
    assert bob["vote"] is None


def test_owner_cannot_become_spectator():
    room, owner_id = _room_with("Alice")
    assert set_spectator(room, owner_id, True) is None
    assert room["users"][0]["spectator"] is False


def test_reveal_and_reset_require_owner():
    room, owner_id = _room_with("Alice", "Bob")
    bob_id = room["users"][1]["id"]
    assert reveal_votes(room, bob_id) is None
    assert room["revealed"] is False
    assert reveal_votes(room, owner_id)["revealed"] is True
    assert reset_votes(room, bob_id) is None
    assert room["revealed"] is True


def test_vote_reveal_reset_restores_round():
    room, owner_id = _room_with("Alice", "Bob", "Carol")
    for user, vote in zip(room["users"], [2, 3, "?"]):
        cast_vote(room, user["id"], vote)
    reveal_votes(room, owner_id)
    reset_votes(room, owner_id)
    assert room["revealed"] is False
    assert all(u["vote"] is None and u["isReady"] is False for u in room["users"])


def test_remove_absent_participant_is_noop():
    room, _ = _room_with("Alice", "Bob")
    assert remove_participant(room, "ghost") is None
    assert len(room["users"]) == 2


def test_remove_last_participant_deletes():
    room, owner_id = _room_with("Alice")
    removal = remove_participant(room, owner_id)
    assert removal.deleted is True
    assert removal.room is None


def test_owner_leaving_hands_over_to_earliest_joiner():
    room, owner_id = _room_with("Alice", "Bob", "Carol")
    bob_id = room["users"][1]["id"]
    removal = remove_participant(room, owner_id)
    assert removal.deleted is False
    assert removal.new_owner_id == bob_id
    assert room["ownerId"] == bob_id
    assert [u["name"] for u in room["users"]] == ["Bob", "Carol"]


def test_member_leaving_keeps_owner():
    room, owner_id = _room_with("Alice", "Bob")
    removal = remove_participant(room, room["users"][1]["id"])
    assert removal.new_owner_id is None
    assert room["ownerId"] == owner_id


def test_spectator_promoted_to_owner_stops_spectating():
    room, owner_id = _room_with("Alice", "Bob")
    bob = room["users"][1]
    set_spectator(room, bob["id"], True)
    remove_participant(room, owner_id)
    assert room["ownerId"] == bob["id"]
    assert room["users"][0]["spectator"] is False


def test_to_public_projection():
    room, owner_id = _room_with("Alice")
    del room["users"][0]["emoji"]
    public = to_public(room)
    assert public["id"] == room["_id"]
    assert "_id" not in public
    assert public["ownerId"] == owner_id
    assert public["users"][0]["emoji"] == DEFAULT_EMOJI
    assert set(public["users"][0]) == {"id", "name", "emoji", "isReady", "vote", "spectator"}
    assert set(public) == {"id", "name", "ownerId", "users", "revealed", "cards", "createdAt"}
