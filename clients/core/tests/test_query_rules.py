import pytest

from quickchat import rules
from quickchat.errors import NotFoundError, PermissionDeniedError, ValidationError
from quickchat.query import Query, expand


def _records():
    return [
        {"id": "a", "n": 2, "tags": ["x", "y"]},
        {"id": "b", "n": 1, "tags": ["y"]},
        {"id": "c", "n": None, "tags": []},
        {"id": "d", "n": 1, "tags": ["x"]},
    ]


def test_filters_sort_and_limit():
    query = Query("Message").where("tags", "has", "y").ascending("n")
    assert [r["id"] for r in query.apply(_records())] == ["b", "a"]

    query = Query("Message").where("id", "ne", "a").descending("n").take(2)
    assert [r["id"] for r in query.apply(_records())] == ["b", "d"]

    query = Query("Message").where("tags", "has_all", ["x", "y"])
    assert [r["id"] for r in query.apply(_records())] == ["a"]


def test_skip_pages_after_sorting():
    query = Query("Message").ascending("n")
    assert [r["id"] for r in query.skip(1).take(2).apply(_records())] == ["b", "d"]
    assert query.skip(10).apply(_records()) == []
    assert Query.from_wire(query.skip(3).take(1).to_wire()).offset == 3
    with pytest.raises(ValueError):
        Query.from_wire({"kind": "User", "offset": -2})


def test_none_sorts_first_ascending():
    assert [r["id"] for r in Query("Message").ascending("n").apply(_records())] == ["c", "b", "d", "a"]


def test_wire_format_round_trip_and_rejections():
    query = Query("Conversation").where("participant_ids", "has", "u1").include("participants").descending("updated_at_ms")
    assert Query.from_wire(query.to_wire()) == query

    with pytest.raises(ValueError):
        Query.from_wire({"kind": "Nope"})
    with pytest.raises(ValueError):
        Query.from_wire({"kind": "User", "filters": [["id", "like", "x"]]})
    with pytest.raises(ValueError):
        Query.from_wire({"kind": "User", "includes": ["sender"]})
    with pytest.raises(ValueError):
        Query.from_wire({"kind": "User", "limit": -1})


def test_expand_resolves_and_drops_dangling_pointers():
    users = {"u1": {"id": "u1"}}

    def lookup(kind, object_id):
        return users.get(object_id) if kind == "User" else None

    record = {"id": "c1", "participant_ids": ["u1", "gone"], "last_message_id": "m9"}
    expanded = expand("Conversation", record, ("participants", "last_message"), lookup)
    assert expanded["participants"] == [{"id": "u1"}]
    assert expanded["last_message"] is None
    assert "participants" not in record


def _lookup_for(objects):
    def lookup(kind, object_id):
        return objects.get((kind, object_id))

    return lookup


def test_conversation_create_rules():
    lookup = _lookup_for({("User", "u1"): {"id": "u1"}, ("User", "u2"): {"id": "u2"}})

    fields = rules.check_create("Conversation", {"participant_ids": ["u1", "u2", "u1"]}, "u1", lookup)
    assert fields == {"participant_ids": ["u1", "u2"], "last_message_id": None}

    with pytest.raises(PermissionDeniedError):
        rules.check_create("Conversation", {"participant_ids": ["u2"]}, "u1", lookup)
    with pytest.raises(NotFoundError):
        rules.check_create("Conversation", {"participant_ids": ["u1", "u3"]}, "u1", lookup)


def test_message_create_rules():
    conversation = {"id": "c1", "participant_ids": ["u1", "u2"]}
    lookup = _lookup_for({("Conversation", "c1"): conversation})
    base = {"conversation_id": "c1", "sender_id": "u1", "text": "hi"}

    assert rules.check_create("Message", base, "u1", lookup)["text"] == "hi"
    with pytest.raises(ValidationError):
        rules.check_create("Message", {**base, "text": "   "}, "u1", lookup)
    with pytest.raises(ValidationError):
        rules.check_create("Message", {**base, "text": "x" * 11}, "u1", lookup, max_text_chars=10)
    with pytest.raises(PermissionDeniedError):
        rules.check_create("Message", base, "u2", lookup)
    with pytest.raises(PermissionDeniedError):
        rules.check_create("Message", {**base, "sender_id": "u3"}, "u3", lookup)
    with pytest.raises(NotFoundError):
        rules.check_create("Message", {**base, "conversation_id": "c9"}, "u1", lookup)


def test_user_updates_are_owner_only_and_registration_is_one_way():
    existing = {"id": "u1", "is_registered": True}
    with pytest.raises(PermissionDeniedError):
        rules.check_update("User", existing, {"bio": "x"}, "u2", _lookup_for({}))
    with pytest.raises(ValidationError):
        rules.check_update("User", existing, {"is_registered": False}, "u1", _lookup_for({}))
    assert rules.check_update("User", existing, {"bio": None}, "u1", _lookup_for({})) == {"bio": None}


def test_unknown_fields_are_rejected():
    with pytest.raises(ValidationError):
        rules.clean_fields("User", {"identifier": "+1"})
    assert rules.clean_fields("User", {"id": "u1", "bio": "b"}) == {"bio": "b"}
