import pytest

from src.memory.threads import derive_thread_id, parse_thread_id


def test_derive_thread_id_is_deterministic():
    assert derive_thread_id("c1", "g1") == derive_thread_id("c1", "g1")
    assert derive_thread_id("c1", "g1") == "discord:g1:c1"
    assert derive_thread_id("c1") == "discord:dm:c1"
    assert derive_thread_id("c1", "") == "discord:dm:c1"


def test_private_and_scoped_conversations_do_not_collide():
    assert derive_thread_id("123") != derive_thread_id("123", "456")
    assert derive_thread_id("123", "1") != derive_thread_id("123", "2")


def test_parse_thread_id_round_trips_identity():
    scoped = parse_thread_id(derive_thread_id("c1", "g1"))
    assert scoped.platform == "discord"
    assert scoped.conversation_id == "c1"
    assert scoped.scope_id == "g1"
    assert scoped.is_private is False

    private = parse_thread_id(derive_thread_id("c2"))
    assert private.scope_id is None
    assert private.is_private is True


@pytest.mark.parametrize(
    ("conversation_id", "scope_id"),
    [("a:b", None), ("c1", "g:1"), ("", "g1"), ("c1", "dm")],
)
def test_derive_thread_id_rejects_ambiguous_components(conversation_id, scope_id):
    with pytest.raises(ValueError):
        derive_thread_id(conversation_id, scope_id)


@pytest.mark.parametrize("thread_id", ["", "discord", "discord:c1", "discord::c1", "a:b:c:d"])
def test_parse_thread_id_rejects_malformed_ids(thread_id):
    with pytest.raises(ValueError):
        parse_thread_id(thread_id)
