"""
Tests for the in-memory session store.
"""

import pytest

from conversebridge.history import InMemorySessionStore, StoredSession
from conversebridge.models import Message, Role, TextBlock


def message(text, role=Role.USER):
    return Message(role=role, content=[TextBlock(text)])


class TestInMemorySessionStore:
    @pytest.mark.asyncio
    async def test_create_session(self):
        store = InMemorySessionStore()
        session_id = await store.create_session("defaultAgent", "claude-sonnet", "Be brief.")
        stored = store.get_session(session_id)
        assert stored.agent_kind == "defaultAgent"
        assert stored.model_id == "claude-sonnet"
        assert stored.system_prompt == "Be brief."
        assert stored.messages == []
        assert store.active_session_id == session_id

    @pytest.mark.asyncio
    async def test_add_and_delete_messages(self):
        store = InMemorySessionStore()
        session_id = await store.create_session("defaultAgent", "m")
        first, second, third = message("a"), message("b", Role.ASSISTANT), message("c")
        for m in (first, second, third):
            await store.add_message(session_id, m)

        await store.delete_message(session_id, 1)
        assert [m.id for m in store.get_session(session_id).messages] == [first.id, third.id]

    @pytest.mark.asyncio
    async def test_delete_out_of_range_is_noop(self):
        store = InMemorySessionStore()
        session_id = await store.create_session("defaultAgent", "m")
        await store.add_message(session_id, message("a"))
        await store.delete_message(session_id, 5)
        assert len(store.get_session(session_id).messages) == 1

    @pytest.mark.asyncio
    async def test_stored_messages_are_copies(self):
        store = InMemorySessionStore()
        session_id = await store.create_session("defaultAgent", "m")
        original = message("a")
        await store.add_message(session_id, original)
        original.metadata["late"] = True

        loaded = store.get_session(session_id).messages[0]
        assert loaded.metadata == {}
        loaded.metadata["changed"] = True
        assert store.sessions[session_id].messages[0].metadata == {}

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        store = InMemorySessionStore()
        assert store.get_session("nope") is None
        with pytest.raises(KeyError):
            await store.add_message("nope", message("a"))
        with pytest.raises(KeyError):
            await store.set_active_session("nope")

    @pytest.mark.asyncio
    async def test_set_active_session(self):
        store = InMemorySessionStore()
        first = await store.create_session("defaultAgent", "m")
        await store.create_session("defaultAgent", "m")
        await store.set_active_session(first)
        assert store.active_session_id == first


class TestStoredSession:
    def test_dict_form(self):
        session = StoredSession(
            id="s1",
            agent_kind="defaultAgent",
            model_id="m",
            messages=[message("hi")],
        )
        restored = StoredSession.from_dict(session.to_dict())
        assert restored == session
