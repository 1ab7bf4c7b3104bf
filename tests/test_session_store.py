"""SessionStore 单元测试。"""

import asyncio

import pytest

from persona_chat.core.session_store import InvalidSessionError, SessionNotFoundError, SessionStore
from persona_chat.models.persona import HUMAN_ID, Persona
from persona_chat.models.session import Message
from persona_chat.registry.persona_registry import PersonaRegistry


@pytest.fixture
def registry(tmp_path):
    registry = PersonaRegistry(config_dir=str(tmp_path / "personas"))
    registry.register_persona(Persona(id="ai-a", name="甲"))
    registry.register_persona(Persona(id="ai-b", name="乙"))
    return registry


@pytest.fixture
async def store(tmp_path, registry):
    store = SessionStore(db_path=str(tmp_path / "test.db"), registry=registry)
    await store.initialize()
    yield store
    await store.close()


async def test_create_one_on_one(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"])
    assert chat.id
    assert chat.name == "甲"
    assert chat.is_group is False
    assert chat.participant_ids == [HUMAN_ID, "ai-a"]
    assert chat.last_message_at == chat.created_at

    fetched = await store.get_session(chat.id)
    assert fetched.participant_ids == [HUMAN_ID, "ai-a"]
    assert fetched.messages == []
    assert fetched.last_message_at == fetched.created_at


async def test_human_is_added_and_group_detected(store):
    chat = await store.create_session(["ai-a", "ai-b"])
    assert chat.participant_ids[0] == HUMAN_ID
    assert chat.is_group is True
    assert chat.name == "甲、乙"


async def test_explicit_group_flag(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"], name="小群", is_group=True)
    assert chat.is_group is True
    assert chat.name == "小群"


async def test_create_requires_ai(store):
    with pytest.raises(InvalidSessionError):
        await store.create_session([HUMAN_ID])


async def test_get_missing_session(store):
    with pytest.raises(SessionNotFoundError):
        await store.get_session("nope")
    with pytest.raises(SessionNotFoundError):
        await store.append_message("nope", Message(sender_id=HUMAN_ID, content="你好"))


async def test_append_keeps_order_and_updates_last_message_at(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"])
    await store.append_message(chat.id, Message(sender_id=HUMAN_ID, content="你好"))
    updated = await store.append_message(chat.id, Message(sender_id="ai-a", content="你好，有什么事？"))

    assert [m.content for m in updated.messages] == ["你好", "你好，有什么事？"]
    assert updated.last_message_at == updated.messages[-1].timestamp
    assert updated.messages[0].timestamp <= updated.messages[1].timestamp

    again = await store.get_session(chat.id)
    assert [m.id for m in again.messages] == [m.id for m in updated.messages]


async def test_unknown_sender_is_kept(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"])
    updated = await store.append_message(chat.id, Message(sender_id="ghost", content="我是谁"))
    assert updated.messages[-1].sender_id == "ghost"


async def test_concurrent_appends_are_serialized(store):
    chat = await store.create_session([HUMAN_ID, "ai-a", "ai-b"])
    await asyncio.gather(*[
        store.append_message(chat.id, Message(sender_id="ai-a", content=str(i)))
        for i in range(10)
    ])
    session = await store.get_session(chat.id)
    assert len(session.messages) == 10
    stamps = [m.timestamp for m in session.messages]
    assert stamps == sorted(stamps)
    assert session.last_message_at == stamps[-1]


async def test_get_messages_limit(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"])
    for i in range(5):
        await store.append_message(chat.id, Message(sender_id=HUMAN_ID, content=str(i)))
    recent = await store.get_messages(chat.id, limit=2)
    assert [m.content for m in recent] == ["3", "4"]


async def test_list_sessions_by_last_message(store):
    first = await store.create_session([HUMAN_ID, "ai-a"])
    second = await store.create_session([HUMAN_ID, "ai-b"])
    await store.append_message(first.id, Message(sender_id=HUMAN_ID, content="新消息"))

    chats = await store.list_sessions()
    assert [c.id for c in chats] == [first.id, second.id]
    assert chats[0].last_message.content == "新消息"
    assert chats[1].last_message is None


async def test_delete_session(store):
    chat = await store.create_session([HUMAN_ID, "ai-a"])
    await store.append_message(chat.id, Message(sender_id=HUMAN_ID, content="再见"))
    await store.delete_session(chat.id)
    assert not await store.has_session(chat.id)
    with pytest.raises(SessionNotFoundError):
        await store.get_session(chat.id)
    assert await store.get_messages(chat.id) == []


async def test_reset(store):
    await store.create_session([HUMAN_ID, "ai-a"])
    await store.create_session([HUMAN_ID, "ai-b"])
    await store.reset()
    assert await store.list_sessions() == []
