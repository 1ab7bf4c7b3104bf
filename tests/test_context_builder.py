"""上下文构建与角色翻译测试。"""

import pytest

from persona_chat.core.context_builder import CONTINUE_CUE, ContextBuilder, build_completion_messages
from persona_chat.core.session_store import SessionStore
from persona_chat.models.persona import HUMAN_ID, Persona
from persona_chat.models.session import Message
from persona_chat.registry.persona_registry import PersonaRegistry

ME = Persona(id=HUMAN_ID, name="我", is_user=True)
A = Persona(id="ai-a", name="甲", system_instruction="你是甲。")
B = Persona(id="ai-b", name="乙", system_instruction="你是乙。")
PARTICIPANTS = {p.id: p for p in (ME, A, B)}


def _roles(messages):
    return [(m.role, m.content) for m in messages]


def test_translation_from_persona_view():
    history = [
        Message(sender_id=HUMAN_ID, content="你们怎么看？"),
        Message(sender_id="ai-a", content="我先说。"),
        Message(sender_id="ai-b", content="我不同意。"),
        Message.system("甲 回复失败：网络连接失败"),
        Message(sender_id=HUMAN_ID, content="甲，你再说说"),
    ]
    messages = build_completion_messages(A, history, PARTICIPANTS)
    assert _roles(messages) == [
        ("system", "你是甲。"),
        ("user", "你们怎么看？"),
        ("assistant", "我先说。"),
        ("assistant", "[乙]: 我不同意。"),
        ("user", "甲，你再说说"),
    ]


def test_other_persona_sees_tagged_messages():
    history = [
        Message(sender_id=HUMAN_ID, content="开始"),
        Message(sender_id="ai-a", content="我先说。"),
    ]
    messages = build_completion_messages(B, history, PARTICIPANTS)
    assert _roles(messages) == [
        ("system", "你是乙。"),
        ("user", "开始"),
        ("assistant", "[甲]: 我先说。"),
        ("user", CONTINUE_CUE.format(name="乙")),
    ]


def test_unknown_sender_placeholder():
    history = [Message(sender_id="ghost", content="我是谁")]
    messages = build_completion_messages(A, history, PARTICIPANTS, continue_cue=False)
    assert _roles(messages) == [
        ("system", "你是甲。"),
        ("assistant", "[未知成员]: 我是谁"),
    ]


def test_empty_instruction_and_history():
    persona = Persona(id="ai-x", name="X")
    messages = build_completion_messages(persona, [], {})
    assert _roles(messages) == [("user", CONTINUE_CUE.format(name="X"))]


def test_human_sender_without_registry_entry():
    history = [Message(sender_id=HUMAN_ID, content="hello")]
    messages = build_completion_messages(A, history, {"ai-a": A})
    assert _roles(messages)[-1] == ("user", "hello")


@pytest.fixture
async def builder(tmp_path):
    registry = PersonaRegistry(config_dir=str(tmp_path / "personas"))
    registry.register_persona(A)
    registry.register_persona(B)
    store = SessionStore(db_path=str(tmp_path / "test.db"), registry=registry)
    await store.initialize()
    yield ContextBuilder(store, registry, history_limit=3)
    await store.close()


async def test_build_uses_recent_history(builder):
    chat = await builder.session_store.create_session([HUMAN_ID, "ai-a", "ai-b"])
    for i in range(5):
        await builder.session_store.append_message(chat.id, Message(sender_id=HUMAN_ID, content=str(i)))

    context = await builder.build(chat.id, "ai-b")
    assert context.persona.id == "ai-b"
    assert [m.content for m in context.history] == ["2", "3", "4"]
    assert set(context.participants) == {HUMAN_ID, "ai-a", "ai-b"}


async def test_build_unknown_persona(builder):
    chat = await builder.session_store.create_session([HUMAN_ID, "ai-a"])
    with pytest.raises(KeyError):
        await builder.build(chat.id, "ai-missing")
