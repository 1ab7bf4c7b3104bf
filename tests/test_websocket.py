"""WebSocketManager 测试：事件格式、按聊天投递与失效连接的清理。"""

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

from persona_chat.api.websocket import WebSocketManager
from persona_chat.models.session import Message


@pytest.fixture
def manager():
    return WebSocketManager()


async def test_events_only_reach_their_chat(manager):
    in_chat, other_chat = AsyncMock(), AsyncMock()
    await manager.connect(in_chat, "chat-1")
    await manager.connect(other_chat, "chat-2")
    in_chat.accept.assert_awaited_once()

    await manager.send_typing("chat-1", "ai-a")
    in_chat.send_json.assert_awaited_once_with({"type": "typing", "chat_id": "chat-1", "persona_id": "ai-a"})
    other_chat.send_json.assert_not_awaited()


async def test_message_event_is_json_ready(manager):
    ws = AsyncMock()
    await manager.connect(ws, "chat-1")
    message = Message(id="m1", sender_id="ai-a", content="你好", timestamp=datetime(2024, 1, 1, 12, 0))

    await manager.send_message("chat-1", message)
    event = ws.send_json.await_args.args[0]
    assert event["type"] == "message"
    assert event["chat_id"] == "chat-1"
    assert event["message"]["timestamp"] == "2024-01-01T12:00:00"
    assert event["message"]["content"] == "你好"


async def test_typing_end_and_auto_chat(manager):
    ws = AsyncMock()
    await manager.connect(ws, "chat-1")
    await manager.send_typing("chat-1", None)
    await manager.send_auto_chat("chat-1", True)
    events = [c.args[0] for c in ws.send_json.await_args_list]
    assert events == [
        {"type": "typing", "chat_id": "chat-1", "persona_id": None},
        {"type": "auto_chat", "chat_id": "chat-1", "active": True},
    ]


async def test_failed_connection_is_dropped(manager):
    alive, broken = AsyncMock(), AsyncMock()
    broken.send_json.side_effect = RuntimeError("socket closed")
    await manager.connect(alive, "chat-1")
    await manager.connect(broken, "chat-1")

    await manager.send_auto_chat("chat-1", False)
    assert manager.connections["chat-1"] == {alive}

    await manager.send_auto_chat("chat-1", True)
    assert broken.send_json.await_count == 1
    assert alive.send_json.await_count == 2


async def test_chat_deleted_releases_connections(manager):
    ws = AsyncMock()
    await manager.connect(ws, "chat-1")
    await manager.send_chat_deleted("chat-1")
    ws.send_json.assert_awaited_once_with({"type": "chat_deleted", "chat_id": "chat-1"})
    assert "chat-1" not in manager.connections

    await manager.send_typing("chat-1", "ai-a")
    assert ws.send_json.await_count == 1


async def test_disconnect_and_error(manager):
    ws = AsyncMock()
    await manager.connect(ws, "chat-1")
    await manager.send_error(ws, "chat-1", "message content is empty")
    ws.send_json.assert_awaited_once_with(
        {"type": "error", "chat_id": "chat-1", "detail": "message content is empty"}
    )
    manager.disconnect(ws, "chat-1")
    manager.disconnect(ws, "chat-1")
    assert manager.connections == {}
