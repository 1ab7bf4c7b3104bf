"""WebSocket 推送：按聊天维护连接，并负责聊天事件的构造与投递。

事件都带 chat_id，只发给该聊天的连接：
- message       新消息（人类、AI 或系统消息）
- typing        persona_id 为正在生成的人设，None 表示打字结束
- auto_chat     自动对话开关变化
- chat_deleted  聊天已删除，之后不会再有该聊天的事件
- error         只回给发起请求的那个连接
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

from persona_chat.models.session import Message

logger = logging.getLogger(__name__)


class WebSocketManager:
    """chat_id -> 连接集合。编排器只调用 send_* 方法，事件格式集中在这里。"""

    def __init__(self):
        self.connections: dict[str, set[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, chat_id: str) -> None:
        await websocket.accept()
        self.connections.setdefault(chat_id, set()).add(websocket)
        logger.info("WebSocket joined chat %s (%d open)", chat_id, len(self.connections[chat_id]))

    def disconnect(self, websocket: WebSocket, chat_id: str) -> None:
        sockets = self.connections.get(chat_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self.connections[chat_id]
        logger.info("WebSocket left chat %s", chat_id)

    # ── 聊天事件 ──

    async def send_message(self, chat_id: str, message: Message) -> None:
        await self._publish(chat_id, "message", message=message.model_dump(mode="json"))

    async def send_typing(self, chat_id: str, persona_id: str | None) -> None:
        await self._publish(chat_id, "typing", persona_id=persona_id)

    async def send_auto_chat(self, chat_id: str, active: bool) -> None:
        await self._publish(chat_id, "auto_chat", active=active)

    async def send_chat_deleted(self, chat_id: str) -> None:
        """通知后不再保留该聊天的连接表；客户端自行关闭连接。"""
        await self._publish(chat_id, "chat_deleted")
        self.connections.pop(chat_id, None)

    async def send_error(self, websocket: WebSocket, chat_id: str, detail: str) -> None:
        await websocket.send_json({"type": "error", "chat_id": chat_id, "detail": detail})

    async def _publish(self, chat_id: str, event_type: str, **payload: Any) -> None:
        """投递给该聊天的全部连接；发送失败的连接移出连接表。"""
        sockets = self.connections.get(chat_id)
        if not sockets:
            return
        event = {"type": event_type, "chat_id": chat_id, **payload}
        stale = []
        for ws in list(sockets):
            try:
                await ws.send_json(event)
            except Exception as e:
                logger.info("WebSocket send failed in chat %s, dropping connection: %s", chat_id, e)
                stale.append(ws)
        for ws in stale:
            self.disconnect(ws, chat_id)
