"""会话相关数据模型：聊天会话与其中的消息。

消息按插入顺序排列（因果顺序 = 日志顺序），不会按时间戳重排；
last_message_at 由存储层在每次追加时重新计算。
"""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

# 系统消息（失败提示、自动对话上限等）使用的发送者 id
SYSTEM_SENDER_ID = "system"


class Message(BaseModel):
    """聊天中的单条消息；创建后只追加、不修改。"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender_id: str = ""
    content: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)
    is_system: bool = False

    @classmethod
    def system(cls, content: str) -> Message:
        """构造一条系统消息。"""
        return cls(sender_id=SYSTEM_SENDER_ID, content=content, is_system=True)


class ChatSession(BaseModel):
    """聊天会话：一对一或群聊，含参与者（展示顺序）与有序消息列表。"""

    id: str = ""
    name: str = ""
    is_group: bool = False
    participant_ids: list[str] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    last_message_at: datetime = Field(default_factory=datetime.now)

    def last_spoken(self) -> Message | None:
        """最后一条非系统消息；系统提示不算「发言」。"""
        for msg in reversed(self.messages):
            if not msg.is_system:
                return msg
        return None


class ChatSummary(BaseModel):
    """会话列表项：不带完整消息，只带最后一条用于预览。"""

    id: str
    name: str
    is_group: bool
    participant_ids: list[str]
    last_message: Message | None = None
    last_message_at: datetime
