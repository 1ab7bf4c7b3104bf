"""上下文构建器：为每次生成组装「说话人 + 历史快照 + 参与者表」，并把多人对话翻译成
chat/completions 所需的 user/assistant 两方消息序列。

角色翻译约定（从目标人设的视角）：
  - 人类人设的消息            → user，原文
  - 目标人设自己之前的发言    → assistant，原文
  - 其他 AI 人设的发言        → assistant，正文前加「[名字]: 」标签
  - 发送者未知的消息          → assistant，标签为「[未知成员]: 」
  - 系统消息（失败提示等）    → 不发送
若翻译结果不以 user 结尾（自动对话、随机发言），末尾追加一条 user 提示，请目标人设接着发言。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping, Sequence

from persona_chat.models.persona import HUMAN_ID, Persona
from persona_chat.models.protocol import ChatCompletionMessage
from persona_chat.models.session import Message

if TYPE_CHECKING:
    from persona_chat.core.session_store import SessionStore
    from persona_chat.registry.persona_registry import PersonaRegistry

logger = logging.getLogger(__name__)

UNKNOWN_SENDER_NAME = "未知成员"
CONTINUE_CUE = "（请以「{name}」的身份继续群聊对话）"


def speaker_tag(name: str) -> str:
    return f"[{name}]: "


def build_completion_messages(
    persona: Persona,
    history: Sequence[Message],
    participants: Mapping[str, Persona],
    continue_cue: bool = True,
) -> list[ChatCompletionMessage]:
    """把多人聊天历史翻译为目标人设视角的 system/user/assistant 消息列表。"""
    messages: list[ChatCompletionMessage] = []
    if persona.system_instruction:
        messages.append(ChatCompletionMessage(role="system", content=persona.system_instruction))

    for msg in history:
        if msg.is_system:
            continue
        sender = participants.get(msg.sender_id)
        if (sender is not None and sender.is_user) or (sender is None and msg.sender_id == HUMAN_ID):
            messages.append(ChatCompletionMessage(role="user", content=msg.content))
        elif msg.sender_id == persona.id:
            messages.append(ChatCompletionMessage(role="assistant", content=msg.content))
        else:
            name = sender.display_name if sender else UNKNOWN_SENDER_NAME
            messages.append(ChatCompletionMessage(role="assistant", content=speaker_tag(name) + msg.content))

    if continue_cue and (len(messages) == 0 or messages[-1].role != "user"):
        messages.append(ChatCompletionMessage(role="user", content=CONTINUE_CUE.format(name=persona.display_name)))
    return messages


@dataclass
class GenerationContext:
    """一次生成的输入快照：目标人设、派发时刻的历史、参与者表。"""

    chat_id: str
    persona: Persona
    history: list[Message] = field(default_factory=list)
    participants: dict[str, Persona] = field(default_factory=dict)


class ContextBuilder:
    """为每个被选中的人设组装 GenerationContext，控制「能看到什么」与历史窗口大小。"""

    def __init__(self, session_store: SessionStore, registry: PersonaRegistry, history_limit: int = 50):
        """注入会话存储、人设注册表与历史窗口大小。"""
        self.session_store = session_store
        self.registry = registry
        self.history_limit = history_limit

    async def build(self, chat_id: str, persona_id: str) -> GenerationContext:
        """读取会话最近 history_limit 条消息作为快照，并解析参与者人设。

        参与者中查不到的 id 不会出现在 participants 里，翻译时按未知成员处理。
        """
        persona = self.registry.get(persona_id)
        if persona is None:
            raise KeyError(f"Persona not found: {persona_id}")

        session = await self.session_store.get_session(chat_id, message_limit=self.history_limit)
        participants: dict[str, Persona] = {}
        for pid in session.participant_ids:
            p = self.registry.get(pid)
            if p is not None:
                participants[pid] = p
            else:
                logger.warning("[CALL] context_builder: unknown participant %s in chat %s", pid, chat_id)

        logger.info(
            "[CALL] context_builder.build: chat_id=%s persona_id=%s history=%d participants=%d",
            chat_id, persona_id, len(session.messages), len(participants),
        )
        return GenerationContext(
            chat_id=chat_id,
            persona=persona,
            history=session.messages,
            participants=participants,
        )
