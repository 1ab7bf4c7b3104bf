"""聊天相关路由：会话增删查、发送消息、自动对话开关、随机发言与编排状态。

发送消息时先落库再返回，AI 回复由编排器在后台生成并通过 WebSocket 推送。
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from persona_chat.core.session_store import InvalidSessionError, SessionNotFoundError

router = APIRouter(prefix="/api/chats", tags=["chats"])
logger = logging.getLogger(__name__)


# ── 请求模型 ──

class CreateChatRequest(BaseModel):
    participant_ids: list[str] = Field(default_factory=list)
    name: str = ""
    is_group: bool = False


class SendMessageRequest(BaseModel):
    content: str


class AutoChatRequest(BaseModel):
    """active 为空时切换当前状态。"""
    active: bool | None = None


# ── 路由 ──

@router.get("")
async def list_chats():
    """获取会话列表，按最后消息时间倒序。"""
    from persona_chat.main import app_state
    chats = await app_state.session_store.list_sessions()
    return {"chats": [c.model_dump(mode="json") for c in chats]}


@router.post("")
async def create_chat(req: CreateChatRequest):
    """新建一对一或群聊。"""
    from persona_chat.main import app_state
    try:
        chat = await app_state.orchestrator.create_chat(req.participant_ids, name=req.name, is_group=req.is_group)
    except InvalidSessionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"chat": chat.model_dump(mode="json")}


@router.get("/{chat_id}")
async def get_chat(chat_id: str):
    """获取会话详情（含消息）与当前编排状态。"""
    from persona_chat.main import app_state
    try:
        chat = await app_state.session_store.get_session(chat_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat not found")
    state = app_state.orchestrator.run_state(chat_id)
    return {"chat": chat.model_dump(mode="json"), "state": state.model_dump(mode="json")}


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str):
    """删除会话；会停止该会话的自动对话并丢弃进行中的结果。"""
    from persona_chat.main import app_state
    try:
        await app_state.orchestrator.delete_chat(chat_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"ok": True}


@router.get("/{chat_id}/messages")
async def get_messages(chat_id: str, limit: int | None = None):
    """获取会话消息（按插入顺序）；limit 只取最近 N 条。"""
    from persona_chat.main import app_state
    if not await app_state.session_store.has_session(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    messages = await app_state.session_store.get_messages(chat_id, limit=limit)
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/{chat_id}/messages")
async def send_message(chat_id: str, req: SendMessageRequest):
    """人类发送消息：落库后立即返回，回复在后台生成。"""
    from persona_chat.main import app_state
    try:
        message = await app_state.orchestrator.send_message(chat_id, req.content)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": message.model_dump(mode="json"), "status": "processing"}


@router.post("/{chat_id}/auto-chat")
async def toggle_auto_chat(chat_id: str, req: AutoChatRequest | None = None):
    """开启/关闭/切换自动对话（仅群聊）。"""
    from persona_chat.main import app_state
    orchestrator = app_state.orchestrator
    try:
        if req is None or req.active is None:
            active = await orchestrator.toggle_auto_chat(chat_id)
        else:
            active = await orchestrator.set_auto_chat(chat_id, req.active)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat not found")
    except InvalidSessionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"active": active}


@router.post("/{chat_id}/trigger-random")
async def trigger_random(chat_id: str):
    """随机让一位 AI 发言。"""
    from persona_chat.main import app_state
    try:
        persona_id = await app_state.orchestrator.trigger_random(chat_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Chat not found")
    if persona_id is None:
        raise HTTPException(status_code=409, detail="No AI participant available")
    return {"persona_id": persona_id}


@router.get("/{chat_id}/state")
async def get_state(chat_id: str):
    """当前编排状态：打字中的人设、自动对话开关、最近一次错误。"""
    from persona_chat.main import app_state
    if not await app_state.session_store.has_session(chat_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    state = app_state.orchestrator.run_state(chat_id)
    return {"state": state.model_dump(mode="json"), "typing_chat_id": state.typing_chat_id}


@router.get("/{chat_id}/logs")
async def get_call_logs(chat_id: str):
    """获取指定聊天的生成调用日志（最新在前）。"""
    from persona_chat.main import app_state
    logs = app_state.call_logger.get_chat_logs(chat_id)
    return {"logs": [log.model_dump(mode="json") for log in logs]}
