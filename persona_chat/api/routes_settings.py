"""设置相关路由：读取/保存接口配置、获取模型列表、更新模型列表与重置数据。

读取时 API Key 只返回掩码；模型发现失败只在这里反馈，不写入任何聊天。
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SaveSettingsRequest(BaseModel):
    api_key: str = ""
    base_url: str = ""
    model_name: str = ""


class FetchModelsRequest(BaseModel):
    """字段为空时使用已保存的值。"""
    base_url: str = ""
    api_key: str = ""


class UpdateModelsRequest(BaseModel):
    models: list[str] = Field(default_factory=list)


class ResetRequest(BaseModel):
    confirm: bool = False


@router.get("")
async def get_settings():
    """当前配置（Key 掩码）与最近一次获取模型列表的状态。"""
    from persona_chat.main import app_state
    settings = app_state.settings
    return {"settings": settings.snapshot().masked(), "last_fetch_status": settings.last_fetch_status}


@router.put("")
async def save_settings(req: SaveSettingsRequest):
    """保存配置；只影响之后派发的请求。"""
    from persona_chat.main import app_state
    config = await app_state.settings.save(req.api_key, req.base_url, req.model_name)
    return {"settings": config.masked()}


@router.post("/models/fetch")
async def fetch_models(req: FetchModelsRequest):
    """获取模型列表：自动修正 base URL，并给出建议模型。"""
    from persona_chat.main import app_state
    settings = app_state.settings
    current = settings.snapshot()
    base_url = req.base_url or current.base_url
    api_key = req.api_key or current.api_key
    if not base_url or not api_key:
        raise HTTPException(status_code=400, detail="base_url and api_key are required")
    result = await settings.fetch_models(base_url, api_key)
    return result.model_dump(mode="json")


@router.put("/models")
async def update_models(req: UpdateModelsRequest):
    """手动更新模型列表。"""
    from persona_chat.main import app_state
    config = await app_state.settings.update_models(req.models)
    return {"available_models": list(config.available_models)}


@router.post("/reset")
async def reset_data(req: ResetRequest):
    """重置全部数据（会话、消息、设置）；必须显式确认，不可恢复。"""
    from persona_chat.main import app_state
    if not req.confirm:
        raise HTTPException(status_code=400, detail="Reset must be confirmed")
    await app_state.orchestrator.reset_data(confirm=True)
    return {"ok": True}
