"""人设相关路由：查询人设列表与重载 YAML。"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

router = APIRouter(prefix="/api/personas", tags=["personas"])


@router.get("")
async def list_personas():
    """获取所有人设（人类在前）。"""
    from persona_chat.main import app_state
    personas = app_state.registry.all()
    return {"personas": [p.model_dump(mode="json") for p in personas]}


@router.post("/reload")
async def reload_personas():
    """从磁盘重新加载 personas 目录。"""
    from persona_chat.main import app_state
    app_state.registry.reload()
    return {"ok": True, "count": len(app_state.registry.personas)}


@router.get("/{persona_id}")
async def get_persona(persona_id: str):
    """获取人设详情。"""
    from persona_chat.main import app_state
    persona = app_state.registry.get(persona_id)
    if persona is None:
        raise HTTPException(status_code=404, detail="Persona not found")
    return {"persona": persona.model_dump(mode="json")}
