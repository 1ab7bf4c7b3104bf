"""Persona Chat：FastAPI 入口。

本模块负责：
- 应用启动与生命周期（lifespan）
- 各核心组件的初始化与注入
- 注册路由、中间件与 WebSocket 端点
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from persona_chat.api.routes_chat import router as chat_router
from persona_chat.api.routes_persona import router as persona_router
from persona_chat.api.routes_settings import router as settings_router
from persona_chat.api.websocket import WebSocketManager
from persona_chat.core.call_logger import CallLogger
from persona_chat.core.context_builder import ContextBuilder
from persona_chat.core.orchestrator import ConversationOrchestrator
from persona_chat.core.session_store import InvalidSessionError, SessionNotFoundError, SessionStore
from persona_chat.core.settings_manager import SettingsManager
from persona_chat.endpoint.client import ModelEndpointClient
from persona_chat.models.protocol import OrchestratorConfig
from persona_chat.registry.persona_registry import PersonaRegistry

# 配置根日志格式，便于排查问题
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

DATA_DIR = "data"
DB_PATH = f"{DATA_DIR}/persona_chat.db"


@dataclass
class AppState:
    """全局应用状态，持有所有核心组件的引用。

    供各路由模块通过 main.app_state 访问，避免循环依赖。
    """

    session_store: SessionStore
    registry: PersonaRegistry
    settings: SettingsManager
    client: ModelEndpointClient
    ws_manager: WebSocketManager
    context_builder: ContextBuilder
    call_logger: CallLogger
    orchestrator: ConversationOrchestrator


# 全局状态（供路由模块导入使用）
app_state: AppState = None  # type: ignore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时初始化所有组件，关闭时释放资源。"""
    global app_state

    logger.info("Starting Persona Chat...")
    Path(DATA_DIR).mkdir(parents=True, exist_ok=True)

    # 人设注册表：会话存储用它校验参与者
    registry = PersonaRegistry(config_dir="personas/")

    # 数据层：会话与消息、设置的持久化
    session_store = SessionStore(db_path=DB_PATH, registry=registry)
    await session_store.initialize()
    client = ModelEndpointClient()
    settings = SettingsManager(db_path=DB_PATH, client=client)
    await settings.initialize()

    # 编排层
    config = OrchestratorConfig()
    ws_manager = WebSocketManager()
    call_logger = CallLogger(log_dir=f"{DATA_DIR}/logs")
    context_builder = ContextBuilder(
        session_store=session_store,
        registry=registry,
        history_limit=config.history_limit,
    )
    orchestrator = ConversationOrchestrator(
        session_store=session_store,
        context_builder=context_builder,
        client=client,
        settings=settings,
        registry=registry,
        ws_manager=ws_manager,
        config=config,
        call_logger=call_logger,
    )

    app_state = AppState(
        session_store=session_store,
        registry=registry,
        settings=settings,
        client=client,
        ws_manager=ws_manager,
        context_builder=context_builder,
        call_logger=call_logger,
        orchestrator=orchestrator,
    )

    logger.info("Persona Chat started. %d personas loaded.", len(registry.personas))

    yield

    # 关闭阶段：先停编排任务，再关闭数据库连接
    logger.info("Shutting down Persona Chat...")
    await orchestrator.shutdown()
    await settings.close()
    await session_store.close()


# 创建 FastAPI 应用并绑定生命周期
app = FastAPI(
    title="Persona Chat",
    description="Persona-based group chat with an OpenAI-compatible model endpoint",
    version="0.1.0",
    lifespan=lifespan,
)

# 允许跨域，便于前端调用
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.include_router(persona_router)
app.include_router(settings_router)


@app.get("/")
async def root():
    """根路径：返回应用名称、版本与运行状态。"""
    return {"name": "Persona Chat", "version": "0.1.0", "status": "running"}


@app.get("/api/health")
async def health():
    """健康检查：返回已加载的人设数量与接口是否已配置。"""
    return {
        "status": "ok",
        "personas_loaded": len(app_state.registry.personas) if app_state else 0,
        "endpoint_configured": app_state.settings.snapshot().is_configured if app_state else False,
    }


@app.websocket("/ws/{chat_id}")
async def websocket_endpoint(websocket: WebSocket, chat_id: str):
    """WebSocket 入口：接收 send_message / toggle_auto_chat / trigger_random，交给编排器处理。"""
    await app_state.ws_manager.connect(websocket, chat_id)
    orchestrator = app_state.orchestrator
    try:
        while True:
            data = await websocket.receive_json()
            event = data.get("type")
            try:
                if event == "send_message":
                    await orchestrator.send_message(chat_id, data.get("content", ""))
                elif event == "toggle_auto_chat":
                    await orchestrator.toggle_auto_chat(chat_id)
                elif event == "trigger_random":
                    await orchestrator.trigger_random(chat_id)
                else:
                    logger.warning("Unknown websocket event %r for chat %s", event, chat_id)
            except (SessionNotFoundError, InvalidSessionError, ValueError) as e:
                await app_state.ws_manager.send_error(websocket, chat_id, str(e))
    except WebSocketDisconnect:
        app_state.ws_manager.disconnect(websocket, chat_id)
