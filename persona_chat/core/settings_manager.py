"""设置管理：持久化模型接口配置（地址、Key、模型、已发现的模型列表），并承担设置页的
「获取模型列表」流程。

配置对象不可变，每次保存整体替换；编排器在派发请求时取 snapshot()，
因此保存设置只影响之后派发的请求。模型发现的失败只反馈给设置流程，不进入任何聊天。
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING

import aiosqlite
from pydantic import BaseModel, Field

from persona_chat.endpoint.errors import EndpointClientError
from persona_chat.models.protocol import EndpointConfig

if TYPE_CHECKING:
    from persona_chat.endpoint.client import ModelEndpointClient

logger = logging.getLogger(__name__)

FETCH_SUCCESS_MESSAGE = "获取模型列表成功"

_SETTINGS_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class FetchModelsResult(BaseModel):
    """一次「获取模型列表」的结果，供设置页展示。"""

    ok: bool = False
    models: list[str] = Field(default_factory=list)
    active_base_url: str = ""
    url_corrected: bool = False
    selected_model: str = ""
    status_message: str = ""


class SettingsManager:
    """持有当前 EndpointConfig 快照，负责读写 settings 表与模型发现流程。"""

    def __init__(self, db_path: str = "data/persona_chat.db", client: ModelEndpointClient | None = None):
        """指定SQLite数据库文件路径与用于模型发现的客户端"""
        self.db_path = db_path
        self.client = client
        self._db: aiosqlite.Connection | None = None
        self._config = EndpointConfig()
        self.last_fetch_status = ""

    async def initialize(self) -> None:
        """连接数据库、建表并加载已保存的设置"""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute(_SETTINGS_SCHEMA)
        await self._db.commit()
        await self.load()

    async def close(self) -> None:
        """关闭数据库连接"""
        if self._db:
            await self._db.close()
            self._db = None

    def snapshot(self) -> EndpointConfig:
        """当前配置的不可变快照"""
        return self._config

    async def load(self) -> EndpointConfig:
        """从 settings 表读取配置；缺失的键取默认值"""
        cursor = await self._db.execute("SELECT key, value FROM settings")
        values = {row["key"]: json.loads(row["value"]) for row in await cursor.fetchall()}
        self._config = EndpointConfig(
            base_url=values.get("base_url", ""),
            api_key=values.get("api_key", ""),
            model_name=values.get("model_name", ""),
            available_models=tuple(values.get("available_models", [])),
        )
        logger.info(
            "Settings loaded: base_url=%s model=%s api_key=%s models=%d",
            self._config.base_url, self._config.model_name,
            "set" if self._config.api_key else "unset", len(self._config.available_models),
        )
        return self._config

    async def save(self, api_key: str, base_url: str, model_name: str) -> EndpointConfig:
        """保存设置（显式保存操作）；已发现的模型列表保持不变"""
        config = self._config.model_copy(update={
            "api_key": api_key.strip(),
            "base_url": base_url.strip(),
            "model_name": model_name.strip(),
        })
        await self._write({
            "api_key": config.api_key,
            "base_url": config.base_url,
            "model_name": config.model_name,
        })
        self._config = config
        logger.info("Settings saved: base_url=%s model=%s", config.base_url, config.model_name)
        return config

    async def update_models(self, models: list[str]) -> EndpointConfig:
        """保存模型列表；不代表当前 model_name 一定有效"""
        config = self._config.model_copy(update={"available_models": tuple(models)})
        await self._write({"available_models": list(config.available_models)})
        self._config = config
        return config

    async def fetch_models(self, base_url: str, api_key: str, current_model: str | None = None) -> FetchModelsResult:
        """设置页的「获取模型列表」：调用模型发现，保存列表，并给出修正后的地址与建议模型

        修正后的地址与建议模型只返回给调用方，由其决定是否通过 save() 保存。
        """
        base_url = base_url.strip()
        api_key = api_key.strip()
        current_model = (current_model if current_model is not None else self._config.model_name).strip()

        try:
            discovery = await self.client.discover_models(base_url, api_key)
        except EndpointClientError as e:
            self.last_fetch_status = e.user_message
            logger.warning("[CALL] fetch_models failed: kind=%s detail=%s", e.kind, e)
            return FetchModelsResult(ok=False, status_message=self.last_fetch_status)

        await self.update_models(discovery.models)
        selected = current_model
        if discovery.models and current_model not in discovery.models:
            selected = discovery.models[0]

        self.last_fetch_status = FETCH_SUCCESS_MESSAGE
        result = FetchModelsResult(
            ok=True,
            models=discovery.models,
            active_base_url=discovery.active_base_url,
            url_corrected=discovery.active_base_url != base_url,
            selected_model=selected,
            status_message=FETCH_SUCCESS_MESSAGE,
        )
        logger.info(
            "[CALL] fetch_models ok: models=%d active_base_url=%s corrected=%s",
            len(result.models), result.active_base_url, result.url_corrected,
        )
        return result

    async def reset(self) -> None:
        """清空全部设置（重置数据操作使用，不可恢复）"""
        await self._db.execute("DELETE FROM settings")
        await self._db.commit()
        self._config = EndpointConfig()
        self.last_fetch_status = ""
        logger.warning("All settings cleared")

    async def _write(self, values: dict) -> None:
        now = datetime.now().isoformat()
        await self._db.executemany(
            "INSERT OR REPLACE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
            [(key, json.dumps(value, ensure_ascii=False), now) for key, value in values.items()],
        )
        await self._db.commit()
