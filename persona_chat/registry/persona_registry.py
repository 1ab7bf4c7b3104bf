"""人设注册表：从 personas 目录的 YAML 加载人设，支持动态注册与重载。

编排、上下文构建与会话存储通过 registry 查询人设；查不到的 id 一律返回 None，
由调用方按「未知成员」处理，绝不抛异常打断编排。
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from persona_chat.models.persona import HUMAN_ID, Persona

logger = logging.getLogger(__name__)

# 未定义人类人设时使用的内置操作者
DEFAULT_HUMAN = Persona(id=HUMAN_ID, name="我", description="用户", is_user=True)


class PersonaRegistry:
    """内存中的人设表：persona_id -> Persona，支持从目录加载与重载。

    进程内有且只有一个 is_user=True 的人设；目录中没有定义时自动补上内置人类。
    """

    def __init__(self, config_dir: str = "personas/"):
        """指定配置目录并立即从该目录加载所有 *.yaml。"""
        self.personas: dict[str, Persona] = {}
        self.config_dir = config_dir
        self._load_from_dir(config_dir)

    def _load_from_dir(self, config_dir: str) -> None:
        """遍历目录下所有 .yaml 文件（按文件名排序），解析为 Persona 并写入 self.personas。"""
        config_path = Path(config_dir)
        if not config_path.exists():
            logger.warning("Persona config directory not found: %s", config_dir)
        else:
            for file in sorted(config_path.glob("*.yaml")):
                try:
                    persona = self._load_persona(file)
                except (OSError, KeyError, TypeError, ValueError, yaml.YAMLError) as e:
                    logger.error("Failed to load persona from %s: %s", file, e)
                    continue
                self._add(persona)
                logger.info("Loaded persona: %s (%s) human=%s", persona.id, persona.name, persona.is_user)
        self._ensure_human()

    def _load_persona(self, file: Path) -> Persona:
        """读取单个 YAML 文件并构造 Persona；id 字段必填。"""
        with open(file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return Persona(
            id=data["id"],
            name=data.get("name", ""),
            avatar=data.get("avatar", ""),
            description=data.get("description", ""),
            system_instruction=data.get("system_instruction", ""),
            is_user=bool(data.get("is_user", False)),
        )

    def _add(self, persona: Persona) -> None:
        """写入人设；第二个人类人设会被降级为普通 AI 并告警。"""
        human = self.human
        if persona.is_user and human is not None and human.id != persona.id:
            logger.warning(
                "Persona %s declares is_user but %s is already the human persona; ignoring flag",
                persona.id, human.id,
            )
            persona = persona.model_copy(update={"is_user": False})
        self.personas[persona.id] = persona

    def _ensure_human(self) -> None:
        if self.human is None:
            self.personas[DEFAULT_HUMAN.id] = DEFAULT_HUMAN
            logger.info("No human persona configured, using built-in %s", DEFAULT_HUMAN.id)

    # ── 查询 ──

    def get(self, persona_id: str) -> Persona | None:
        """按 id 获取人设；不存在返回 None。"""
        return self.personas.get(persona_id)

    def all(self) -> list[Persona]:
        """返回所有人设（人类在前，其余按加载顺序）。"""
        return sorted(self.personas.values(), key=lambda p: not p.is_user)

    def is_human(self, persona_id: str) -> bool:
        persona = self.personas.get(persona_id)
        return bool(persona and persona.is_user)

    @property
    def human(self) -> Persona | None:
        for persona in self.personas.values():
            if persona.is_user:
                return persona
        return None

    def ai_personas(self) -> list[Persona]:
        return [p for p in self.personas.values() if not p.is_user]

    def display_name(self, persona_id: str, placeholder: str = "未知成员") -> str:
        """发送者名称；未知 id 用占位名，消息本身照常保留。"""
        persona = self.personas.get(persona_id)
        return persona.display_name if persona else placeholder

    # ── 维护 ──

    def register_persona(self, persona: Persona) -> None:
        """将一个人设加入注册表；同 id 会覆盖。"""
        self._add(persona)
        logger.info("Registered persona: %s (%s)", persona.id, persona.name)

    def unregister_persona(self, persona_id: str) -> None:
        """从注册表移除指定人设；人类人设不可移除。"""
        if self.is_human(persona_id):
            logger.warning("Refusing to unregister the human persona: %s", persona_id)
            return
        if persona_id in self.personas:
            del self.personas[persona_id]
            logger.info("Unregistered persona: %s", persona_id)

    def reload(self) -> None:
        """清空当前表并从 config_dir 重新加载所有 YAML。"""
        self.personas.clear()
        self._load_from_dir(self.config_dir)
