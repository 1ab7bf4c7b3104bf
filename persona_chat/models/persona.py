"""人设（Persona）模型：人类操作者与各个 AI 角色的身份定义。

从 personas 目录的 YAML 加载，运行期只读；聊天只按 id 弱引用人设，不持有对象。
"""

from __future__ import annotations

from pydantic import BaseModel

# 本地操作者（人类）的固定 id，与原版数据保持一致
HUMAN_ID = "user-me"


class Persona(BaseModel):
    """一个对话身份：名称、头像、简介，以及 AI 角色用来塑造语气的 system 指令。

    is_user=True 的人设代表本地操作者，永远不会收到生成的回复。
    """

    id: str
    name: str = ""
    avatar: str = ""
    description: str = ""

    # 作为 system 角色发送给模型；人类人设为空
    system_instruction: str = ""

    is_user: bool = False

    @property
    def display_name(self) -> str:
        return self.name or self.id
