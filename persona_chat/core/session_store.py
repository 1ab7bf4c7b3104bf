"""会话存储：管理聊天会话、参与者与消息的增删查和持久化。

纯数据层，不包含编排逻辑；表结构由 DB_SCHEMA 定义，使用 aiosqlite 异步读写。
消息按自增 seq 排序（插入顺序即因果顺序），同一聊天的追加按 chat_id 串行化。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING

import aiosqlite

from persona_chat.models.session import ChatSession, ChatSummary, Message

if TYPE_CHECKING:
    from persona_chat.registry.persona_registry import PersonaRegistry

logger = logging.getLogger(__name__)

# 数据库表结构：会话、参与者、消息；消息以 seq 保证插入顺序
DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS chat_sessions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    is_group INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_message_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_participants (
    session_id TEXT NOT NULL,
    persona_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (session_id, persona_id),
    FOREIGN KEY (session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS chat_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    content TEXT DEFAULT '',
    timestamp TEXT NOT NULL,
    is_system INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (session_id) REFERENCES chat_sessions(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_chat_participants_session ON chat_participants(session_id);
"""


class SessionNotFoundError(KeyError):
    """会话不存在（或已被删除）。"""

    def __init__(self, chat_id: str):
        super().__init__(chat_id)
        self.chat_id = chat_id

    def __str__(self) -> str:
        return f"Chat session not found: {self.chat_id}"


class InvalidSessionError(ValueError):
    """参与者列表不满足「含人类 + 至少一个 AI」的约束。"""


class SessionStore:
    """会话存储：提供会话、参与者、消息的增删查与持久化，不包含业务编排。"""

    def __init__(self, db_path: str = "data/persona_chat.db", registry: PersonaRegistry | None = None):
        """指定 SQLite 数据库文件路径与人设注册表（用于校验参与者），连接在 initialize() 中建立。"""
        self.db_path = db_path
        self.registry = registry
        self._db: aiosqlite.Connection | None = None
        self._append_locks: dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        """连接数据库、打开外键、执行建表脚本并提交。应用启动时调用一次。"""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(DB_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """关闭数据库连接。应用关闭时调用。"""
        if self._db:
            await self._db.close()
            self._db = None

    # ── 会话 CRUD ──

    async def create_session(
        self,
        participant_ids: list[str],
        name: str = "",
        is_group: bool = False,
    ) -> ChatSession:
        """创建新会话：校验参与者、补全名称与群聊标记、写入数据库并返回 ChatSession。"""
        participant_ids = self._normalize_participants(participant_ids)
        ai_ids = [pid for pid in participant_ids if not self._is_human(pid)]
        is_group = is_group or len(ai_ids) > 1
        if not name:
            name = self._default_name(ai_ids)

        chat_id = str(uuid.uuid4())
        now = datetime.now()
        await self._db.execute(
            "INSERT INTO chat_sessions (id, name, is_group, created_at, last_message_at) VALUES (?, ?, ?, ?, ?)",
            (chat_id, name, int(is_group), now.isoformat(), now.isoformat()),
        )
        await self._db.executemany(
            "INSERT INTO chat_participants (session_id, persona_id, position) VALUES (?, ?, ?)",
            [(chat_id, pid, pos) for pos, pid in enumerate(participant_ids)],
        )
        await self._db.commit()
        logger.info(
            "Created chat %s (%s) group=%s participants=%s", chat_id, name, is_group, participant_ids,
        )
        return ChatSession(
            id=chat_id,
            name=name,
            is_group=is_group,
            participant_ids=participant_ids,
            created_at=now,
            last_message_at=now,
        )

    async def get_session(self, chat_id: str, message_limit: int | None = None) -> ChatSession:
        """按 chat_id 查询会话及参与者、消息；不存在时抛 SessionNotFoundError。

        message_limit 只取最近 N 条消息（仍按插入顺序返回）。
        """
        row = await self._fetch_session_row(chat_id)
        participants = await self._list_participants(chat_id)
        messages = await self.get_messages(chat_id, limit=message_limit)
        return ChatSession(
            id=row["id"],
            name=row["name"],
            is_group=bool(row["is_group"]),
            participant_ids=participants,
            messages=messages,
            created_at=datetime.fromisoformat(row["created_at"]),
            last_message_at=datetime.fromisoformat(row["last_message_at"]),
        )

    async def has_session(self, chat_id: str) -> bool:
        cursor = await self._db.execute("SELECT 1 FROM chat_sessions WHERE id = ?", (chat_id,))
        return await cursor.fetchone() is not None

    async def list_sessions(self) -> list[ChatSummary]:
        """列出所有会话，按最后消息时间倒序；每项附带最后一条消息用于预览。"""
        cursor = await self._db.execute(
            "SELECT * FROM chat_sessions ORDER BY last_message_at DESC, created_at DESC"
        )
        rows = await cursor.fetchall()
        summaries = []
        for row in rows:
            last = await self.get_messages(row["id"], limit=1)
            summaries.append(ChatSummary(
                id=row["id"],
                name=row["name"],
                is_group=bool(row["is_group"]),
                participant_ids=await self._list_participants(row["id"]),
                last_message=last[0] if last else None,
                last_message_at=datetime.fromisoformat(row["last_message_at"]),
            ))
        return summaries

    async def delete_session(self, chat_id: str) -> None:
        """删除指定会话及其参与者、消息记录。"""
        await self._db.execute("DELETE FROM chat_messages WHERE session_id = ?", (chat_id,))
        await self._db.execute("DELETE FROM chat_participants WHERE session_id = ?", (chat_id,))
        await self._db.execute("DELETE FROM chat_sessions WHERE id = ?", (chat_id,))
        await self._db.commit()
        self._append_locks.pop(chat_id, None)
        logger.info("Deleted chat %s", chat_id)

    async def reset(self) -> None:
        """清空全部会话数据（重置数据操作使用，不可恢复）。"""
        await self._db.execute("DELETE FROM chat_messages")
        await self._db.execute("DELETE FROM chat_participants")
        await self._db.execute("DELETE FROM chat_sessions")
        await self._db.commit()
        self._append_locks.clear()
        logger.warning("All chat sessions cleared")

    # ── 消息存储 ──

    async def append_message(self, chat_id: str, message: Message) -> ChatSession:
        """追加一条消息并重算 last_message_at，返回更新后的会话。

        同一 chat_id 的追加串行执行；时间戳在持锁时落定且不早于上一条消息，
        保证日志顺序与时间顺序一致。
        """
        async with self._lock(chat_id):
            row = await self._fetch_session_row(chat_id)
            last_at = datetime.fromisoformat(row["last_message_at"])
            cursor = await self._db.execute(
                "SELECT COUNT(*) AS n FROM chat_messages WHERE session_id = ?", (chat_id,)
            )
            count = (await cursor.fetchone())["n"]
            stamp = datetime.now()
            if count and stamp < last_at:
                stamp = last_at
            stored = message.model_copy(update={"timestamp": stamp})

            await self._db.execute(
                "INSERT INTO chat_messages (id, session_id, sender_id, content, timestamp, is_system) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    stored.id, chat_id, stored.sender_id, stored.content,
                    stored.timestamp.isoformat(), int(stored.is_system),
                ),
            )
            await self._db.execute(
                "UPDATE chat_sessions SET last_message_at = ? WHERE id = ?",
                (stored.timestamp.isoformat(), chat_id),
            )
            await self._db.commit()
            logger.debug(
                "Appended message %s to chat %s sender=%s system=%s",
                stored.id, chat_id, stored.sender_id, stored.is_system,
            )
        return await self.get_session(chat_id)

    async def get_messages(self, chat_id: str, limit: int | None = None) -> list[Message]:
        """获取会话消息，按插入顺序（从旧到新）；limit 只取最近 N 条。"""
        if limit is not None:
            cursor = await self._db.execute(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?",
                (chat_id, limit),
            )
            rows = list(reversed(await cursor.fetchall()))
        else:
            cursor = await self._db.execute(
                "SELECT * FROM chat_messages WHERE session_id = ? ORDER BY seq", (chat_id,)
            )
            rows = await cursor.fetchall()
        return [
            Message(
                id=row["id"],
                sender_id=row["sender_id"],
                content=row["content"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                is_system=bool(row["is_system"]),
            )
            for row in rows
        ]

    # ── 私有方法 ──

    def _lock(self, chat_id: str) -> asyncio.Lock:
        if chat_id not in self._append_locks:
            self._append_locks[chat_id] = asyncio.Lock()
        return self._append_locks[chat_id]

    async def _fetch_session_row(self, chat_id: str) -> aiosqlite.Row:
        cursor = await self._db.execute("SELECT * FROM chat_sessions WHERE id = ?", (chat_id,))
        row = await cursor.fetchone()
        if not row:
            raise SessionNotFoundError(chat_id)
        return row

    async def _list_participants(self, chat_id: str) -> list[str]:
        cursor = await self._db.execute(
            "SELECT persona_id FROM chat_participants WHERE session_id = ? ORDER BY position",
            (chat_id,),
        )
        return [row["persona_id"] for row in await cursor.fetchall()]

    def _is_human(self, persona_id: str) -> bool:
        return bool(self.registry and self.registry.is_human(persona_id))

    def _normalize_participants(self, participant_ids: list[str]) -> list[str]:
        """去重并保证人类在首位；缺少人类或 AI 时抛 InvalidSessionError。"""
        seen: list[str] = []
        for pid in participant_ids:
            if pid and pid not in seen:
                seen.append(pid)

        if self.registry is not None:
            human = self.registry.human
            if human is not None and human.id not in seen:
                seen.insert(0, human.id)
            humans = [pid for pid in seen if self._is_human(pid)]
            if not humans:
                raise InvalidSessionError("participants must include the human persona")
            seen = humans + [pid for pid in seen if pid not in humans]

        if not any(not self._is_human(pid) for pid in seen):
            raise InvalidSessionError("participants must include at least one AI persona")
        return seen

    def _default_name(self, ai_ids: list[str]) -> str:
        if self.registry is None:
            return "、".join(ai_ids)
        return "、".join(self.registry.display_name(pid) for pid in ai_ids)
