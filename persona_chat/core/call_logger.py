"""调用日志：按聊天记录每次生成调用的摘要信息。

每个聊天的日志存在 data/logs/chat_{chat_id}.jsonl 文件中，
每行一条 JSON 记录（JSONL 格式），便于追加和逐行读取。不记录 API Key 与消息正文。
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class CallLog(BaseModel):
    """单次生成调用的记录。"""
    log_id: str = ""
    chat_id: str = ""
    persona_id: str = ""
    model_name: str = ""
    trigger: str = "reply"        # reply / random / auto_chat
    history_len: int = 0
    duration_ms: int = 0
    output_len: int = 0
    outcome: str = "ok"           # ok / error / discarded
    error_kind: str = ""
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class CallLogger:
    """按聊天写入/读取调用日志（JSONL 格式）。"""

    def __init__(self, log_dir: str = "data/logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _chat_file(self, chat_id: str) -> Path:
        return self.log_dir / f"chat_{chat_id}.jsonl"

    def save(self, log: CallLog) -> None:
        """追加一条日志到该聊天文件。"""
        path = self._chat_file(log.chat_id)
        with open(path, "a", encoding="utf-8") as f:
            f.write(log.model_dump_json() + "\n")
        logger.debug(
            "CallLogger: saved log for persona=%s chat=%s outcome=%s duration=%dms",
            log.persona_id, log.chat_id, log.outcome, log.duration_ms,
        )

    def get_chat_logs(self, chat_id: str) -> list[CallLog]:
        """读取该聊天全部日志，按时间倒序返回；损坏的行跳过并告警。"""
        path = self._chat_file(chat_id)
        if not path.exists():
            return []
        logs: list[CallLog] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    logs.append(CallLog.model_validate_json(line))
                except ValidationError:
                    logger.warning("CallLogger: skipping malformed line in %s", path)
        return list(reversed(logs))  # 最新的在最前

    def delete_chat_logs(self, chat_id: str) -> None:
        path = self._chat_file(chat_id)
        if path.exists():
            path.unlink()

    def clear(self) -> None:
        for path in self.log_dir.glob("chat_*.jsonl"):
            path.unlink()
