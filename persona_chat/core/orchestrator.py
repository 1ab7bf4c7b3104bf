"""编排引擎：系统的大脑，决定群聊里下一个由谁发言、何时发言。

职责：
- 人类发消息后选出回复者（一对一为唯一的 AI；群聊按 @ 提及 / 最久未发言 / id 最小选一位）
- 「随机发言」：从 AI 成员中随机选一位，排除上一位发言者
- 自动对话（辩论模式）：每个聊天一个可取消的后台任务，循环「选人 → 打字中 → 生成 → 追加 → 随机间隔」
- 打字状态按聊天保存，在每次生成开始时设置、完成或失败后立即清除（所有触发路径一致）
- 生成失败统一在这里兜底：写入系统消息、清除打字状态，不自动重试

并发约定：
- 同一聊天的生成按派发顺序逐个执行（每个聊天一把先进先出的 turn 锁），
  因此 AI 消息在日志中的顺序就是派发顺序。选人时把排队中最后一位当作「上一位发言者」。
- 另有一把短锁保护「历史快照 → 设置打字」与「存在检查 → 追加消息 → 清除打字」；网络调用在短锁外进行。
- 历史在一次生成真正开始时快照，请求进行中到达的人类消息由下一次生成带上。
- 聊天是否存在以会话存储为准，删除后迟到的结果直接丢弃。
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Coroutine

from persona_chat.core.call_logger import CallLog
from persona_chat.core.session_store import InvalidSessionError, SessionNotFoundError
from persona_chat.endpoint.errors import EndpointClientError, ParseError
from persona_chat.models.persona import HUMAN_ID
from persona_chat.models.protocol import ChatRunState, OrchestratorConfig
from persona_chat.models.session import ChatSession, Message

if TYPE_CHECKING:
    from persona_chat.api.websocket import WebSocketManager
    from persona_chat.core.call_logger import CallLogger
    from persona_chat.core.context_builder import ContextBuilder
    from persona_chat.core.session_store import SessionStore
    from persona_chat.core.settings_manager import SettingsManager
    from persona_chat.endpoint.client import ModelEndpointClient
    from persona_chat.registry.persona_registry import PersonaRegistry

logger = logging.getLogger(__name__)

_RE_MENTION = re.compile(r"(?:^|\s)@(\S+)")


@dataclass
class AutoChatHandle:
    """一个聊天的自动对话任务：stop_event 在每轮派发前检查，置位后不再安排新的一轮。"""

    chat_id: str
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    turns_since_human: int = 0

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()


class ConversationOrchestrator:
    """会话编排器：处理发送消息、随机发言、自动对话开关与删除，驱动各人设生成回复。"""

    def __init__(
        self,
        session_store: SessionStore,
        context_builder: ContextBuilder,
        client: ModelEndpointClient,
        settings: SettingsManager,
        registry: PersonaRegistry,
        ws_manager: WebSocketManager | None = None,
        config: OrchestratorConfig | None = None,
        call_logger: CallLogger | None = None,
        rng: random.Random | None = None,
    ):
        self.session_store = session_store
        self.context_builder = context_builder
        self.client = client
        self.settings = settings
        self.registry = registry
        self.ws_manager = ws_manager
        self.config = config or OrchestratorConfig()
        self.call_logger = call_logger
        self.rng = rng or random.Random()

        self._states: dict[str, ChatRunState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self._queued: dict[str, list[str]] = {}  # chat_id -> 已派发、尚未落地的发言者（按派发顺序）
        self._auto_chats: dict[str, AutoChatHandle] = {}
        self._tasks: dict[str, set[asyncio.Task]] = {}

    # ── 状态查询（供展示层读取） ──

    def run_state(self, chat_id: str) -> ChatRunState:
        """该聊天当前编排状态的副本。"""
        state = self._states.get(chat_id)
        return state.model_copy() if state else ChatRunState(chat_id=chat_id)

    def typing_persona(self, chat_id: str) -> str | None:
        state = self._states.get(chat_id)
        return state.typing_persona_id if state else None

    def is_auto_chat_active(self, chat_id: str) -> bool:
        state = self._states.get(chat_id)
        return bool(state and state.auto_chat_active)

    # ── 用户意图 ──

    async def create_chat(self, participant_ids: list[str], name: str = "", is_group: bool = False) -> ChatSession:
        """新建聊天。"""
        session = await self.session_store.create_session(participant_ids, name=name, is_group=is_group)
        self._states[session.id] = ChatRunState(chat_id=session.id)
        return session

    async def send_message(self, chat_id: str, content: str) -> Message:
        """人类发送消息：立即追加；自动对话进行中时只作为插话，由下一轮带上，否则安排一位 AI 回复。"""
        content = content.strip()
        if not content:
            raise ValueError("message content is empty")

        human_id = self._human_id()
        async with self._lock(chat_id):
            session = await self.session_store.append_message(
                chat_id, Message(sender_id=human_id, content=content)
            )
            message = session.messages[-1]
            handle = self._active_handle(chat_id)
            if handle is not None:
                handle.turns_since_human = 0

        logger.info(
            "[CALL] send_message: chat_id=%s content_len=%d auto_chat=%s",
            chat_id, len(content), handle is not None,
        )
        await self._broadcast_message(chat_id, message)

        if handle is None:
            target = self._select_reply_target(session, content)
            if target is None:
                logger.warning("[CALL] send_message: no AI participant can reply in chat %s", chat_id)
            else:
                self._dispatch(chat_id, target, trigger="reply")
        return message

    async def trigger_random(self, chat_id: str) -> str | None:
        """随机选一位 AI 发言（排除上一位发言者），返回被选中的人设 id；无人可选时返回 None。

        有回复正在生成时，排在最后的那位视为上一位发言者，新的发言排在它之后落地。
        """
        async with self._lock(chat_id):
            session = await self.session_store.get_session(chat_id, message_limit=self.config.history_limit)
        target = self._pick_next_speaker(session)
        logger.info("[CALL] trigger_random: chat_id=%s target=%s", chat_id, target)
        if target is not None:
            self._dispatch(chat_id, target, trigger="random")
        return target

    async def set_auto_chat(self, chat_id: str, active: bool) -> bool:
        """开启/关闭自动对话。关闭在下一轮派发前生效，进行中的请求允许完成并追加。"""
        async with self._lock(chat_id):
            session = await self.session_store.get_session(chat_id, message_limit=0)
            state = self._state(chat_id)
            handle = self._auto_chats.get(chat_id)
            if active:
                if not session.is_group:
                    raise InvalidSessionError("auto-chat is only available in group chats")
                if handle is None or handle.stopped:
                    handle = AutoChatHandle(chat_id=chat_id)
                    self._auto_chats[chat_id] = handle
                    handle.task = asyncio.create_task(self._auto_chat_loop(handle))
                state.auto_chat_active = True
            else:
                if handle is not None:
                    handle.stop_event.set()
                state.auto_chat_active = False

        logger.info("[CALL] set_auto_chat: chat_id=%s active=%s", chat_id, active)
        if self.ws_manager:
            await self.ws_manager.send_auto_chat(chat_id, active)
        return active

    async def toggle_auto_chat(self, chat_id: str) -> bool:
        return await self.set_auto_chat(chat_id, not self.is_auto_chat_active(chat_id))

    async def delete_chat(self, chat_id: str) -> None:
        """删除聊天：停止自动对话、清除打字状态；已派发请求的结果会被丢弃。"""
        async with self._lock(chat_id):
            if not await self.session_store.has_session(chat_id):
                raise SessionNotFoundError(chat_id)
            handle = self._auto_chats.pop(chat_id, None)
            if handle is not None:
                handle.stop_event.set()
                if handle.task is not None:
                    self._track(chat_id, handle.task)
            await self.session_store.delete_session(chat_id)
            self._forget(chat_id)

        if self.call_logger:
            self.call_logger.delete_chat_logs(chat_id)
        logger.info("[CALL] delete_chat: chat_id=%s", chat_id)
        if self.ws_manager:
            await self.ws_manager.send_chat_deleted(chat_id)

    async def reset_data(self, confirm: bool = False) -> None:
        """重置全部数据：停止所有自动对话、丢弃进行中的结果，清空会话与设置。不可恢复。"""
        if not confirm:
            raise ValueError("reset_data requires explicit confirmation")

        for cid, handle in self._auto_chats.items():
            handle.stop_event.set()
            if handle.task is not None:
                self._track(cid, handle.task)
        self._auto_chats.clear()

        count = len(await self.session_store.list_sessions())
        await self.session_store.reset()
        await self.settings.reset()
        for cid in set(self._states) | set(self._locks) | set(self._turn_locks) | set(self._queued):
            self._forget(cid)
        if self.call_logger:
            self.call_logger.clear()
        logger.warning("[CALL] reset_data: cleared %d chats and all settings", count)

    async def wait_idle(self, chat_id: str | None = None) -> None:
        """等待（某个或全部聊天）已安排的回复任务与自动对话任务结束。"""
        while True:
            pending: list[asyncio.Task] = []
            for cid, tasks in self._tasks.items():
                if chat_id is None or cid == chat_id:
                    pending.extend(t for t in tasks if not t.done())
            for cid, handle in self._auto_chats.items():
                if (chat_id is None or cid == chat_id) and handle.task and not handle.task.done():
                    pending.append(handle.task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """关闭时停止所有自动对话并取消未完成的任务。"""
        for handle in self._auto_chats.values():
            handle.stop_event.set()
        tasks = [t for ts in self._tasks.values() for t in ts if not t.done()]
        tasks += [h.task for h in self._auto_chats.values() if h.task and not h.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── 发言人选择 ──

    def _eligible_speakers(self, session: ChatSession) -> list[str]:
        """可发言的 AI 成员（按参与者顺序）；注册表里查不到的 id 不能生成，跳过。"""
        eligible = []
        for pid in session.participant_ids:
            persona = self.registry.get(pid)
            if persona is None:
                logger.warning("Participant %s of chat %s is unknown, skipping", pid, session.id)
                continue
            if not persona.is_user:
                eligible.append(pid)
        return eligible

    def _last_speaker(self, session: ChatSession) -> str | None:
        """下一条 AI 消息之前的发送者：排队中最后派发的一位，否则为日志中最后一条非系统消息。"""
        queued = self._queued.get(session.id)
        if queued:
            return queued[-1]
        last = session.last_spoken()
        return last.sender_id if last else None

    def _pick_next_speaker(self, session: ChatSession) -> str | None:
        """随机选下一位发言者；至少两位 AI 时排除上一位发言者。"""
        eligible = self._eligible_speakers(session)
        if not eligible:
            return None
        last = self._last_speaker(session)
        candidates = eligible
        if last is not None and len(eligible) > 1:
            candidates = [pid for pid in eligible if pid != last]
        return self.rng.choice(candidates)

    def _select_reply_target(self, session: ChatSession, content: str) -> str | None:
        """人类发言后的回复者：被 @ 的第一位 → 最久未发言者 → id 最小者。

        排队中尚未落地的发言者按最近发言计。
        """
        eligible = self._eligible_speakers(session)
        if not eligible:
            return None
        if not session.is_group or len(eligible) == 1:
            return eligible[0]

        mentions = self._parse_mentions(content, eligible)
        if mentions:
            return mentions[0]

        last_index = {pid: -1 for pid in eligible}
        for index, msg in enumerate(session.messages):
            if msg.sender_id in last_index:
                last_index[msg.sender_id] = index
        for offset, pid in enumerate(self._queued.get(session.id, [])):
            if pid in last_index:
                last_index[pid] = len(session.messages) + offset
        return min(eligible, key=lambda pid: (last_index[pid], pid))

    def _parse_mentions(self, content: str, persona_ids: list[str]) -> list[str]:
        """从消息正文解析 @xxx：按 persona id 或名称匹配（允许名称后紧跟正文，如「@鲁迅你好」）。
        仅当 @ 出现在行首或空白后时才视为提及，避免误伤邮件地址等。
        """
        keys: list[tuple[str, str]] = []
        for pid in persona_ids:
            keys.append((pid, pid))
            persona = self.registry.get(pid)
            if persona and persona.name:
                keys.append((persona.name, pid))
                keys.append((persona.name.replace(" ", ""), pid))
        keys.sort(key=lambda item: len(item[0]), reverse=True)

        mentions: list[str] = []
        for token in _RE_MENTION.findall(content):
            for key, pid in keys:
                if token.startswith(key):
                    if pid not in mentions:
                        mentions.append(pid)
                    break
        return mentions

    # ── 生成 ──

    def _dispatch(self, chat_id: str, persona_id: str, trigger: str) -> asyncio.Task:
        """登记发言者并在后台安排一次生成。"""
        self._enqueue(chat_id, persona_id)
        return self._spawn(chat_id, self._generate(chat_id, persona_id, trigger))

    async def _generate(
        self,
        chat_id: str,
        persona_id: str,
        trigger: str,
        handle: AutoChatHandle | None = None,
    ) -> bool | None:
        """执行一次已登记的生成：等前面的生成落地后再快照、请求并追加结果。

        返回 True 表示已追加回复，False 表示失败（已写入系统消息），
        None 表示未派发（已停止/已删除）或结果因聊天被删除而丢弃。
        """
        try:
            async with self._turn_lock(chat_id):
                return await self._run_turn(chat_id, persona_id, trigger, handle)
        finally:
            self._dequeue(chat_id, persona_id)

    async def _run_turn(
        self,
        chat_id: str,
        persona_id: str,
        trigger: str,
        handle: AutoChatHandle | None,
    ) -> bool | None:
        lock = self._lock(chat_id)
        token = uuid.uuid4().hex
        async with lock:
            if handle is not None and handle.stopped:
                return None
            try:
                context = await self.context_builder.build(chat_id, persona_id)
            except KeyError as e:
                logger.warning("[CALL] _generate skipped: chat_id=%s persona_id=%s: %s", chat_id, persona_id, e)
                return None
            config = self.settings.snapshot()
            state = self._state(chat_id)
            state.typing_persona_id = persona_id
            state.pending_request_token = token

        logger.info(
            "[CALL] _generate dispatch: chat_id=%s persona_id=%s trigger=%s history=%d model=%s",
            chat_id, persona_id, trigger, len(context.history), config.model_name,
        )
        await self._broadcast_typing(chat_id, persona_id)

        started = time.monotonic()
        text = ""
        error: Exception | None = None
        try:
            text = await self.client.complete(config, context.persona, context.history, context.participants)
        except EndpointClientError as e:
            error = e
            logger.warning(
                "[CALL] _generate failed: chat_id=%s persona_id=%s kind=%s detail=%s",
                chat_id, persona_id, e.kind, e,
            )
        except asyncio.CancelledError:
            self._clear_typing(chat_id, token)
            raise
        except Exception as e:
            error = e
            logger.error(
                "[CALL] _generate unexpected failure: chat_id=%s persona_id=%s: %s",
                chat_id, persona_id, e, exc_info=True,
            )
        duration_ms = int((time.monotonic() - started) * 1000)

        async with lock:
            if not await self.session_store.has_session(chat_id):
                logger.info("[CALL] _generate result discarded, chat %s deleted", chat_id)
                return None
            cleared = self._clear_typing(chat_id, token)
            if error is None:
                message = Message(sender_id=persona_id, content=text)
            else:
                user_message = self._failure_text(error)
                self._state(chat_id).last_error = user_message
                name = context.persona.display_name
                message = Message.system(f"{name} 回复失败：{user_message}")
            session = await self.session_store.append_message(chat_id, message)
            message = session.messages[-1]

        self._record_call(chat_id, persona_id, trigger, config.model_name, len(context.history),
                          duration_ms, len(text), "ok" if error is None else "error", error)
        if cleared:
            await self._broadcast_typing(chat_id, None)
        await self._broadcast_message(chat_id, message)
        return error is None

    @staticmethod
    def _failure_text(error: Exception) -> str:
        if isinstance(error, EndpointClientError):
            return error.user_message
        return ParseError.user_message

    # ── 自动对话 ──

    async def _auto_chat_loop(self, handle: AutoChatHandle) -> None:
        """自动对话循环：每轮派发前检查 stop_event；失败时写入系统消息后干净退出。"""
        chat_id = handle.chat_id
        logger.info("[CALL] auto_chat loop started: chat_id=%s", chat_id)
        try:
            while not handle.stopped:
                async with self._lock(chat_id):
                    if handle.stopped:
                        break
                    try:
                        session = await self.session_store.get_session(
                            chat_id, message_limit=self.config.history_limit
                        )
                    except SessionNotFoundError:
                        break

                speaker = self._pick_next_speaker(session)
                if speaker is None:
                    await self._stop_with_notice(handle, "群聊中没有可发言的 AI 成员，自动对话已停止。")
                    break

                self._enqueue(chat_id, speaker)
                outcome = await self._generate(chat_id, speaker, trigger="auto_chat", handle=handle)
                if outcome is None:
                    break
                if outcome is False:
                    handle.stop_event.set()
                    break

                handle.turns_since_human += 1
                limit = self.config.auto_chat_turn_limit
                if limit and handle.turns_since_human >= limit:
                    await self._stop_with_notice(handle, f"自动对话已达到 {limit} 轮上限，等待人类指令。")
                    break

                await self._pace(handle)
        finally:
            handle.stop_event.set()
            became_inactive = False
            if self._auto_chats.get(chat_id) is handle:
                del self._auto_chats[chat_id]
                state = self._states.get(chat_id)
                if state is not None and state.auto_chat_active:
                    state.auto_chat_active = False
                    became_inactive = True
            logger.info("[CALL] auto_chat loop finished: chat_id=%s", chat_id)
        if became_inactive and self.ws_manager:
            await self.ws_manager.send_auto_chat(chat_id, False)

    async def _pace(self, handle: AutoChatHandle) -> None:
        """两轮之间的随机间隔；关闭自动对话会立即打断等待。"""
        delay = self.rng.uniform(self.config.auto_chat_min_delay, self.config.auto_chat_max_delay)
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(handle.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _stop_with_notice(self, handle: AutoChatHandle, notice: str) -> None:
        handle.stop_event.set()
        async with self._lock(handle.chat_id):
            try:
                session = await self.session_store.append_message(handle.chat_id, Message.system(notice))
            except SessionNotFoundError:
                return
        await self._broadcast_message(handle.chat_id, session.messages[-1])

    # ── 私有工具 ──

    def _lock(self, chat_id: str) -> asyncio.Lock:
        if chat_id not in self._locks:
            self._locks[chat_id] = asyncio.Lock()
        return self._locks[chat_id]

    def _turn_lock(self, chat_id: str) -> asyncio.Lock:
        if chat_id not in self._turn_locks:
            self._turn_locks[chat_id] = asyncio.Lock()
        return self._turn_locks[chat_id]

    def _enqueue(self, chat_id: str, persona_id: str) -> None:
        self._queued.setdefault(chat_id, []).append(persona_id)

    def _dequeue(self, chat_id: str, persona_id: str) -> None:
        queued = self._queued.get(chat_id)
        if queued and persona_id in queued:
            queued.remove(persona_id)
            if not queued:
                del self._queued[chat_id]

    def _forget(self, chat_id: str) -> None:
        """丢弃已删除聊天的内存状态；仍在等待的生成持有旧锁，醒来后发现会话不存在即退出。"""
        self._states.pop(chat_id, None)
        self._locks.pop(chat_id, None)
        self._turn_locks.pop(chat_id, None)
        self._queued.pop(chat_id, None)

    def _state(self, chat_id: str) -> ChatRunState:
        if chat_id not in self._states:
            self._states[chat_id] = ChatRunState(chat_id=chat_id)
        return self._states[chat_id]

    def _active_handle(self, chat_id: str) -> AutoChatHandle | None:
        handle = self._auto_chats.get(chat_id)
        return handle if handle is not None and not handle.stopped else None

    def _human_id(self) -> str:
        human = self.registry.human
        return human.id if human else HUMAN_ID

    def _clear_typing(self, chat_id: str, token: str) -> bool:
        """仅当仍是同一请求时清除打字状态，避免清掉后派发请求的指示。"""
        state = self._states.get(chat_id)
        if state is None or state.pending_request_token != token:
            return False
        state.typing_persona_id = None
        state.pending_request_token = None
        return True

    def _spawn(self, chat_id: str, coro: Coroutine) -> asyncio.Task:
        return self._track(chat_id, asyncio.create_task(coro))

    def _track(self, chat_id: str, task: asyncio.Task) -> asyncio.Task:
        """登记任务，供 wait_idle / shutdown 等待或取消；已脱离编排状态的自动对话任务也在这里登记。"""
        tasks = self._tasks.setdefault(chat_id, set())
        tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            tasks.discard(t)
            if not tasks and self._tasks.get(chat_id) is tasks:
                del self._tasks[chat_id]
            if not t.cancelled() and t.exception() is not None:
                logger.error("[CALL] generation task for chat %s crashed", chat_id, exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    def _record_call(
        self,
        chat_id: str,
        persona_id: str,
        trigger: str,
        model_name: str,
        history_len: int,
        duration_ms: int,
        output_len: int,
        outcome: str,
        error: Exception | None,
    ) -> None:
        if not self.call_logger:
            return
        self.call_logger.save(CallLog(
            log_id=uuid.uuid4().hex,
            chat_id=chat_id,
            persona_id=persona_id,
            model_name=model_name,
            trigger=trigger,
            history_len=history_len,
            duration_ms=duration_ms,
            output_len=output_len,
            outcome=outcome,
            error_kind=getattr(error, "kind", type(error).__name__) if error else "",
        ))

    async def _broadcast_message(self, chat_id: str, message: Message) -> None:
        if self.ws_manager:
            await self.ws_manager.send_message(chat_id, message)

    async def _broadcast_typing(self, chat_id: str, persona_id: str | None) -> None:
        if self.ws_manager:
            await self.ws_manager.send_typing(chat_id, persona_id)
