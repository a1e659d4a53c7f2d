"""聊天会话编排器（ChatOrchestrator）。

面向渲染层的唯一入口，负责：

- 暴露当前会话消息、会话列表、加载中 / 锁定状态；
- 发送消息（流式）、执行动作（非流式）、重新生成、停止生成；
- 新建 / 切换 / 删除会话，以及登录身份、助手版本、人设的切换；
- 首条消息后在后台生成会话标题。

所有远端失败都会被转换成一条模型消息，不会有异常穿过本类的公开方法。
远端客户端通过构造函数注入；构造失败时传入 setup_error，
此后每次操作都只追加一条初始化失败说明，不再调用远端。
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from luna_core.agents.actions import (
    ActionDispatcher,
    ActionRequest,
    edit_image_request,
    image_request,
    search_request,
    video_request,
)
from luna_core.agents.notices import (
    EDIT_LABEL,
    IMAGE_LABEL,
    SEARCH_LABEL,
    VIDEO_LABEL,
    setup_failure_text,
)
from luna_core.agents.streaming import StreamingTurn, TurnState
from luna_core.agents.title import TitleGenerator
from luna_core.config.settings import settings
from luna_core.domain.conversation import Attachment, ChatHistory, ChatSession, Message, Persona
from luna_core.domain.models import Part
from luna_core.infrastructure.logging.logger import logger
from luna_core.prompts import load_system_prompt, render_template
from luna_core.providers.base import RemoteClient
from luna_core.sessions.quota import session_locked
from luna_core.sessions.store import SessionStore

ASSISTANT_VERSIONS = ("1.0", "2.0")
DEBUG_TITLE = "Error Debug Session"


def _spawn(job: Callable[[], None]) -> None:
    threading.Thread(target=job, daemon=True).start()


class ChatOrchestrator:
    def __init__(
        self,
        store: SessionStore,
        client: Optional[RemoteClient] = None,
        *,
        setup_error: Optional[str] = None,
        assistant_version: Optional[str] = None,
        persona: Optional[Persona] = None,
        guest_limit: Optional[int] = None,
        run_in_background: Optional[Callable[[Callable[[], None]], None]] = None,
        video_sleep: Callable[[float], None] = time.sleep,
        video_interval: Optional[float] = None,
        video_max_polls: Optional[int] = None,
    ):
        """
        Args:
            store: 当前身份的会话存储
            client: 远端客户端；为 None 时必须给出 setup_error
            setup_error: 客户端构造失败的原因（整个进程生命周期内不变）
            run_in_background: 后台任务执行器，默认使用守护线程
            video_sleep / video_interval / video_max_polls: 视频轮询参数，测试中可替换
        """
        if client is None and setup_error is None:
            setup_error = "no remote client configured"
        self._store = store
        self._client = client
        self._setup_error = setup_error
        self._version = assistant_version or settings.default_assistant_version
        self._persona = persona
        self._guest_limit = guest_limit or settings.guest_message_limit
        self._run_in_background = run_in_background or _spawn
        self._video_sleep = video_sleep
        self._video_interval = video_interval
        self._video_max_polls = video_max_polls

        self._busy_lock = threading.Lock()
        self._generating = False
        self._stop = threading.Event()
        self._actions = ActionDispatcher(store)
        self._titles = TitleGenerator(client, store) if client is not None else None
        self.last_turn: Optional[StreamingTurn] = None

    # ---- 状态（渲染层读取） ----

    @property
    def messages(self) -> Tuple[Message, ...]:
        session = self._store.active
        return session.messages if session else ()

    @property
    def chat_history(self) -> ChatHistory:
        return self._store.history

    @property
    def active_chat_id(self) -> Optional[str]:
        return self._store.history.active_chat_id

    def sessions(self) -> List[ChatSession]:
        return self._store.history.ordered_sessions()

    @property
    def is_loading(self) -> bool:
        return self._generating

    @property
    def is_authenticated(self) -> bool:
        return self._store.identity is not None

    @property
    def is_locked(self) -> bool:
        return session_locked(self.is_authenticated, self._store.active, self._guest_limit)

    @property
    def setup_error(self) -> Optional[str]:
        return self._setup_error

    @property
    def assistant_version(self) -> str:
        return self._version

    @property
    def persona(self) -> Optional[Persona]:
        return self._persona

    def subscribe(self, listener: Callable[[ChatHistory], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    # ---- 身份 / 版本 / 人设 ----

    def set_identity(self, user: Optional[str]) -> None:
        """登录、登出或切换账号：加载该身份的历史。"""
        self._store.load(user)

    def set_assistant_version(self, version: str) -> None:
        if version not in ASSISTANT_VERSIONS:
            logger.warning("Ignored unknown assistant version", extra={"extra": {"version": version}})
            return
        if version == self._version:
            return
        self._version = version
        self.start_new_chat()

    def set_persona(self, persona: Optional[Persona]) -> None:
        # 远端上下文在每次发送时按当前人设重新打开
        self._persona = persona

    # ---- 会话管理 ----

    def start_new_chat(self) -> str:
        return self._store.create_session().id

    def switch_chat(self, chat_id: str) -> bool:
        return self._store.switch_to(chat_id)

    def delete_chat(self, chat_id: str) -> bool:
        return self._store.delete(chat_id)

    def stop_generation(self) -> None:
        self._stop.set()

    # ---- 对话 ----

    def send_message(self, text: str, attachment: Optional[Attachment] = None) -> bool:
        return self._send(text, attachment)

    def study_topic(self, topic: str) -> bool:
        return self._send(render_template("study", topic=topic), label=topic)

    def code_assistant(self, code: str) -> bool:
        return self._send(render_template("code_review", code=code), label=code.strip())

    def regenerate_last_response(self) -> bool:
        """截断到最后一条用户消息，再以“重新生成”方式重发它。

        截断前先占用忙碌标志，其他线程的发送不会落在截断与重发之间。
        """
        if self._setup_error is not None:
            self._report_setup_failure()
            return False
        if not self._begin():
            return False
        try:
            session = self._store.active
            if session is None:
                return False
            index = _last_user_index(session.messages)
            if index < 0:
                return False
            user_message = session.messages[index]
            if not self._store.mutate_messages(session.id, lambda msgs: msgs[: index + 1]):
                return False
            attachment = Attachment.from_data_uri(user_message.image_url) if user_message.image_url else None
            return self._stream_turn(
                session,
                user_message.text,
                attachment,
                prior=session.messages[:index],
                regeneration=True,
            )
        finally:
            self._end()

    def start_debug_session(
        self,
        message: str,
        stack: Optional[str] = None,
        component_stack: Optional[str] = None,
    ) -> bool:
        """渲染层崩溃后的“调试”选项：新开会话，把错误描述作为提示发送。"""
        if self._setup_error is not None:
            self._report_setup_failure()
            return False
        if not self._begin():
            return False
        try:
            session = self._store.create_session(title=DEBUG_TITLE)
            prompt = render_template(
                "debug",
                message=message,
                stack=stack or "(not available)",
                component_stack=component_stack or "(not available)",
            )
            return self._stream_turn(session, prompt, label=f"Debug: {message}", version="2.0", generate_title=False)
        finally:
            self._end()

    # ---- 动作 ----

    def generate_image(self, prompt: str) -> bool:
        return self._run_action(IMAGE_LABEL.format(prompt=prompt), prompt, lambda c: image_request(c, prompt))

    def edit_image(self, prompt: str, attachment: Attachment) -> bool:
        return self._run_action(
            EDIT_LABEL.format(prompt=prompt),
            prompt,
            lambda c: edit_image_request(c, prompt, attachment),
        )

    def generate_video(self, prompt: str) -> bool:
        return self._run_action(
            VIDEO_LABEL.format(prompt=prompt),
            prompt,
            lambda c: video_request(
                c,
                prompt,
                interval=self._video_interval,
                max_polls=self._video_max_polls,
                sleep=self._video_sleep,
            ),
        )

    def search_query(self, text: str) -> bool:
        return self._run_action(SEARCH_LABEL.format(prompt=text), text, lambda c: search_request(c, text))

    # ---- 内部 ----

    def _send(self, text: str, attachment: Optional[Attachment] = None, **options: Any) -> bool:
        if self._setup_error is not None:
            self._report_setup_failure()
            return False
        session = self._store.active
        if session is None or self.is_locked:
            return False
        if not self._begin():
            return False
        try:
            return self._stream_turn(session, text, attachment, **options)
        finally:
            self._end()

    def _stream_turn(
        self,
        session: ChatSession,
        text: str,
        attachment: Optional[Attachment] = None,
        *,
        prior: Optional[Sequence[Message]] = None,
        regeneration: bool = False,
        label: Optional[str] = None,
        version: Optional[str] = None,
        generate_title: bool = True,
    ) -> bool:
        """执行一次流式回合；调用方必须已经持有忙碌标志。"""
        log_ctx = self._log_ctx(session.id, "send_message")
        history = session.messages if prior is None else tuple(prior)
        is_new_chat = not session.messages
        placeholder = Message(role="model", text="")
        if regeneration:
            self._store.append(session.id, placeholder)
        else:
            user_message = Message(
                role="user",
                text=text,
                image_url=attachment.data_uri if attachment else None,
                label=label,
            )
            self._store.append(session.id, user_message, placeholder)
        if is_new_chat and generate_title:
            self._dispatch_title(session.id, label or text)

        parts: List[Part] = []
        if text:
            parts.append(Part(text=text))
        if attachment is not None:
            parts.append(Part(inline_data=attachment.to_inline_data()))

        instruction = load_system_prompt(version or self._version, self._persona)
        turn = StreamingTurn(self._store, session.id, self._stop, log_ctx=log_ctx)
        self.last_turn = turn
        self._log(logging.INFO, "Sending message", log_ctx, regeneration=regeneration, history=len(history))
        turn.run(lambda: self._client.open_chat(history, instruction), parts)
        return turn.state == TurnState.SUCCEEDED

    def _run_action(self, label: str, prompt: str, build: Callable[[RemoteClient], ActionRequest]) -> bool:
        if self._setup_error is not None:
            self._report_setup_failure()
            return False
        session = self._store.active
        if session is None or self.is_locked:
            return False
        if not self._begin():
            return False

        log_ctx = self._log_ctx(session.id, "action")
        try:
            if not session.messages:
                self._dispatch_title(session.id, prompt)
            self._log(logging.INFO, "Running action", log_ctx, label=label)
            return self._actions.dispatch(session.id, label, build(self._client), prompt=prompt, log_ctx=log_ctx)
        finally:
            self._end()

    def _report_setup_failure(self) -> None:
        session = self._store.active
        if session is None:
            return
        self._store.append(session.id, Message(role="model", text=setup_failure_text(self._setup_error or "")))

    def _begin(self) -> bool:
        with self._busy_lock:
            if self._generating:
                return False
            self._generating = True
            self._stop.clear()
            return True

    def _end(self) -> None:
        with self._busy_lock:
            self._generating = False
            self._stop.clear()

    def _dispatch_title(self, session_id: str, first_message: str) -> None:
        titles = self._titles
        if titles is None:
            return
        self._run_in_background(lambda: titles.generate(session_id, first_message))

    def _log_ctx(self, chat_id: str, op: str) -> Dict[str, Any]:
        return {
            "trace_id": f"tr-{uuid4().hex}",
            "op": op,
            "chat_id": chat_id,
            "version": self._version,
            "persona": self._persona.id if self._persona else None,
        }

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


def _last_user_index(messages: Sequence[Message]) -> int:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            return i
    return -1
