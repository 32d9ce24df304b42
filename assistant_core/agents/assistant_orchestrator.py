"""Assistant 编排核心模块。

一次 generate 调用的状态流转：

    NO_THREAD / THREAD_RESOLVED
        → FOLLOW_UP_CHECK 或 MESSAGES_PREPARED
        → MESSAGES_APPENDED → RUN_CREATED → RUN_POLLING
        → COMPLETED / FAILED / TIMED_OUT
        → RESPONSE_EXTRACTED

被跟进规则拦截或无内容可发时以 NO_ACTION 结束，不创建 run。

跟进规则（3-strike）：消息少于 3 条时总是允许；否则最后 3 条都是我方发送时拒绝，
避免对不回复的一方连续催促。新线程与已有线程两条路径使用同一规则。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from assistant_core.domain.conversation import (
    ChatRole,
    ConversationThread,
    Message,
    ProductInfo,
    ensure_message_id,
    extract_id_timestamp,
    message_time,
)
from assistant_core.domain.exceptions import (
    DuplicateThreadError,
    FollowUpLimitError,
    NotFoundError,
    RunFailedError,
    RunTimeoutError,
    ValidationError,
)
from assistant_core.domain.models import Batch, RunRequest, RunStatus, text_part
from assistant_core.formatting.batch_formatter import MessageBatchFormatter
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.infrastructure.notifications import Notifier, NullNotifier
from assistant_core.prompts import load_follow_up_instruction
from assistant_core.providers.base import AssistantGateway
from assistant_core.threads.registry import ThreadRegistry
from assistant_core.transcription.base import NullTranscriptionService, TranscriptionService

FOLLOW_UP_WINDOW = 3


class OrchestrationState(str, Enum):
    NO_THREAD = "no_thread"
    THREAD_RESOLVED = "thread_resolved"
    FOLLOW_UP_CHECK = "follow_up_check"
    MESSAGES_PREPARED = "messages_prepared"
    MESSAGES_APPENDED = "messages_appended"
    RUN_CREATED = "run_created"
    RUN_POLLING = "run_polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    RESPONSE_EXTRACTED = "response_extracted"
    NO_ACTION = "no_action"


@dataclass
class OrchestratorConfig:
    assistant_ids: Dict[str, Optional[str]] = field(default_factory=dict)
    max_messages_new_thread: int = 50
    transcription_max_wait: float = 5.0
    cursor_timestamp_tolerance: float = 60.0
    run_max_wait: float = 60.0
    run_poll_interval: float = 1.0
    locale: str = "en"

    @classmethod
    def from_settings(cls, settings) -> "OrchestratorConfig":
        return cls(
            assistant_ids=settings.assistant_ids(),
            max_messages_new_thread=settings.max_messages_new_thread,
            transcription_max_wait=settings.transcription_max_wait,
            cursor_timestamp_tolerance=settings.cursor_timestamp_tolerance,
            run_max_wait=settings.run_max_wait,
            run_poll_interval=settings.run_poll_interval,
        )


@dataclass
class GenerateOptions:
    # 重新生成时只发送最新的一条消息
    force_regeneration: bool = False


@dataclass
class OrchestrationResult:
    reply: str
    state: OrchestrationState
    remote_thread_id: Optional[str] = None
    run: Optional[RunRequest] = None
    notice: Optional[str] = None
    batches_sent: int = 0


@dataclass
class _Prepared:
    thread: ConversationThread
    batches: List[Batch]


def is_follow_up_allowed(messages: Sequence[Message]) -> bool:
    if len(messages) < FOLLOW_UP_WINDOW:
        return True
    return not all(m.sent_by_self for m in messages[-FOLLOW_UP_WINDOW:])


def extract_reply_text(output: Optional[List[Dict[str, Any]]]) -> str:
    """从 run 输出中取第一条 assistant 消息的文本。

    content 可能是内容项列表（text 为字符串或 {"value": ...}），也可能直接是字符串。
    """

    for entry in output or []:
        if not isinstance(entry, dict) or entry.get("role") != "assistant":
            continue
        content = entry.get("content")
        if isinstance(content, str):
            if content.strip():
                return content.strip()
            continue
        texts: List[str] = []
        for part in content or []:
            if not isinstance(part, dict) or part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, dict):
                text = text.get("value")
            if isinstance(text, str) and text.strip():
                texts.append(text.strip())
        if texts:
            return "\n".join(texts)
    return ""


class AssistantOrchestrator:
    def __init__(
        self,
        registry: ThreadRegistry,
        gateway: AssistantGateway,
        formatter: MessageBatchFormatter,
        transcription: Optional[TranscriptionService] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[OrchestratorConfig] = None,
        follow_up_loader: Callable[[str, str], str] = load_follow_up_instruction,
    ):
        self._registry = registry
        self._gateway = gateway
        self._formatter = formatter
        self._transcription = transcription or NullTranscriptionService()
        self._notifier = notifier or NullNotifier()
        self._config = config or OrchestratorConfig()
        self._follow_up_loader = follow_up_loader

    def generate_response(
        self,
        external_id: str,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        role: Union[ChatRole, str],
        product_info: Optional[Union[ProductInfo, Dict[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
    ) -> str:
        """生成一条回复文本；返回空字符串表示本次无需回复。"""

        return self.generate(external_id, messages, role, product_info, options).reply

    def generate(
        self,
        external_id: str,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        role: Union[ChatRole, str],
        product_info: Optional[Union[ProductInfo, Dict[str, Any]]] = None,
        options: Optional[GenerateOptions] = None,
    ) -> OrchestrationResult:
        options = options or GenerateOptions()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}", "external_id": external_id}
        if not external_id:
            raise ValidationError(code="MISSING_EXTERNAL_ID", message="external_id is required")

        msgs = [self._coerce_message(m, position) for position, m in enumerate(messages)]
        if not msgs:
            self._log(logging.INFO, "No messages supplied", log_ctx)
            return OrchestrationResult(reply="", state=OrchestrationState.NO_ACTION)
        chat_role = self._coerce_role(role, log_ctx)
        assistant_id = self._config.assistant_ids.get(chat_role.value)
        if not assistant_id:
            raise ValidationError(
                code="MISSING_ASSISTANT_ID",
                message=f"No assistant configured for role {chat_role.value}",
            )
        product = ProductInfo.from_dict(product_info) if isinstance(product_info, dict) else product_info

        thread = self._registry.lookup(external_id)
        try:
            if thread is None:
                self._log(logging.INFO, "No thread registered", log_ctx, state=OrchestrationState.NO_THREAD.value)
                prepared = self._prepare_new_thread(external_id, msgs, chat_role, product, options, log_ctx)
            else:
                self._log(
                    logging.INFO,
                    "Thread resolved",
                    log_ctx,
                    state=OrchestrationState.THREAD_RESOLVED.value,
                    remote_thread_id=thread.remote_thread_id,
                )
                prepared = self._prepare_existing_thread(thread, msgs, chat_role, options, log_ctx)
        except FollowUpLimitError as e:
            self._notifier.notify("follow_up_blocked", {"external_id": external_id, "message": e.message})
            self._log(logging.INFO, "Follow-up blocked", log_ctx, state=OrchestrationState.NO_ACTION.value)
            return OrchestrationResult(
                reply="",
                state=OrchestrationState.NO_ACTION,
                remote_thread_id=thread.remote_thread_id if thread else None,
                notice=e.message,
            )

        remote_thread_id = prepared.thread.remote_thread_id
        log_ctx["remote_thread_id"] = remote_thread_id
        if not prepared.batches:
            self._log(logging.INFO, "Nothing to send", log_ctx, state=OrchestrationState.NO_ACTION.value)
            return OrchestrationResult(reply="", state=OrchestrationState.NO_ACTION, remote_thread_id=remote_thread_id)

        for batch in prepared.batches:
            self._gateway.add_message(remote_thread_id, batch)
        self._log(
            logging.INFO,
            "Messages appended",
            log_ctx,
            state=OrchestrationState.MESSAGES_APPENDED.value,
            batches=len(prepared.batches),
        )

        run = self._gateway.create_run(remote_thread_id, assistant_id)
        log_ctx["run_id"] = run.run_id
        self._log(logging.INFO, "Run created", log_ctx, state=OrchestrationState.RUN_CREATED.value)
        self._log(logging.DEBUG, "Polling run", log_ctx, state=OrchestrationState.RUN_POLLING.value)
        run = self._gateway.wait_for_completion(
            remote_thread_id,
            run.run_id,
            max_wait=self._config.run_max_wait,
            poll_interval=self._config.run_poll_interval,
        )

        if run.status == RunStatus.FAILED:
            self._log(logging.ERROR, "Run failed", log_ctx, state=OrchestrationState.FAILED.value, error=run.error)
            raise RunFailedError(
                code="RUN_FAILED",
                message=self._failure_message(run),
                run_id=run.run_id,
                remote_status=run.remote_status,
                detail=run.error,
            )
        if run.status != RunStatus.COMPLETED:
            self._log(logging.ERROR, "Run timed out", log_ctx, state=OrchestrationState.TIMED_OUT.value)
            raise RunTimeoutError(
                code="RUN_TIMEOUT",
                message=f"Run {run.run_id} did not complete within {self._config.run_max_wait}s",
                run_id=run.run_id,
                remote_status=run.remote_status,
                detail=run.error,
            )

        self._log(logging.INFO, "Run completed", log_ctx, state=OrchestrationState.COMPLETED.value)
        last = msgs[-1]
        try:
            self._registry.advance_cursor(external_id, last.id, message_time(last))
        except NotFoundError:
            # 运行期间记录被淘汰；回复仍然有效
            self._log(logging.WARNING, "Thread vanished before cursor update", log_ctx)
        reply = extract_reply_text(run.output)
        self._log(
            logging.INFO,
            "Response extracted",
            log_ctx,
            state=OrchestrationState.RESPONSE_EXTRACTED.value,
            reply_length=len(reply),
        )
        return OrchestrationResult(
            reply=reply,
            state=OrchestrationState.RESPONSE_EXTRACTED,
            remote_thread_id=remote_thread_id,
            run=run,
            batches_sent=len(prepared.batches),
        )

    # ---- 路径准备 ----

    def _prepare_new_thread(
        self,
        external_id: str,
        msgs: List[Message],
        role: ChatRole,
        product: Optional[ProductInfo],
        options: GenerateOptions,
        log_ctx: Dict[str, Any],
    ) -> _Prepared:
        follow_up = msgs[-1].sent_by_self
        if follow_up:
            self._check_follow_up(msgs, log_ctx)

        # 并发调用可能已经创建了映射
        existing = self._registry.lookup(external_id, force_reload=True)
        if existing is not None:
            return self._prepare_existing_thread(existing, msgs, role, options, log_ctx)

        remote_thread_id = self._gateway.create_thread()
        try:
            thread = self._registry.create(external_id, remote_thread_id, role)
        except DuplicateThreadError as e:
            self._log(
                logging.WARNING,
                "Thread created concurrently, reusing existing record",
                log_ctx,
                orphan_remote_thread_id=remote_thread_id,
            )
            return self._prepare_existing_thread(e.existing, msgs, role, options, log_ctx)

        window = self._reconcile_audio(msgs[-self._config.max_messages_new_thread:], log_ctx)
        batches = self._formatter.format(window, product)
        if follow_up:
            batches.append(self._follow_up_batch(role))
        self._log(
            logging.INFO,
            "New thread messages prepared",
            log_ctx,
            state=OrchestrationState.MESSAGES_PREPARED.value,
            messages=len(window),
        )
        return _Prepared(thread=thread, batches=batches)

    def _prepare_existing_thread(
        self,
        thread: ConversationThread,
        msgs: List[Message],
        role: ChatRole,
        options: GenerateOptions,
        log_ctx: Dict[str, Any],
    ) -> _Prepared:
        if options.force_regeneration:
            to_send = msgs[-1:]
            follow_up = False
        else:
            to_send = self.messages_after_cursor(thread, msgs, log_ctx)
            follow_up = not any(not m.sent_by_self for m in to_send)
        if follow_up:
            self._log(logging.INFO, "No new counterpart messages", log_ctx, state=OrchestrationState.FOLLOW_UP_CHECK.value)
            self._check_follow_up(msgs, log_ctx)

        batches = self._formatter.format(self._reconcile_audio(to_send, log_ctx))
        if follow_up:
            batches.append(self._follow_up_batch(role))
        self._log(
            logging.INFO,
            "Messages prepared",
            log_ctx,
            state=OrchestrationState.MESSAGES_PREPARED.value,
            messages=len(to_send),
            follow_up=follow_up,
        )
        return _Prepared(thread=thread, batches=batches)

    def messages_after_cursor(
        self,
        thread: ConversationThread,
        msgs: List[Message],
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> List[Message]:
        """游标之后的消息。

        依次尝试：按 ID 精确匹配；按时间戳找误差内最近的消息；取比游标时间更新的消息；
        最后退化为最近 max_messages_new_thread 条。
        """

        log_ctx = log_ctx or {}
        limit = self._config.max_messages_new_thread
        cursor_id = thread.last_message_id
        if not cursor_id:
            return msgs[-limit:]
        for index in range(len(msgs) - 1, -1, -1):
            if msgs[index].id == cursor_id:
                return msgs[index + 1:]

        anchor = thread.last_message_at or extract_id_timestamp(cursor_id)
        if anchor is None:
            self._log(logging.WARNING, "Cursor not found, using recent messages", log_ctx, cursor=cursor_id)
            return msgs[-limit:]

        nearest = self._nearest_index(msgs, anchor)
        if nearest is not None:
            self._log(logging.WARNING, "Cursor matched by timestamp", log_ctx, cursor=cursor_id)
            return msgs[nearest + 1:]
        newer = [m for m in msgs if (message_time(m) or anchor) > anchor]
        if newer or any(message_time(m) for m in msgs):
            self._log(logging.WARNING, "Cursor not found, using newer messages", log_ctx, cursor=cursor_id)
            return newer[-limit:]
        self._log(logging.WARNING, "Cursor not found, using recent messages", log_ctx, cursor=cursor_id)
        return msgs[-limit:]

    def _nearest_index(self, msgs: List[Message], anchor: datetime) -> Optional[int]:
        tolerance = self._config.cursor_timestamp_tolerance
        best: Optional[int] = None
        best_delta = tolerance
        for index, message in enumerate(msgs):
            when = message_time(message)
            if when is None:
                continue
            delta = abs((when - anchor).total_seconds())
            # 同等误差时取更靠后的消息
            if delta <= best_delta:
                best, best_delta = index, delta
        return best

    # ---- 辅助 ----

    def _reconcile_audio(self, msgs: List[Message], log_ctx: Dict[str, Any]) -> List[Message]:
        locators = [
            m.content.audio_locator
            for m in msgs
            if m.content.has_audio and not m.content.transcript and m.content.audio_locator
        ]
        if not locators:
            return msgs
        pending = self._transcription.await_pending(locators, max_wait=self._config.transcription_max_wait)
        if pending:
            self._log(logging.INFO, "Proceeding without some transcriptions", log_ctx, pending=len(pending))
        return self._transcription.associate(msgs)

    def _check_follow_up(self, msgs: List[Message], log_ctx: Dict[str, Any]) -> None:
        if not is_follow_up_allowed(msgs):
            raise FollowUpLimitError(
                code="FOLLOW_UP_LIMIT",
                message=f"The last {FOLLOW_UP_WINDOW} messages were all sent by us; waiting for a reply",
                external_id=log_ctx.get("external_id"),
            )

    def _follow_up_batch(self, role: ChatRole) -> Batch:
        return Batch(role="user", content=[text_part(self._follow_up_loader(role.value, self._config.locale))])

    @staticmethod
    def _coerce_message(raw: Union[Message, Dict[str, Any]], position: int) -> Message:
        if isinstance(raw, Message):
            return ensure_message_id(raw, position)
        return Message.from_dict(raw, position)

    def _coerce_role(self, role: Union[ChatRole, str], log_ctx: Dict[str, Any]) -> ChatRole:
        parsed = ChatRole.parse(role)
        if parsed is None:
            self._log(logging.WARNING, "Unknown role, defaulting to seller", log_ctx, role=str(role))
            return ChatRole.SELLER
        return parsed

    @staticmethod
    def _failure_message(run: RunRequest) -> str:
        detail = run.error or {}
        message = detail.get("message") if isinstance(detail, dict) else None
        return message or f"Run {run.run_id} ended with status {run.remote_status}"

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        log_event(level, message, log_ctx, **fields)
