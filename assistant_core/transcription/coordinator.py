"""语音转写协调器。

负责：

1. 发现会话源中的音频资源，并为每个新资源提交一个后台转写任务。
2. 在线程池中下载音频（失败重试一次）并调用网关的 transcribe_audio。
3. 维护按 audio_locator 索引的转写缓存，供格式化器非阻塞读取。
4. 在生成回复前，有界地等待相关音频的转写结束。
5. 把转写结果配对回消息：先按地址、再按发现时的消息 ID，最后按完成顺序 FIFO 配对。

转写失败只会让对应消息显示为“无转写”，不会中断编排流程。
"""

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from assistant_core.domain.conversation import KeyValueStore, Message, message_time
from assistant_core.domain.exceptions import ValidationError
from assistant_core.domain.models import TranscriptionJob, TranscriptionStatus
from assistant_core.domain.timeutils import utcnow
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.infrastructure.notifications import Notifier, NullNotifier
from assistant_core.transcription.base import AudioSource, normalize_locator
from assistant_core.transcription.cache import TranscriptionCache

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class TranscriptionCoordinator:
    def __init__(
        self,
        source: AudioSource,
        gateway,
        notifier: Optional[Notifier] = None,
        store: Optional[KeyValueStore] = None,
        cache_size: int = 100,
        max_workers: int = 2,
        max_wait: float = 5.0,
        poll_interval: float = 0.5,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._gateway = gateway
        self._notifier = notifier or NullNotifier()
        self._cache = TranscriptionCache(store=store, max_size=cache_size)
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="assistant-transcribe"
        )
        self._max_wait = max_wait
        self._poll_interval = poll_interval
        self._clock = clock
        self._cond = threading.Condition()
        self._closed = False
        restored = self._cache.load()
        if restored:
            log_event(logging.INFO, "Transcription cache restored", {}, count=restored)

    @property
    def cache(self) -> TranscriptionCache:
        return self._cache

    def discover(self) -> int:
        """扫描会话源的音频资源，返回新提交的任务数。"""

        count = 0
        for resource in self._source.list_audio_resources():
            if self.enqueue(resource.locator, resource.message_id):
                count += 1
        if count:
            self._notifier.notify("audio_resources_found", {"count": count})
            log_event(logging.INFO, "Audio resources discovered", {}, count=count)
        return count

    def enqueue(self, locator: str, message_id: Optional[str] = None) -> bool:
        key = normalize_locator(locator)
        if not key or self._closed:
            return False
        job = TranscriptionJob(audio_locator=key, submitted_at=utcnow(), message_id=message_id)
        if not self._cache.add_if_absent(job):
            return False
        # 下载使用原始地址，签名参数可能是必需的
        self._executor.submit(self._process, job, locator)
        return True

    def resolve(self, locator: Optional[str]) -> Optional[str]:
        """非阻塞读取转写结果；仅 DONE 且非空时返回文本。"""

        job = self._cache.get(normalize_locator(locator or ""))
        if job is not None and job.status == TranscriptionStatus.DONE and job.text:
            return job.text
        return None

    def await_pending(self, locators: Iterable[str], max_wait: Optional[float] = None) -> Set[str]:
        """等待给定音频的转写结束，返回超时后仍未结束的地址集合。"""

        wanted: Dict[str, str] = {}
        for locator in locators:
            key = normalize_locator(locator or "")
            if key:
                wanted.setdefault(key, locator)
        for key, raw in wanted.items():
            if key not in self._cache:
                self.enqueue(raw)

        limit = self._max_wait if max_wait is None else max_wait
        deadline = self._clock() + max(0.0, limit)
        with self._cond:
            while True:
                pending = {key for key in wanted if self._is_pending(key)}
                if not pending:
                    return set()
                remaining = deadline - self._clock()
                if remaining <= 0:
                    log_event(logging.INFO, "Transcriptions still pending", {}, count=len(pending))
                    return pending
                self._cond.wait(timeout=min(self._poll_interval, remaining))

    def associate(self, messages: List[Message]) -> List[Message]:
        """为缺少转写的音频消息补齐转写，返回新的消息列表（不修改入参）。"""

        result = list(messages)
        for index, message in enumerate(result):
            content = message.content
            if not content.has_audio or content.transcript:
                continue
            job = self._cache.get(normalize_locator(content.audio_locator or ""))
            if not self._usable(job):
                job = self._find_by_message_hint(message.id)
            if not self._usable(job):
                continue
            self._mark_associated(job, message.id)
            result[index] = replace(message, content=replace(content, transcript=job.text))
        return self.associate_fifo(result)

    def associate_fifo(self, messages: List[Message]) -> List[Message]:
        """按完成时间与消息时间顺序，把无主的转写配对给仍缺转写的音频消息。

        这是启发式配对：只在两侧顺序一致时才正确。
        自身任务仍在进行或已有结果的消息不参与配对，只等待自己的转写。
        """

        claimed = {
            normalize_locator(m.content.audio_locator or "") for m in messages if m.content.has_audio
        }
        jobs = sorted(
            (
                job
                for job in self._cache.jobs()
                if self._usable(job) and not job.associated_message_id and job.audio_locator not in claimed
            ),
            key=lambda job: job.completed_at or _EARLIEST,
        )
        targets = sorted(
            (
                (index, message)
                for index, message in enumerate(messages)
                if message.content.has_audio and not message.content.transcript and self._fifo_target(message)
            ),
            key=lambda item: message_time(item[1]) or _EARLIEST,
        )
        if not jobs or not targets:
            return messages

        result = list(messages)
        for job, (index, message) in zip(jobs, targets):
            self._mark_associated(job, message.id)
            result[index] = replace(message, content=replace(message.content, transcript=job.text))
            log_event(
                logging.WARNING,
                "Transcription associated by order",
                {"message_id": message.id},
                locator=job.audio_locator,
            )
        return result

    def status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TranscriptionStatus}
        for job in self._cache.jobs():
            counts[job.status.value] += 1
        return counts

    def shutdown(self) -> None:
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._cond:
            self._cond.notify_all()
        self._cache.persist()

    # ---- 内部 ----

    def _process(self, job: TranscriptionJob, locator: str) -> None:
        try:
            data = self._fetch(locator)
            text = self._gateway.transcribe_audio(data)
        except Exception as exc:  # noqa: BLE001 - 失败降级为“无转写”
            self._finish(job, TranscriptionStatus.FAILED, error=str(exc))
            return
        self._finish(job, TranscriptionStatus.DONE, text=(text or "").strip())

    def _fetch(self, locator: str) -> bytes:
        last_error: Exception = ValidationError(code="EMPTY_AUDIO", message="Audio payload is empty")
        for attempt in range(2):
            try:
                data = self._source.fetch_audio(locator)
            except Exception as exc:  # noqa: BLE001 - 下载失败重试一次
                last_error = exc
                log_event(
                    logging.WARNING,
                    "Audio fetch failed",
                    {"locator": normalize_locator(locator)},
                    attempt=attempt + 1,
                    error=str(exc),
                )
                continue
            if data:
                return data
        raise last_error

    def _finish(
        self,
        job: TranscriptionJob,
        status: TranscriptionStatus,
        text: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._cond:
            if job.is_terminal:
                return
            job.status = status
            job.text = text
            job.error = error
            job.completed_at = utcnow()
            self._cache.put(job)
            self._cond.notify_all()
        if status == TranscriptionStatus.DONE:
            log_event(logging.INFO, "Transcription completed", {"locator": job.audio_locator}, length=len(text or ""))
            self._notifier.notify(
                "transcription_completed",
                {"locator": job.audio_locator, "message_id": job.message_id, "text": text},
            )
        else:
            log_event(logging.WARNING, "Transcription failed", {"locator": job.audio_locator}, error=error)
            self._notifier.notify("transcription_failed", {"locator": job.audio_locator, "error": error})

    def _is_pending(self, key: str) -> bool:
        job = self._cache.get(key)
        return job is not None and not job.is_terminal and not self._closed

    def _find_by_message_hint(self, message_id: str) -> Optional[TranscriptionJob]:
        for job in self._cache.jobs():
            if job.message_id and job.message_id == message_id and self._usable(job):
                return job
        return None

    def _mark_associated(self, job: TranscriptionJob, message_id: str) -> None:
        if job.associated_message_id == message_id:
            return
        job.associated_message_id = message_id
        self._cache.put(job)

    def _fifo_target(self, message: Message) -> bool:
        job = self._cache.get(normalize_locator(message.content.audio_locator or ""))
        return job is None or (job.is_terminal and not self._usable(job))

    @staticmethod
    def _usable(job: Optional[TranscriptionJob]) -> bool:
        return job is not None and job.status == TranscriptionStatus.DONE and bool(job.text)
