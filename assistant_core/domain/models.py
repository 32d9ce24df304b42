"""远端交互与后台任务的数据模型。

- Batch: 一条发给远端线程的消息（角色 + 有序内容项），即 API 的 message 结构。
- RunRequest: 一次远端 run 的执行记录，终态后不再复用。
- TranscriptionJob: 一个音频资源的转写任务，按 audio_locator 缓存复用。
- ThreadStats: 线程注册表的统计信息。

所有 Provider / 编排逻辑只依赖这些模型，并负责在远端 JSON 与它们之间转换。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from .timeutils import from_iso, to_iso

# 远端 API 的消息角色：我方消息映射为 assistant，对方消息映射为 user
BatchRole = Literal["user", "assistant"]


def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(url: str, detail: str = "auto") -> Dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url, "detail": detail}}


@dataclass
class Batch:
    role: BatchRole
    content: List[Dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {"role": self.role, "content": [dict(part) for part in self.content]}

    @property
    def text(self) -> str:
        return "\n".join(part.get("text", "") for part in self.content if part.get("type") == "text")


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @classmethod
    def from_remote(cls, value: Optional[str]) -> "RunStatus":
        """把远端 run.status 映射为内部状态。"""

        status = (value or "").lower()
        if status == "queued":
            return cls.QUEUED
        if status in {"in_progress", "requires_action", "cancelling"}:
            return cls.IN_PROGRESS
        if status == "completed":
            return cls.COMPLETED
        # failed / cancelled / expired / incomplete 以及未知状态
        return cls.FAILED


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.TIMEOUT})


@dataclass
class RunRequest:
    remote_thread_id: str
    assistant_id: str
    run_id: str
    status: RunStatus = RunStatus.QUEUED
    output: Optional[List[Dict[str, Any]]] = None
    error: Optional[Dict[str, Any]] = None
    remote_status: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class TranscriptionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TranscriptionJob:
    """一个音频资源的转写任务。

    - audio_locator: 归一化后的音频地址（缓存键）。
    - message_id: 发现阶段得到的所属消息 ID 提示（可能为空）。
    - associated_message_id: FIFO 回退配对后记录的消息 ID，避免重复配对。
    """

    audio_locator: str
    submitted_at: datetime
    status: TranscriptionStatus = TranscriptionStatus.PENDING
    text: Optional[str] = None
    completed_at: Optional[datetime] = None
    message_id: Optional[str] = None
    associated_message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != TranscriptionStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audio_locator": self.audio_locator,
            "status": self.status.value,
            "text": self.text,
            "submitted_at": to_iso(self.submitted_at),
            "completed_at": to_iso(self.completed_at),
            "message_id": self.message_id,
            "associated_message_id": self.associated_message_id,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptionJob":
        return cls(
            audio_locator=data["audio_locator"],
            submitted_at=from_iso(data.get("submitted_at")),
            status=TranscriptionStatus(data.get("status", "pending")),
            text=data.get("text"),
            completed_at=from_iso(data.get("completed_at")),
            message_id=data.get("message_id"),
            associated_message_id=data.get("associated_message_id"),
            error=data.get("error"),
        )


@dataclass
class ThreadStats:
    count: int
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None
    roles: Dict[str, int] = field(default_factory=dict)
    average_age_days: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "oldest": to_iso(self.oldest),
            "newest": to_iso(self.newest),
            "roles": dict(self.roles),
            "average_age_days": self.average_age_days,
        }
