"""外部会话、消息与线程映射的领域模型。

- Message / MessageContent: 会话源提供的一条聊天记录。
- ProductInfo: 可选的商品元数据，在新线程中作为首条上下文发送。
- ConversationThread: 外部会话 ID 与远端 assistant 线程的持久映射。
- KeyValueStore: 持久化协议，由存储实现（如 JsonKeyValueStore）提供。
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol

from .exceptions import ValidationError
from .timeutils import coerce_timestamp, from_iso, to_epoch_ms, to_iso, utcnow

# 会话源在转写尚未完成时写入的占位文本，视同“没有转写”
TRANSCRIPTION_PENDING = "[Transcription Pending]"


class ChatRole(str, Enum):
    """我方在外部会话中的身份，用于选择 assistant。"""

    SELLER = "seller"
    BUYER = "buyer"

    @classmethod
    def parse(cls, value: Any) -> Optional["ChatRole"]:
        if isinstance(value, ChatRole):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass
class MessageContent:
    text: str = ""
    has_audio: bool = False
    audio_locator: Optional[str] = None
    transcript: Optional[str] = None
    images: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.has_audio and not self.audio_locator:
            raise ValidationError(code="INVALID_MESSAGE", message="audio message requires an audio locator")
        if self.transcript == TRANSCRIPTION_PENDING:
            self.transcript = None

    @property
    def has_multimedia(self) -> bool:
        return self.has_audio or bool(self.images)


@dataclass
class Message:
    """一条聊天记录。

    - id: 会话源中的稳定 ID；缺失时由 ensure_message_id 生成。
    - sent_by_self: 是否为我方发送（决定 assistant/user 角色）。
    - timestamp: 发送时间（UTC），可能缺失。
    """

    id: str
    sent_by_self: bool
    content: MessageContent = field(default_factory=MessageContent)
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: Optional[int] = None) -> "Message":
        raw = data.get("content") or {}
        if isinstance(raw, str):
            raw = {"text": raw}
        images = raw.get("images") or []
        content = MessageContent(
            text=raw.get("text") or "",
            has_audio=bool(raw.get("hasAudio", raw.get("has_audio", False))),
            audio_locator=raw.get("audioLocator") or raw.get("audio_locator") or raw.get("audioUrl"),
            transcript=raw.get("transcript") or raw.get("transcribedAudio"),
            images=[img.get("url") if isinstance(img, dict) else img for img in images if img],
        )
        sent = data.get("sentBySelf", data.get("sent_by_self", data.get("sentByUs", False)))
        message = cls(
            id=str(data.get("id") or ""),
            sent_by_self=bool(sent),
            content=content,
            timestamp=coerce_timestamp(data.get("timestamp")),
        )
        return ensure_message_id(message, position)


def generate_message_id(
    text: Optional[str],
    timestamp: Optional[datetime] = None,
    position: Optional[int] = None,
) -> str:
    """为缺少 ID 的消息生成确定性的 ID。

    同一条消息在多次调用中得到相同的 ID：摘要由文本与消息在列表中的位置计算。
    有真实发送时间时追加毫秒时间戳（`msg_<hash>_<epoch_ms>`），供游标回退逻辑
    （extract_id_timestamp）解析；没有时只有 `msg_<hash>`，不会伪造时间。
    """

    seed = text or ""
    if position is not None:
        seed = f"{position}:{seed}"
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:8]
    if timestamp is None:
        return f"msg_{digest}"
    return f"msg_{digest}_{to_epoch_ms(timestamp)}"


def extract_id_timestamp(message_id: Optional[str]) -> Optional[datetime]:
    if not message_id:
        return None
    parts = message_id.split("_")
    if len(parts) < 3 or not parts[-1].isdigit():
        return None
    return coerce_timestamp(int(parts[-1]))


def ensure_message_id(message: Message, position: Optional[int] = None) -> Message:
    if not message.id:
        message.id = generate_message_id(message.content.text, message.timestamp, position)
    return message


def message_time(message: Message) -> Optional[datetime]:
    """消息时间：优先 timestamp，其次 ID 中携带的时间。"""

    return message.timestamp or extract_id_timestamp(message.id)


@dataclass
class ProductInfo:
    title: Optional[str] = None
    price: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductInfo":
        images = data.get("allImages") or data.get("images") or []
        known = {"title", "price", "condition", "location", "description", "allImages", "images"}
        return cls(
            title=data.get("title"),
            price=None if data.get("price") is None else str(data.get("price")),
            condition=data.get("condition"),
            location=data.get("location"),
            description=data.get("description"),
            images=[img for img in images if isinstance(img, str) and img.strip()],
            extra={k: v for k, v in data.items() if k not in known},
        )

    def summary(self) -> str:
        lines = [
            f"Title: {self.title}" if self.title else "",
            f"Price: {self.price}" if self.price else "",
            f"Condition: {self.condition}" if self.condition else "",
            f"Location: {self.location}" if self.location else "",
            f"Description: {self.description}" if self.description else "",
        ]
        return "\n".join(line for line in lines if line)


@dataclass
class ConversationThread:
    """外部会话与远端线程的绑定记录。

    remote_thread_id 创建后不可变；last_message_id 是已处理消息的游标。
    """

    external_id: str
    remote_thread_id: str
    role: ChatRole
    created_at: datetime
    last_seen_at: datetime
    last_message_id: Optional[str] = None
    last_message_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "remote_thread_id": self.remote_thread_id,
            "role": self.role.value,
            "last_message_id": self.last_message_id,
            "last_message_at": to_iso(self.last_message_at),
            "last_seen_at": to_iso(self.last_seen_at),
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationThread":
        created = from_iso(data.get("created_at")) or utcnow()
        return cls(
            external_id=data["external_id"],
            remote_thread_id=data["remote_thread_id"],
            role=ChatRole.parse(data.get("role")) or ChatRole.SELLER,
            created_at=created,
            last_seen_at=from_iso(data.get("last_seen_at")) or created,
            last_message_id=data.get("last_message_id"),
            last_message_at=from_iso(data.get("last_message_at")),
        )


class KeyValueStore(Protocol):
    """键值持久化协议，值必须可 JSON 序列化。"""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> Iterable[str]:
        ...
