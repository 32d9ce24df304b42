"""语音转写相关协议。

- AudioSource: 会话源提供的音频资源枚举与下载能力。
- TranscriptionService: 编排层与格式化器依赖的转写接口。
- NullTranscriptionService: 关闭转写时使用的空实现，所有查询都返回“无结果”。
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Set
from urllib.parse import urlsplit, urlunsplit

from assistant_core.domain.conversation import Message


def normalize_locator(locator: str) -> str:
    """去掉查询串与片段，作为缓存键。

    同一段音频的下载地址常带有会变化的签名参数，去掉后才能稳定命中缓存。
    """

    text = (locator or "").strip()
    if not text:
        return ""
    parts = urlsplit(text)
    if not parts.scheme:
        return text.split("?", 1)[0].split("#", 1)[0]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


@dataclass(frozen=True)
class AudioResource:
    locator: str
    message_id: Optional[str] = None


class AudioSource(Protocol):
    def list_audio_resources(self) -> Iterable[AudioResource]:
        ...

    def fetch_audio(self, locator: str) -> bytes:
        ...


class TranscriptionService(Protocol):
    def discover(self) -> int:
        ...

    def enqueue(self, locator: str, message_id: Optional[str] = None) -> bool:
        ...

    def resolve(self, locator: str) -> Optional[str]:
        ...

    def await_pending(self, locators: Iterable[str], max_wait: Optional[float] = None) -> Set[str]:
        ...

    def associate(self, messages: List[Message]) -> List[Message]:
        ...

    def shutdown(self) -> None:
        ...


class NullTranscriptionService:
    """不做任何转写。"""

    def discover(self) -> int:
        return 0

    def enqueue(self, locator: str, message_id: Optional[str] = None) -> bool:
        return False

    def resolve(self, locator: str) -> Optional[str]:
        return None

    def await_pending(self, locators: Iterable[str], max_wait: Optional[float] = None) -> Set[str]:
        return set()

    def associate(self, messages: List[Message]) -> List[Message]:
        return messages

    def shutdown(self) -> None:
        return None
