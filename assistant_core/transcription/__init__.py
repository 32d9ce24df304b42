"""语音转写层。

- base: TranscriptionService / AudioSource 协议与空实现。
- cache: 有界、可持久化的转写缓存。
- coordinator: 后台转写与结果配对的协调器。
"""

from assistant_core.transcription.base import (
    AudioResource,
    AudioSource,
    NullTranscriptionService,
    TranscriptionService,
    normalize_locator,
)
from assistant_core.transcription.coordinator import TranscriptionCoordinator

__all__ = [
    "AudioResource",
    "AudioSource",
    "NullTranscriptionService",
    "TranscriptionCoordinator",
    "TranscriptionService",
    "normalize_locator",
]
