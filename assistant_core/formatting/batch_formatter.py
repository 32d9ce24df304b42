"""消息批次格式化。

把会话源的消息列表转换为远端线程可接受的消息批次（Batch）：

1. 可选的商品信息批次（PRODUCT DETAILS + 商品图片）。
2. 按发送方合并连续消息；含音频或图片的消息单独成组。
3. 每组：合并文本（含转写）并脱敏，文本在前、图片在后。
4. 超过单条消息内容项上限时切分，并加上续接标记。

格式化只读取转写缓存，从不等待转写完成。
"""

import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from assistant_core.domain.conversation import Message, ProductInfo
from assistant_core.domain.models import Batch, BatchRole, image_part, text_part
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.transcription.base import NullTranscriptionService, TranscriptionService

# 顺序有意义：图片链接必须先于普通链接替换
SANITIZE_RULES: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bhttps?://\S+\.(?:png|jpe?g|gif|webp|bmp)\S*", re.IGNORECASE), "[Image URL]"),
    (re.compile(r"\bhttps?://\S+", re.IGNORECASE), "[Link]"),
    (re.compile(r"(\+\d{1,3}|\b\d{3}[-.])\d{3}[-.]?\d{4}\b"), "[Phone]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[Email]"),
]
_WHITESPACE = re.compile(r"\s+")

NO_TRANSCRIPTION = "[Audio message - no transcription available]"
IMAGE_LABEL = "[Image]"
CONTINUES_SUFFIX = " [Continues...]"
CONTINUATION_PREFIX = "[Continuation] "
CONTINUATION_LABELS = {
    "user": "[Continuation of message]",
    "assistant": "[Continuation of response]",
}


def sanitize(text: Optional[str]) -> str:
    """替换图片链接、链接、电话、邮箱，并压缩空白。对已脱敏文本幂等。"""

    result = text or ""
    for pattern, replacement in SANITIZE_RULES:
        result = pattern.sub(replacement, result)
    return _WHITESPACE.sub(" ", result).strip()


def group_consecutive_by_sender(messages: List[Message]) -> List[List[Message]]:
    groups: List[List[Message]] = []
    for message in messages:
        if message.content.has_multimedia:
            groups.append([message])
            continue
        last = groups[-1] if groups else None
        if last and last[-1].sent_by_self == message.sent_by_self and not last[-1].content.has_multimedia:
            last.append(message)
        else:
            groups.append([message])
    return groups


def chunk(items: List[Dict[str, Any]], max_items: int, role: BatchRole = "user") -> List[List[Dict[str, Any]]]:
    """按 max_items 切分内容项，保持顺序且不丢弃任何一项。"""

    max_items = max(1, int(max_items))
    if len(items) <= max_items:
        return [list(items)] if items else []

    chunks: List[List[Dict[str, Any]]] = []
    labelled: List[bool] = []
    remaining = list(items)
    while remaining:
        if chunks and remaining[0].get("type") != "text" and max_items > 1:
            current = [text_part(CONTINUATION_LABELS[role])] + remaining[: max_items - 1]
            remaining = remaining[max_items - 1:]
            labelled.append(True)
        else:
            current = remaining[:max_items]
            remaining = remaining[max_items:]
            labelled.append(False)
        chunks.append([dict(part) for part in current])

    last = len(chunks) - 1
    for index, parts in enumerate(chunks):
        text_positions = [i for i, part in enumerate(parts) if part.get("type") == "text"]
        if not text_positions:
            continue
        if index > 0 and not labelled[index]:
            first = text_positions[0]
            parts[first]["text"] = CONTINUATION_PREFIX + parts[first]["text"]
        if index < last:
            tail = text_positions[-1]
            parts[tail]["text"] = parts[tail]["text"] + CONTINUES_SUFFIX
    return chunks


class MessageBatchFormatter:
    def __init__(
        self,
        transcription: Optional[TranscriptionService] = None,
        max_items_per_chunk: int = 10,
        max_product_images: int = 5,
        image_detail: str = "auto",
    ):
        self._transcription = transcription or NullTranscriptionService()
        self._max_items = max_items_per_chunk
        self._max_product_images = max_product_images
        self._image_detail = image_detail

    sanitize = staticmethod(sanitize)
    group_consecutive_by_sender = staticmethod(group_consecutive_by_sender)

    def chunk(self, items: List[Dict[str, Any]], role: BatchRole = "user") -> List[List[Dict[str, Any]]]:
        return chunk(items, self._max_items, role)

    def attach_transcript(self, message: Message) -> str:
        """消息文本加上音频转写（若有）；只读缓存，不等待。"""

        content = message.content
        text = content.text or ""
        if not content.has_audio:
            return text
        transcript = content.transcript or self._transcription.resolve(content.audio_locator)
        if transcript and transcript.strip():
            note = f'[Audio transcription: "{transcript.strip()}"]'
        else:
            note = NO_TRANSCRIPTION
        return f"{text}\n{note}" if text else note

    def build_product_batch(self, product: Optional[ProductInfo]) -> Optional[Batch]:
        if product is None:
            return None
        summary = product.summary()
        images = [url for url in product.images if url and url.strip()][: self._max_product_images]
        if not summary and not images:
            return None
        parts: List[Dict[str, Any]] = [text_part("PRODUCT DETAILS:\n" + summary)]
        parts.extend(image_part(url, self._image_detail) for url in images)
        return Batch(role="user", content=parts[: max(1, self._max_items)])

    def format(self, messages: List[Message], product_info: Optional[ProductInfo] = None) -> List[Batch]:
        batches: List[Batch] = []
        product_batch = self.build_product_batch(product_info)
        if product_batch is not None:
            batches.append(product_batch)

        for group in group_consecutive_by_sender(messages):
            role: BatchRole = "assistant" if group[0].sent_by_self else "user"
            texts = [self.attach_transcript(m) for m in group]
            combined = sanitize("\n".join(t for t in texts if t))
            images = [url for m in group for url in m.content.images if url]

            parts: List[Dict[str, Any]] = []
            if combined:
                parts.append(text_part(combined))
            elif images:
                parts.append(text_part(IMAGE_LABEL))
            parts.extend(image_part(url, self._image_detail) for url in images)
            if not parts:
                continue
            for content in self.chunk(parts, role):
                batches.append(Batch(role=role, content=content))

        log_event(
            logging.DEBUG,
            "Messages formatted",
            {},
            messages=len(messages),
            batches=len(batches),
        )
        return batches
