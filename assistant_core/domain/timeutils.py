"""时间工具。

内部一律使用带时区的 UTC datetime；持久化时序列化为以 "Z" 结尾的 ISO-8601 字符串。
外部会话源提供的时间戳可能是 datetime、ISO 字符串、秒或毫秒级 epoch，
统一由 coerce_timestamp 转换。
"""

from datetime import datetime, timezone
from typing import Any, Optional

# 大于该值的数字视为毫秒级 epoch（约 2001-09-09 之后的毫秒时间戳）
_EPOCH_MS_THRESHOLD = 1_000_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def from_epoch(value: float) -> datetime:
    """把秒或毫秒级 epoch 转为 UTC datetime。"""

    seconds = value / 1000.0 if value >= _EPOCH_MS_THRESHOLD else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """尽力把任意时间表示转换为 UTC datetime，无法识别时返回 None。"""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return from_epoch(value) if value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return from_epoch(int(text))
        try:
            return from_iso(text)
        except ValueError:
            return None
    return None
