"""通知协作方。

发现音频资源、转写完成、跟进被拦截等事件以 fire-and-forget 方式通知外部，
不需要任何确认。具体展示（浏览器通知、面板等）不在本包范围内。
"""

import logging
from typing import Any, Dict, Optional, Protocol

from assistant_core.infrastructure.logging.logger import logger


class Notifier(Protocol):
    def notify(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        ...


class NullNotifier:
    """丢弃所有事件。"""

    def notify(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        return None


class LoggingNotifier:
    """把事件写入结构化日志。"""

    def __init__(self, level: int = logging.INFO):
        self._level = level

    def notify(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        logger.log(self._level, f"Notification: {event}", extra={"extra": {"event": event, **(payload or {})}})
