"""进程生命周期内的周期任务。

每个 PeriodicTask 持有一个守护线程，按固定间隔调用目标函数，
由所属服务在启动时 start()、关闭时 stop()。
"""

from __future__ import annotations

import logging
from threading import Event, RLock, Thread
from typing import Any, Callable, Dict, Optional

from assistant_core.infrastructure.logging.logger import log_event


class PeriodicTask:
    """按 interval 秒周期执行 fn，异常只记录不终止循环。"""

    def __init__(self, name: str, fn: Callable[[], Any], interval: float, run_immediately: bool = False) -> None:
        self.name = name
        self._fn = fn
        self._interval = max(0.01, float(interval))
        self._run_immediately = run_immediately
        self._lock = RLock()
        self._stop = Event()
        self._wake = Event()
        self._thread: Optional[Thread] = None
        self._runs = 0
        self._last_error: Optional[str] = None
        self._last_result: Any = None

    @property
    def running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """启动后台线程；已在运行时返回 False。"""

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            self._stop.clear()
            self._wake.clear()
            self._thread = Thread(target=self._run_loop, daemon=True, name=f"assistant-{self.name}")
            self._thread.start()
        return True

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._wake.set()
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
        with self._lock:
            self._thread = None

    def kick(self) -> None:
        """立即触发一次执行，不必等到下个周期。"""

        self._wake.set()

    def run_once(self) -> Any:
        try:
            result = self._fn()
        except Exception as exc:  # noqa: BLE001 - 周期任务失败不能终止循环
            with self._lock:
                self._runs += 1
                self._last_error = str(exc)
            log_event(logging.ERROR, "Periodic task failed", {"task": self.name}, error=str(exc))
            return None
        with self._lock:
            self._runs += 1
            self._last_error = None
            self._last_result = result
        return result

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "running": self._thread is not None and self._thread.is_alive(),
                "interval": self._interval,
                "runs": self._runs,
                "last_error": self._last_error,
                "last_result": self._last_result,
            }

    def _run_loop(self) -> None:
        if self._run_immediately and not self._stop.is_set():
            self.run_once()
        while not self._stop.is_set():
            self._wake.wait(timeout=self._interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            self.run_once()
