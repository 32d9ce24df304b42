import threading
from collections import OrderedDict
from typing import Dict, List, Optional

from assistant_core.domain.conversation import KeyValueStore
from assistant_core.domain.models import TranscriptionJob

CACHE_STORE_KEY = "TRANSCRIPTIONS"


class TranscriptionCache:
    """按 audio_locator 索引的有界 LRU 缓存。

    - 读取会刷新条目的新旧顺序。
    - 超过 max_size 时淘汰最久未使用的已结束任务；进行中的任务不淘汰。
    - 已结束任务写入 KeyValueStore，进程重启后可恢复。
    """

    def __init__(self, store: Optional[KeyValueStore] = None, max_size: int = 100):
        self._store = store
        self._max_size = max(1, int(max_size))
        self._jobs: "OrderedDict[str, TranscriptionJob]" = OrderedDict()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, locator: str) -> bool:
        with self._lock:
            return locator in self._jobs

    def get(self, locator: str) -> Optional[TranscriptionJob]:
        with self._lock:
            job = self._jobs.get(locator)
            if job is not None:
                self._jobs.move_to_end(locator)
            return job

    def add_if_absent(self, job: TranscriptionJob) -> bool:
        with self._lock:
            if job.audio_locator in self._jobs:
                return False
            self._jobs[job.audio_locator] = job
            self._evict()
            return True

    def put(self, job: TranscriptionJob) -> None:
        with self._lock:
            self._jobs[job.audio_locator] = job
            self._jobs.move_to_end(job.audio_locator)
            self._evict()
            if job.is_terminal:
                self.persist()

    def jobs(self) -> List[TranscriptionJob]:
        with self._lock:
            return list(self._jobs.values())

    def load(self) -> int:
        """从存储恢复已结束的任务，返回恢复条数。"""

        if self._store is None:
            return 0
        raw = self._store.get(CACHE_STORE_KEY, {}) or {}
        restored = 0
        with self._lock:
            for data in raw.values():
                try:
                    job = TranscriptionJob.from_dict(data)
                except (KeyError, TypeError, ValueError):
                    continue
                if job.is_terminal and job.audio_locator not in self._jobs:
                    self._jobs[job.audio_locator] = job
                    restored += 1
            self._evict()
        return restored

    def persist(self) -> None:
        if self._store is None:
            return
        with self._lock:
            payload: Dict[str, dict] = {
                locator: job.to_dict() for locator, job in self._jobs.items() if job.is_terminal
            }
        self._store.set(CACHE_STORE_KEY, payload)

    def _evict(self) -> None:
        overflow = len(self._jobs) - self._max_size
        if overflow <= 0:
            return
        for locator in [k for k, job in self._jobs.items() if job.is_terminal][:overflow]:
            del self._jobs[locator]
