"""外部会话 ID → 远端线程的持久映射。

- 存储为唯一事实来源，内存索引只做读取加速。
- create 是“不存在才创建”的原子操作，已存在时抛出 DuplicateThreadError。
- advance_cursor 只前进：新游标时间早于已记录时间时保留原游标。
- sweep 按不活跃时间（thread_ttl）与最大存活时间（thread_max_age）淘汰记录。
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from assistant_core.domain.conversation import ChatRole, ConversationThread, KeyValueStore
from assistant_core.domain.exceptions import DuplicateThreadError, NotFoundError
from assistant_core.domain.models import ThreadStats
from assistant_core.domain.timeutils import utcnow
from assistant_core.infrastructure.logging.logger import log_event

THREAD_KEY_PREFIX = "THREAD_"


class ThreadRegistry:
    def __init__(self, store: KeyValueStore, ttl: float = 24 * 3600.0, max_age: float = 30 * 24 * 3600.0):
        self._store = store
        self._ttl = timedelta(seconds=ttl)
        self._max_age = timedelta(seconds=max_age)
        self._index: Dict[str, ConversationThread] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(external_id: str) -> str:
        return f"{THREAD_KEY_PREFIX}{external_id}"

    def lookup(self, external_id: str, force_reload: bool = False) -> Optional[ConversationThread]:
        with self._lock:
            if not force_reload and external_id in self._index:
                return self._index[external_id]
            record = self._read(external_id)
            if record is None:
                self._index.pop(external_id, None)
            else:
                self._index[external_id] = record
            return record

    def create(self, external_id: str, remote_thread_id: str, role: ChatRole) -> ConversationThread:
        with self._lock:
            existing = self._read(external_id)
            if existing is not None:
                self._index[external_id] = existing
                raise DuplicateThreadError(
                    code="THREAD_EXISTS",
                    message=f"Thread already registered for {external_id}",
                    existing=existing,
                    external_id=external_id,
                )
            now = utcnow()
            record = ConversationThread(
                external_id=external_id,
                remote_thread_id=remote_thread_id,
                role=role,
                created_at=now,
                last_seen_at=now,
            )
            self._store.set(self._key(external_id), record.to_dict())
            self._index[external_id] = record
        log_event(
            logging.INFO,
            "Thread registered",
            {"external_id": external_id},
            remote_thread_id=remote_thread_id,
            role=role.value,
        )
        return record

    def advance_cursor(
        self,
        external_id: str,
        message_id: str,
        timestamp: Optional[datetime] = None,
    ) -> ConversationThread:
        with self._lock:
            record = self._read(external_id)
            if record is None:
                self._index.pop(external_id, None)
                raise NotFoundError(
                    code="THREAD_NOT_FOUND",
                    message=f"No thread registered for {external_id}",
                    http_status=404,
                    external_id=external_id,
                )
            record.last_seen_at = utcnow()
            if _is_rewind(record, timestamp):
                log_event(
                    logging.WARNING,
                    "Cursor rewind ignored",
                    {"external_id": external_id},
                    cursor=record.last_message_id,
                    rejected=message_id,
                )
            else:
                record.last_message_id = message_id
                record.last_message_at = timestamp
            self._store.set(self._key(external_id), record.to_dict())
            self._index[external_id] = record
            return record

    def sweep(self, now: Optional[datetime] = None) -> int:
        """淘汰过期记录，返回删除条数。"""

        now = now or utcnow()
        removed = 0
        with self._lock:
            for key in list(self._store.keys(THREAD_KEY_PREFIX)):
                external_id = key[len(THREAD_KEY_PREFIX):]
                record = self._read(external_id)
                if record is None:
                    continue
                if now - record.last_seen_at > self._ttl or now - record.created_at > self._max_age:
                    self._store.remove(key)
                    self._index.pop(external_id, None)
                    removed += 1
        if removed:
            log_event(logging.INFO, "Expired threads removed", {}, count=removed)
        return removed

    def load_all(self) -> int:
        with self._lock:
            self._index.clear()
            for external_id in self.all_ids():
                record = self._read(external_id)
                if record is not None:
                    self._index[external_id] = record
            return len(self._index)

    def all_ids(self) -> List[str]:
        return [key[len(THREAD_KEY_PREFIX):] for key in self._store.keys(THREAD_KEY_PREFIX)]

    def stats(self, now: Optional[datetime] = None) -> ThreadStats:
        now = now or utcnow()
        records = [r for r in (self._read(i) for i in self.all_ids()) if r is not None]
        if not records:
            return ThreadStats(count=0)
        roles: Dict[str, int] = {}
        for record in records:
            roles[record.role.value] = roles.get(record.role.value, 0) + 1
        created = [r.created_at for r in records]
        total_days = sum((now - c).total_seconds() for c in created) / 86400.0
        return ThreadStats(
            count=len(records),
            oldest=min(created),
            newest=max(created),
            roles=roles,
            average_age_days=round(total_days / len(records), 2),
        )

    def _read(self, external_id: str) -> Optional[ConversationThread]:
        data = self._store.get(self._key(external_id))
        if not data:
            return None
        try:
            return ConversationThread.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log_event(logging.WARNING, "Corrupt thread record ignored", {"external_id": external_id}, error=str(exc))
            return None


def _is_rewind(record: ConversationThread, timestamp: Optional[datetime]) -> bool:
    # 只有两侧时间都已知时才能判断先后
    if timestamp is None or record.last_message_at is None:
        return False
    return timestamp < record.last_message_at
