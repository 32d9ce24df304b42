import json
import os
import threading
from pathlib import Path
from typing import Any, List
from urllib.parse import quote
from uuid import uuid4

from assistant_core.config.settings import settings
from assistant_core.domain.conversation import KeyValueStore
from assistant_core.domain.exceptions import BusinessError


class JsonKeyValueStore(KeyValueStore):
    """每个键一个 JSON 文件的键值存储。

    文件内容为 {"key": 原始键, "value": 值}；文件名是 URL 编码后的键，
    写入先落临时文件再 os.replace，保证读者看到的要么是旧值要么是新值。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._kv_root = self._root / "kv"
        self._kv_root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def get(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return default
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except Exception as e:
                raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)
        return data.get("value", default)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = self._kv_root / f"{path.stem}.{uuid4().hex}.tmp"
        with self._lock:
            try:
                tmp_path.write_text(json.dumps({"key": key, "value": value}, ensure_ascii=False), encoding="utf-8")
                os.replace(tmp_path, path)
            except Exception as e:
                tmp_path.unlink(missing_ok=True)
                raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def remove(self, key: str) -> None:
        path = self._path(key)
        with self._lock:
            try:
                path.unlink(missing_ok=True)
            except Exception as e:
                raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def keys(self, prefix: str = "") -> List[str]:
        items: List[str] = []
        with self._lock:
            for path in sorted(self._kv_root.glob("*.json")):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                except Exception:
                    # 损坏的文件不影响其他键的枚举
                    continue
                key = data.get("key")
                if isinstance(key, str) and key.startswith(prefix):
                    items.append(key)
        return items

    def _path(self, key: str) -> Path:
        if not key:
            raise BusinessError(code="STORE_INVALID_KEY", message="empty storage key")
        return self._kv_root / f"{quote(key, safe='')}.json"
