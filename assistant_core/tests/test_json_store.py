import tempfile
from pathlib import Path

import pytest

from assistant_core.domain.exceptions import BusinessError
from assistant_core.infrastructure.storage.json_store import JsonKeyValueStore


def test_json_store_set_get_remove():
    with tempfile.TemporaryDirectory() as d:
        store = JsonKeyValueStore(root=Path(d) / ".storage")
        assert store.get("THREAD_a") is None
        assert store.get("THREAD_a", {}) == {}
        store.set("THREAD_a", {"remote_thread_id": "t1"})
        assert store.get("THREAD_a") == {"remote_thread_id": "t1"}
        store.remove("THREAD_a")
        assert store.get("THREAD_a") is None
        # 删除不存在的键不报错
        store.remove("THREAD_a")


def test_json_store_keys_with_prefix_and_special_chars():
    with tempfile.TemporaryDirectory() as d:
        store = JsonKeyValueStore(root=d)
        store.set("THREAD_a/b c", 1)
        store.set("THREAD_2", 2)
        store.set("TRANSCRIPTIONS", {})
        assert sorted(store.keys("THREAD_")) == ["THREAD_2", "THREAD_a/b c"]
        assert len(store.keys()) == 3


def test_json_store_survives_reopen_and_skips_corrupt_files():
    with tempfile.TemporaryDirectory() as d:
        JsonKeyValueStore(root=d).set("k", [1, 2])
        (Path(d) / "kv" / "broken.json").write_text("{not json", encoding="utf-8")
        reopened = JsonKeyValueStore(root=d)
        assert reopened.get("k") == [1, 2]
        assert reopened.keys() == ["k"]


def test_json_store_rejects_empty_key():
    with tempfile.TemporaryDirectory() as d:
        store = JsonKeyValueStore(root=d)
        with pytest.raises(BusinessError) as exc:
            store.set("", 1)
        assert exc.value.code == "STORE_INVALID_KEY"


def test_json_store_corrupt_value_raises_read_error():
    with tempfile.TemporaryDirectory() as d:
        store = JsonKeyValueStore(root=d)
        store.set("k", 1)
        next((Path(d) / "kv").glob("*.json")).write_text("oops", encoding="utf-8")
        with pytest.raises(BusinessError) as exc:
            store.get("k")
        assert exc.value.code == "STORE_READ_ERROR"
