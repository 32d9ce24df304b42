import threading
from concurrent.futures import Executor
from datetime import datetime, timedelta, timezone

from assistant_core.domain.conversation import Message, MessageContent
from assistant_core.domain.models import TranscriptionJob, TranscriptionStatus
from assistant_core.transcription.base import AudioResource, NullTranscriptionService, normalize_locator
from assistant_core.transcription.cache import TranscriptionCache
from assistant_core.transcription.coordinator import TranscriptionCoordinator


class InlineExecutor(Executor):
    def submit(self, fn, *args, **kwargs):
        fn(*args, **kwargs)

    def shutdown(self, wait=True, *, cancel_futures=False):
        return None


class FakeSource:
    def __init__(self, resources=(), payloads=None, failures=0):
        self.resources = list(resources)
        self.payloads = payloads or {}
        self.failures = failures
        self.fetched = []

    def list_audio_resources(self):
        return list(self.resources)

    def fetch_audio(self, locator):
        self.fetched.append(locator)
        if self.failures:
            self.failures -= 1
            raise IOError("download failed")
        return self.payloads.get(locator, b"audio")


class FakeGateway:
    def __init__(self, text="hola"):
        self.text = text
        self.calls = 0

    def transcribe_audio(self, data, filename=None):
        self.calls += 1
        return self.text


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, payload=None):
        self.events.append((event, payload or {}))


class MemoryStore:
    def __init__(self):
        self.data = {}

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def remove(self, key):
        self.data.pop(key, None)

    def keys(self, prefix=""):
        return [k for k in self.data if k.startswith(prefix)]


def audio_msg(mid, locator, minute=0):
    return Message(
        id=mid,
        sent_by_self=False,
        content=MessageContent(has_audio=True, audio_locator=locator),
        timestamp=datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc),
    )


def make(source=None, gateway=None, notifier=None, store=None, **kw):
    return TranscriptionCoordinator(
        source=source or FakeSource(),
        gateway=gateway or FakeGateway(),
        notifier=notifier,
        store=store,
        executor=InlineExecutor(),
        **kw,
    )


def test_normalize_locator_strips_query():
    assert normalize_locator("https://cdn/a.mp4?sig=1&x=2") == "https://cdn/a.mp4"
    assert normalize_locator("blob:abc?x") == "blob:abc"
    assert normalize_locator("") == ""


def test_discover_enqueues_unseen_resources_once():
    notifier = RecordingNotifier()
    source = FakeSource([AudioResource("https://a/1.mp4?s=1", "m1"), AudioResource("https://a/2.mp4")])
    coordinator = make(source=source, notifier=notifier)
    assert coordinator.discover() == 2
    assert coordinator.discover() == 0
    assert ("audio_resources_found", {"count": 2}) in notifier.events
    # 下载使用带签名的原始地址
    assert "https://a/1.mp4?s=1" in source.fetched


def test_resolve_hits_cache_without_retranscribing():
    gateway = FakeGateway("hello there")
    coordinator = make(gateway=gateway)
    assert coordinator.enqueue("https://a/1.mp4?sig=abc")
    assert coordinator.resolve("https://a/1.mp4?sig=other") == "hello there"
    assert coordinator.resolve("https://a/1.mp4") == "hello there"
    assert not coordinator.enqueue("https://a/1.mp4")
    assert gateway.calls == 1


def test_fetch_is_retried_once_then_fails():
    notifier = RecordingNotifier()
    source = FakeSource(failures=1)
    coordinator = make(source=source, notifier=notifier)
    coordinator.enqueue("https://a/1.mp4")
    assert coordinator.resolve("https://a/1.mp4") == "hola"
    assert len(source.fetched) == 2

    failing = FakeSource(failures=2)
    coordinator = make(source=failing, notifier=notifier)
    coordinator.enqueue("https://a/2.mp4")
    assert coordinator.resolve("https://a/2.mp4") is None
    assert coordinator.cache.get("https://a/2.mp4").status == TranscriptionStatus.FAILED
    assert notifier.events[-1][0] == "transcription_failed"


def test_await_pending_returns_pending_after_timeout():
    release = threading.Event()

    class SlowGateway(FakeGateway):
        def transcribe_audio(self, data, filename=None):
            release.wait(2)
            return "late"

    coordinator = TranscriptionCoordinator(
        source=FakeSource(), gateway=SlowGateway(), max_wait=0.2, poll_interval=0.05
    )
    try:
        pending = coordinator.await_pending(["https://a/1.mp4?x=1"])
        assert pending == {"https://a/1.mp4"}
        release.set()
        assert coordinator.await_pending(["https://a/1.mp4"], max_wait=2) == set()
        assert coordinator.resolve("https://a/1.mp4") == "late"
    finally:
        release.set()
        coordinator.shutdown()


def test_await_pending_without_locators_returns_immediately():
    assert make().await_pending([]) == set()


def test_associate_by_locator_and_message_hint():
    coordinator = make(source=FakeSource([AudioResource("https://a/hint.mp4", "m2")]))
    coordinator.enqueue("https://a/1.mp4")
    coordinator.discover()
    messages = [audio_msg("m1", "https://a/1.mp4?s=9"), audio_msg("m2", "blob:unrelated")]
    result = coordinator.associate(messages)
    assert [m.content.transcript for m in result] == ["hola", "hola"]
    # 入参不被修改
    assert messages[0].content.transcript is None


def test_associate_fifo_pairs_by_order():
    class SeqGateway(FakeGateway):
        def __init__(self):
            super().__init__()
            self.texts = iter(["first", "second", "third"])

        def transcribe_audio(self, data, filename=None):
            return next(self.texts)

    coordinator = make(gateway=SeqGateway())
    for locator in ("https://x/a.mp4", "https://x/b.mp4", "https://x/c.mp4"):
        coordinator.enqueue(locator)
    jobs = {job.audio_locator: job for job in coordinator.cache.jobs()}
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i, locator in enumerate(("https://x/a.mp4", "https://x/b.mp4", "https://x/c.mp4")):
        jobs[locator].completed_at = base + timedelta(seconds=i)

    messages = [audio_msg("late", "blob:2", minute=5), audio_msg("early", "blob:1", minute=1)]
    result = coordinator.associate(messages)
    by_id = {m.id: m.content.transcript for m in result}
    assert by_id == {"early": "first", "late": "second"}
    # 已配对的转写不会再次使用
    again = coordinator.associate_fifo([audio_msg("next", "blob:3")])
    assert again[0].content.transcript == "third"


def test_associate_fifo_skips_messages_with_pending_job():
    coordinator = make()
    coordinator.enqueue("https://other/done.mp4")
    # 自身任务尚未完成
    coordinator.cache.add_if_absent(
        TranscriptionJob(audio_locator="https://x/own.mp4", submitted_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    )
    result = coordinator.associate([audio_msg("m1", "https://x/own.mp4?sig=1")])
    assert result[0].content.transcript is None
    assert coordinator.cache.get("https://other/done.mp4").associated_message_id is None

    # 自身任务失败时才回退到 FIFO
    failing = make(source=FakeSource(failures=2))
    failing.enqueue("https://x/own.mp4")
    failing.enqueue("https://other/done.mp4")
    result = failing.associate([audio_msg("m1", "https://x/own.mp4")])
    assert result[0].content.transcript == "hola"


def test_cache_evicts_lru_terminal_jobs_and_persists():
    store = MemoryStore()
    coordinator = make(store=store, cache_size=2)
    for name in ("a", "b", "c"):
        coordinator.enqueue(f"https://x/{name}.mp4")
    assert len(coordinator.cache) == 2
    assert coordinator.resolve("https://x/a.mp4") is None
    assert set(store.get("TRANSCRIPTIONS")) == {"https://x/b.mp4", "https://x/c.mp4"}

    restored = TranscriptionCache(store=store, max_size=10)
    assert restored.load() == 2
    assert restored.get("https://x/c.mp4").text == "hola"


def test_null_transcription_service():
    null = NullTranscriptionService()
    messages = [audio_msg("m1", "https://a/1.mp4")]
    assert null.discover() == 0
    assert null.resolve("https://a/1.mp4") is None
    assert null.await_pending(["https://a/1.mp4"]) == set()
    assert null.associate(messages) is messages
