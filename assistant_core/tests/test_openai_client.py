import httpx
import pytest

from assistant_core.domain.exceptions import ApiError, AuthError, NetworkError, RateLimitError, ValidationError
from assistant_core.domain.models import Batch, RunStatus, text_part
from assistant_core.providers.openai_client import OpenAIAssistantsClient


class SettingsStub:
    openai_api_key = "sk-test-123456"
    openai_base_url = "https://api.openai.com/v1"
    http_timeout = 1.0
    max_retries = 3
    initial_retry_delay = 1.0
    max_retry_delay = 30.0
    output_message_limit = 5
    run_max_wait = 3.0
    run_poll_interval = 1.0
    transcription_model = "whisper-1"
    transcription_language = None


class Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def install_client(monkeypatch, responses):
    """用按顺序返回 responses 的假 Client 替换 httpx.Client，返回请求记录。"""

    calls = []
    queue = list(responses)

    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def request(self, method, url, **kw):
            calls.append({"method": method, "url": url, **kw})
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

    monkeypatch.setattr("httpx.Client", Client)
    return calls


def make_client(sleeps=None, clock=None):
    sleeps = sleeps if sleeps is not None else []
    return OpenAIAssistantsClient(SettingsStub(), sleep=sleeps.append, clock=clock or (lambda: 0.0))


def test_create_thread_sends_beta_header(monkeypatch):
    calls = install_client(monkeypatch, [Resp(payload={"id": "thread_1"})])
    assert make_client().create_thread() == "thread_1"
    assert calls[0]["method"] == "POST"
    assert calls[0]["url"] == "https://api.openai.com/v1/threads"
    assert calls[0]["headers"]["OpenAI-Beta"] == "assistants=v2"
    assert calls[0]["headers"]["Authorization"] == "Bearer sk-test-123456"


def test_add_message_posts_batch_payload(monkeypatch):
    calls = install_client(monkeypatch, [Resp(payload={"id": "msg_1"})])
    make_client().add_message("thread_1", Batch(role="user", content=[text_part("hi")]))
    assert calls[0]["url"].endswith("/threads/thread_1/messages")
    assert calls[0]["json"] == {"role": "user", "content": [{"type": "text", "text": "hi"}]}


def test_missing_api_key_is_validation_error(monkeypatch):
    class NoKey(SettingsStub):
        openai_api_key = None

    install_client(monkeypatch, [])
    with pytest.raises(ValidationError):
        OpenAIAssistantsClient(NoKey()).create_thread()


def test_auth_error_is_never_retried(monkeypatch):
    calls = install_client(monkeypatch, [Resp(401, text="bad key"), Resp(payload={"id": "x"})])
    sleeps = []
    with pytest.raises(AuthError):
        make_client(sleeps).create_thread()
    assert len(calls) == 1
    assert sleeps == []


def test_rate_limit_uses_retry_after_then_succeeds(monkeypatch):
    calls = install_client(
        monkeypatch,
        [Resp(429, headers={"retry-after": "2"}), Resp(429), Resp(payload={"id": "thread_9"})],
    )
    sleeps = []
    assert make_client(sleeps).create_thread() == "thread_9"
    assert len(calls) == 3
    # 第一次按 retry-after，第二次按指数退避（1 * 2 ** 1）
    assert sleeps == [2.0, 2.0]


def test_rate_limit_retry_after_is_capped(monkeypatch):
    install_client(monkeypatch, [Resp(429, headers={"retry-after": "600"}), Resp(payload={"id": "t"})])
    sleeps = []
    make_client(sleeps).create_thread()
    assert sleeps == [30.0]


def test_rate_limit_exhaustion_raises(monkeypatch):
    calls = install_client(monkeypatch, [Resp(429)] * 4)
    sleeps = []
    with pytest.raises(RateLimitError):
        make_client(sleeps).create_thread()
    assert len(calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_network_errors_back_off_and_recover(monkeypatch):
    calls = install_client(
        monkeypatch,
        [httpx.ConnectError("reset"), Resp(503), Resp(payload={"id": "thread_2"})],
    )
    sleeps = []
    assert make_client(sleeps).create_thread() == "thread_2"
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_network_exhaustion_raises_network_error(monkeypatch):
    install_client(monkeypatch, [httpx.ReadTimeout("slow")] * 4)
    with pytest.raises(NetworkError):
        make_client().create_thread()


def test_other_client_errors_are_not_retried(monkeypatch):
    calls = install_client(monkeypatch, [Resp(400, payload={"error": {"message": "bad request"}})])
    with pytest.raises(ApiError) as exc:
        make_client().create_thread()
    assert exc.value.http_status == 400
    assert exc.value.message == "bad request"
    assert len(calls) == 1


def test_get_run_status_fetches_output_on_completion(monkeypatch):
    output = [{"role": "assistant", "content": [{"type": "text", "text": {"value": "Yes"}}]}]
    calls = install_client(
        monkeypatch,
        [Resp(payload={"id": "run_1", "status": "completed"}), Resp(payload={"data": output})],
    )
    run = make_client().get_run_status("thread_1", "run_1")
    assert run.status == RunStatus.COMPLETED
    assert run.output == output
    assert calls[1]["params"] == {"limit": 5, "order": "desc", "run_id": "run_1"}


def test_get_run_status_maps_failure_detail(monkeypatch):
    install_client(
        monkeypatch,
        [Resp(payload={"id": "run_1", "status": "expired", "last_error": None})],
    )
    run = make_client().get_run_status("thread_1", "run_1")
    assert run.status == RunStatus.FAILED
    assert run.remote_status == "expired"
    assert run.error["code"] == "expired"


def test_wait_for_completion_polls_until_done(monkeypatch):
    install_client(
        monkeypatch,
        [
            Resp(payload={"id": "run_1", "status": "queued"}),
            Resp(payload={"id": "run_1", "status": "in_progress"}),
            Resp(payload={"id": "run_1", "status": "completed"}),
            Resp(payload={"data": []}),
        ],
    )
    now = [0.0]
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    client = OpenAIAssistantsClient(SettingsStub(), sleep=sleep, clock=lambda: now[0])
    run = client.wait_for_completion("thread_1", "run_1")
    assert run.status == RunStatus.COMPLETED
    assert sleeps == [1.0, 1.0]


def test_wait_for_completion_times_out(monkeypatch):
    install_client(monkeypatch, [Resp(payload={"id": "run_1", "status": "in_progress"})] * 10)
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    client = OpenAIAssistantsClient(SettingsStub(), sleep=sleep, clock=lambda: now[0])
    run = client.wait_for_completion("thread_1", "run_1", max_wait=2.5, poll_interval=1.0)
    assert run.status == RunStatus.TIMEOUT
    assert run.remote_status == "in_progress"


def test_transcribe_audio_uploads_multipart(monkeypatch):
    calls = install_client(monkeypatch, [Resp(text=" hola mundo \n")])
    text = make_client().transcribe_audio(b"\x00\x01")
    assert text == "hola mundo"
    call = calls[0]
    assert call["url"].endswith("/audio/transcriptions")
    assert call["data"] == {"model": "whisper-1", "response_format": "text"}
    assert call["files"]["file"][0] == "audio.mp3"
    assert "OpenAI-Beta" not in call["headers"]
    assert "Content-Type" not in call["headers"]


def test_transcribe_audio_rejects_empty_payload(monkeypatch):
    install_client(monkeypatch, [])
    with pytest.raises(ValidationError):
        make_client().transcribe_audio(b"")


def test_create_or_update_assistant(monkeypatch):
    calls = install_client(monkeypatch, [Resp(payload={"id": "asst_new"}), Resp(payload={"id": "asst_1"})])
    client = make_client()
    assert client.create_or_update_assistant(None, {"name": "Seller"})["id"] == "asst_new"
    assert client.create_or_update_assistant("asst_1", {"name": "Seller"})["id"] == "asst_1"
    assert calls[0]["url"].endswith("/assistants")
    assert calls[1]["url"].endswith("/assistants/asst_1")
