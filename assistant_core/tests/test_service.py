from assistant_core.api.service import AssistantService
from assistant_core.config.settings import AssistantSettings
from assistant_core.domain.models import RunRequest, RunStatus
from assistant_core.transcription.base import AudioResource, NullTranscriptionService
from assistant_core.transcription.coordinator import TranscriptionCoordinator


class FakeGateway:
    name = "fake"

    def __init__(self):
        self.messages = []
        self.transcribed = 0

    def create_thread(self):
        return "thread_1"

    def add_message(self, thread_id, batch):
        self.messages.append(batch)
        return {}

    def create_run(self, thread_id, assistant_id):
        return RunRequest(remote_thread_id=thread_id, assistant_id=assistant_id, run_id="run_1")

    def wait_for_completion(self, thread_id, run_id, max_wait=None, poll_interval=None):
        return RunRequest(
            remote_thread_id=thread_id,
            assistant_id="asst_s",
            run_id=run_id,
            status=RunStatus.COMPLETED,
            output=[{"role": "assistant", "content": "Yes, still available."}],
            remote_status="completed",
        )

    def transcribe_audio(self, data, filename=None):
        self.transcribed += 1
        return "voice note"


class FakeSource:
    def list_audio_resources(self):
        return [AudioResource("https://cdn/voice.mp4?sig=1", "m1")]

    def fetch_audio(self, locator):
        return b"data"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, payload=None):
        self.events.append(event)


def make_settings(tmp_path, **overrides):
    values = dict(
        openai_api_key="sk-test-123456",
        seller_assistant_id="asst_s",
        buyer_assistant_id="asst_b",
        storage_root=str(tmp_path / "storage"),
        thread_sweep_interval=3600,
        audio_discovery_interval=3600,
        transcription_max_wait=2.0,
    )
    values.update(overrides)
    return AssistantSettings(**values)


def test_service_generates_and_reports_stats(tmp_path):
    gateway = FakeGateway()
    with AssistantService(config=make_settings(tmp_path), gateway=gateway) as service:
        reply = service.generate_response(
            "conv-1",
            [{"id": "m1", "sentBySelf": False, "content": {"text": "Is it available?"}}],
            "seller",
        )
        assert reply == "Yes, still available."
        stats = service.get_thread_stats()
        assert stats.count == 1
        assert stats.roles == {"seller": 1}
        assert [t["name"] for t in service.status()["tasks"]] == ["thread-sweep"]
        assert all(t.running for t in service.tasks)
    assert not any(t.running for t in service.tasks)


def test_service_without_audio_source_uses_null_transcription(tmp_path):
    service = AssistantService(config=make_settings(tmp_path), gateway=FakeGateway())
    assert isinstance(service.transcription, NullTranscriptionService)
    assert service.discover() == 0


def test_service_with_audio_source_discovers_and_transcribes(tmp_path):
    gateway = FakeGateway()
    notifier = RecordingNotifier()
    service = AssistantService(
        config=make_settings(tmp_path),
        gateway=gateway,
        audio_source=FakeSource(),
        notifier=notifier,
    )
    assert isinstance(service.transcription, TranscriptionCoordinator)
    assert [t.name for t in service.tasks] == ["thread-sweep", "audio-discovery"]
    try:
        reply = service.generate_response(
            "conv-2",
            [
                {
                    "id": "m1",
                    "sentBySelf": False,
                    "content": {"text": "", "hasAudio": True, "audioUrl": "https://cdn/voice.mp4?sig=2"},
                }
            ],
            "seller",
        )
    finally:
        service.stop()
    assert reply == "Yes, still available."
    assert gateway.messages[0].text == '[Audio transcription: "voice note"]'
    assert gateway.transcribed == 1


def test_service_transcription_disabled(tmp_path):
    service = AssistantService(
        config=make_settings(tmp_path, transcription_enabled=False),
        gateway=FakeGateway(),
        audio_source=FakeSource(),
    )
    assert isinstance(service.transcription, NullTranscriptionService)
    assert len(service.tasks) == 1
