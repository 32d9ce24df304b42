"""远端 Assistant 网关抽象接口。

编排层不直接依赖具体厂商的 HTTP 细节，而是依赖此协议：

- 线程 / 消息 / run 的生命周期操作。
- 语音转写。
- 统一的错误分类与重试策略由实现者负责（见 OpenAIAssistantsClient）。
"""

from typing import Any, Dict, List, Optional, Protocol

from assistant_core.domain.models import Batch, RunRequest


class AssistantGateway(Protocol):
    """远端 Assistants API 网关协议。"""

    name: str

    def create_thread(self) -> str:
        ...

    def add_message(self, thread_id: str, batch: Batch) -> Dict[str, Any]:
        ...

    def create_run(self, thread_id: str, assistant_id: str) -> RunRequest:
        ...

    def get_run_status(self, thread_id: str, run_id: str) -> RunRequest:
        """查询 run 状态；completed 时自动拉取输出消息。"""

        ...

    def wait_for_completion(
        self,
        thread_id: str,
        run_id: str,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> RunRequest:
        """阻塞轮询直到 run 结束；超过 max_wait 返回 TIMEOUT 状态。"""

        ...

    def list_messages(self, thread_id: str, limit: int = 5, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        ...

    def transcribe_audio(self, data: bytes, filename: Optional[str] = None) -> str:
        ...
