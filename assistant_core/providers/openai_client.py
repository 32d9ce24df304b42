"""OpenAI Assistants API 适配器。

本模块负责：

1. 线程 / 消息 / run 的 HTTP 调用（带 OpenAI-Beta: assistants=v2 头）。
2. run 状态轮询，以及完成后拉取最新输出消息。
3. whisper 语音转写（multipart 上传，response_format=text）。
4. assistant 的查询与创建/更新。

所有请求经过同一个 _request 入口，统一做错误分类与重试：

- 401: AuthError，立即失败。
- 429: RateLimitError，优先按 retry-after 等待，否则指数退避。
- 网络错误与 502/503/504: NetworkError，指数退避。
- 其他非 2xx: ApiError，不重试。

退避等待 = initial_retry_delay * 2 ** attempt，且不超过 max_retry_delay。
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from assistant_core.domain.exceptions import (
    ApiError,
    AuthError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from assistant_core.domain.models import Batch, RunRequest, RunStatus
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.providers.registry import OPENAI_CONFIG


class OpenAIAssistantsClient:
    """OpenAI Assistants 网关实现。

    - sleep / clock 可注入，测试中无需真实等待。
    - 每次请求新建 httpx.Client，不跨线程共享连接。
    """

    name = "openai"

    def __init__(
        self,
        settings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    # ---- 线程 / 消息 / run ----

    def create_thread(self) -> str:
        data = self._request("POST", "/threads", json={})
        thread_id = data.get("id")
        if not thread_id:
            raise ApiError(code="INVALID_RESPONSE", message="Thread creation returned no id", http_status=502)
        log_event(logging.INFO, "Remote thread created", {"thread_id": thread_id})
        return thread_id

    def add_message(self, thread_id: str, batch: Union[Batch, Dict[str, Any]]) -> Dict[str, Any]:
        payload = batch.to_payload() if isinstance(batch, Batch) else dict(batch)
        if not payload.get("content"):
            raise ValidationError(code="EMPTY_MESSAGE", message="Message batch has no content", thread_id=thread_id)
        return self._request("POST", f"/threads/{thread_id}/messages", json=payload)

    def create_run(self, thread_id: str, assistant_id: str) -> RunRequest:
        if not assistant_id:
            raise ValidationError(code="MISSING_ASSISTANT_ID", message="assistant_id is required")
        data = self._request("POST", f"/threads/{thread_id}/runs", json={"assistant_id": assistant_id})
        run_id = data.get("id")
        if not run_id:
            raise ApiError(code="INVALID_RESPONSE", message="Run creation returned no id", http_status=502)
        log_event(logging.INFO, "Run created", {"thread_id": thread_id, "run_id": run_id})
        return RunRequest(
            remote_thread_id=thread_id,
            assistant_id=data.get("assistant_id") or assistant_id,
            run_id=run_id,
            status=RunStatus.from_remote(data.get("status")),
            remote_status=data.get("status"),
        )

    def get_run_status(self, thread_id: str, run_id: str) -> RunRequest:
        data = self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        remote_status = data.get("status")
        run = RunRequest(
            remote_thread_id=thread_id,
            assistant_id=data.get("assistant_id") or "",
            run_id=run_id,
            status=RunStatus.from_remote(remote_status),
            remote_status=remote_status,
        )
        if run.status == RunStatus.COMPLETED:
            run.output = self.list_messages(thread_id, limit=self._output_limit(), run_id=run_id)
        elif run.status == RunStatus.FAILED:
            run.error = data.get("last_error") or {
                "code": remote_status or "unknown",
                "message": f"Run ended with status {remote_status}",
            }
        return run

    def wait_for_completion(
        self,
        thread_id: str,
        run_id: str,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> RunRequest:
        """轮询直到 completed / failed；超时返回 status=TIMEOUT 的记录。"""

        max_wait = float(max_wait if max_wait is not None else getattr(self._settings, "run_max_wait", 60.0))
        poll_interval = float(
            poll_interval if poll_interval is not None else getattr(self._settings, "run_poll_interval", 1.0)
        )
        started = self._clock()
        while True:
            run = self.get_run_status(thread_id, run_id)
            if run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
                return run
            elapsed = self._clock() - started
            if elapsed >= max_wait:
                break
            self._sleep(max(0.0, min(poll_interval, max_wait - elapsed)))
        log_event(
            logging.WARNING,
            "Run did not finish in time",
            {"thread_id": thread_id, "run_id": run_id},
            max_wait=max_wait,
            remote_status=run.remote_status,
        )
        run.status = RunStatus.TIMEOUT
        return run

    def list_messages(self, thread_id: str, limit: int = 5, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """按时间倒序返回线程内最新的 limit 条消息。"""

        params: Dict[str, Any] = {"limit": limit, "order": "desc"}
        if run_id:
            params["run_id"] = run_id
        data = self._request("GET", f"/threads/{thread_id}/messages", params=params)
        return list(data.get("data") or [])

    # ---- 语音转写 ----

    def transcribe_audio(self, data: bytes, filename: Optional[str] = None) -> str:
        if not data:
            raise ValidationError(code="EMPTY_AUDIO", message="Audio payload is empty")
        form: Dict[str, Any] = {
            "model": getattr(self._settings, "transcription_model", None) or OPENAI_CONFIG.transcription_model,
            "response_format": "text",
        }
        language = getattr(self._settings, "transcription_language", None)
        if language:
            form["language"] = language
        text = self._request(
            "POST",
            "/audio/transcriptions",
            files={"file": (filename or OPENAI_CONFIG.transcription_filename, data)},
            data=form,
            beta=False,
            expect_json=False,
        )
        return (text or "").strip()

    # ---- Assistant 管理 ----

    def list_assistants(self, limit: int = 20) -> List[Dict[str, Any]]:
        data = self._request("GET", "/assistants", params={"limit": limit, "order": "desc"})
        return list(data.get("data") or [])

    def get_assistant(self, assistant_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/assistants/{assistant_id}")

    def create_or_update_assistant(self, assistant_id: Optional[str], config: Dict[str, Any]) -> Dict[str, Any]:
        """assistant_id 为空时创建，否则修改已有 assistant。"""

        if assistant_id:
            return self._request("POST", f"/assistants/{assistant_id}", json=config)
        return self._request("POST", "/assistants", json=config)

    # ---- 内部 ----

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        beta: bool = True,
        expect_json: bool = True,
    ) -> Any:
        api_key = getattr(self._settings, "openai_api_key", None)
        if not api_key:
            raise ValidationError(code="MISSING_API_KEY", message="OPENAI_API_KEY not set")
        base = getattr(self._settings, "openai_base_url", None) or OPENAI_CONFIG.base_url
        headers = {"Authorization": f"Bearer {api_key}"}
        if beta:
            headers["OpenAI-Beta"] = getattr(self._settings, "assistants_beta_header", None) or OPENAI_CONFIG.beta_header
        if files is None:
            headers["Content-Type"] = "application/json"
        kwargs: Dict[str, Any] = {"headers": headers}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if files is not None:
            kwargs["files"] = files
        if data is not None:
            kwargs["data"] = data

        max_retries = int(getattr(self._settings, "max_retries", 3))
        attempt = 0
        while True:
            try:
                with httpx.Client(timeout=getattr(self._settings, "http_timeout", 30.0), trust_env=False) as client:
                    resp = client.request(method, f"{base}{path}", **kwargs)
            except httpx.RequestError as e:
                # DNS 失败、连接超时等
                if attempt >= max_retries:
                    raise NetworkError(code="NETWORK_ERROR", message=str(e), path=path) from e
                self._backoff(attempt, path, reason="network", error=str(e))
                attempt += 1
                continue

            status = resp.status_code
            if status == 401:
                raise AuthError(code="AUTH_ERROR", message="Authentication failed: invalid API key", http_status=401)
            if status == 429:
                if attempt >= max_retries:
                    raise RateLimitError(
                        code="RATE_LIMIT",
                        message=f"Rate limit exceeded after {max_retries} retries",
                        http_status=429,
                        path=path,
                    )
                self._backoff(attempt, path, reason="rate_limit", retry_after=self._retry_after(resp))
                attempt += 1
                continue
            if status in OPENAI_CONFIG.retryable_statuses:
                if attempt >= max_retries:
                    raise NetworkError(
                        code="NETWORK_ERROR",
                        message=f"Upstream unavailable (HTTP {status})",
                        http_status=status,
                        path=path,
                    )
                self._backoff(attempt, path, reason=f"http_{status}")
                attempt += 1
                continue
            if status >= 400:
                raise ApiError(code="API_ERROR", message=self._error_message(resp), http_status=status, path=path)

            if not expect_json:
                return resp.text
            try:
                return resp.json()
            except ValueError as e:
                raise ApiError(code="INVALID_RESPONSE", message=str(e), http_status=502, path=path) from e

    def _backoff(self, attempt: int, path: str, reason: str, retry_after: Optional[float] = None, **fields) -> None:
        cap = float(getattr(self._settings, "max_retry_delay", 30.0))
        if retry_after is not None:
            delay = min(retry_after, cap)
        else:
            initial = float(getattr(self._settings, "initial_retry_delay", 1.0))
            delay = min(initial * (2 ** attempt), cap)
        log_event(
            logging.WARNING,
            "Retrying request",
            {"path": path, "reason": reason},
            attempt=attempt + 1,
            delay=delay,
            **fields,
        )
        self._sleep(delay)

    @staticmethod
    def _retry_after(resp) -> Optional[float]:
        headers = getattr(resp, "headers", None) or {}
        raw = headers.get("retry-after") or headers.get("Retry-After")
        if raw is None:
            return None
        try:
            return max(0.0, float(raw))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _error_message(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and err.get("message"):
                return err["message"]
        return resp.text

    def _output_limit(self) -> int:
        return int(getattr(self._settings, "output_message_limit", 5))
