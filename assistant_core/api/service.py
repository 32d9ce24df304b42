"""对外 API 服务模块。

AssistantService 是进程内的组装入口：根据配置构造存储、网关、转写协调器、
格式化器、线程注册表与编排器，并持有后台周期任务（线程淘汰、音频发现）。
启动时 start()，退出时 stop()，也可以作为上下文管理器使用。
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from assistant_core.agents.assistant_orchestrator import (
    AssistantOrchestrator,
    GenerateOptions,
    OrchestrationResult,
    OrchestratorConfig,
)
from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ChatRole, KeyValueStore, Message, ProductInfo
from assistant_core.domain.models import ThreadStats
from assistant_core.formatting.batch_formatter import MessageBatchFormatter
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.infrastructure.notifications import LoggingNotifier, Notifier
from assistant_core.infrastructure.scheduling.periodic import PeriodicTask
from assistant_core.infrastructure.storage.json_store import JsonKeyValueStore
from assistant_core.providers import create_gateway
from assistant_core.providers.base import AssistantGateway
from assistant_core.threads.registry import ThreadRegistry
from assistant_core.transcription.base import AudioSource, NullTranscriptionService, TranscriptionService
from assistant_core.transcription.coordinator import TranscriptionCoordinator


class AssistantService:
    def __init__(
        self,
        config=None,
        store: Optional[KeyValueStore] = None,
        gateway: Optional[AssistantGateway] = None,
        audio_source: Optional[AudioSource] = None,
        notifier: Optional[Notifier] = None,
    ):
        """组装所有组件。

        Args:
            config: AssistantSettings 实例，默认使用全局配置
            store: 键值存储，默认 JsonKeyValueStore(storage_root)
            gateway: 远端网关，默认按配置创建 OpenAIAssistantsClient
            audio_source: 音频资源提供方；为空或关闭转写时使用空转写服务
            notifier: 事件通知方，默认写日志
        """
        cfg = config or settings
        self._config = cfg
        self._store = store or JsonKeyValueStore(root=cfg.storage_root)
        self._gateway = gateway or create_gateway(config=cfg)
        self._notifier = notifier or LoggingNotifier()

        self._transcription: TranscriptionService
        if cfg.transcription_enabled and audio_source is not None:
            self._transcription = TranscriptionCoordinator(
                source=audio_source,
                gateway=self._gateway,
                notifier=self._notifier,
                store=self._store,
                cache_size=cfg.transcription_cache_size,
                max_workers=cfg.transcription_workers,
                max_wait=cfg.transcription_max_wait,
                poll_interval=cfg.transcription_poll_interval,
            )
        else:
            self._transcription = NullTranscriptionService()

        self._formatter = MessageBatchFormatter(
            transcription=self._transcription,
            max_items_per_chunk=cfg.max_items_per_chunk,
            max_product_images=cfg.max_product_images,
            image_detail=cfg.image_detail,
        )
        self._registry = ThreadRegistry(self._store, ttl=cfg.thread_ttl, max_age=cfg.thread_max_age)
        self._orchestrator = AssistantOrchestrator(
            registry=self._registry,
            gateway=self._gateway,
            formatter=self._formatter,
            transcription=self._transcription,
            notifier=self._notifier,
            config=OrchestratorConfig.from_settings(cfg),
        )

        self._tasks: List[PeriodicTask] = [
            PeriodicTask("thread-sweep", self._registry.sweep, cfg.thread_sweep_interval),
        ]
        if not isinstance(self._transcription, NullTranscriptionService):
            self._tasks.append(
                PeriodicTask(
                    "audio-discovery",
                    self._transcription.discover,
                    cfg.audio_discovery_interval,
                    run_immediately=True,
                )
            )

    @property
    def orchestrator(self) -> AssistantOrchestrator:
        return self._orchestrator

    @property
    def registry(self) -> ThreadRegistry:
        return self._registry

    @property
    def transcription(self) -> TranscriptionService:
        return self._transcription

    @property
    def tasks(self) -> List[PeriodicTask]:
        return list(self._tasks)

    def start(self) -> None:
        loaded = self._registry.load_all()
        for task in self._tasks:
            task.start()
        logger.info(
            "Assistant service started",
            extra={"extra": {"threads": loaded, "tasks": [t.name for t in self._tasks]}},
        )

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        self._transcription.shutdown()
        logger.info("Assistant service stopped")

    def __enter__(self) -> "AssistantService":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def generate_response(
        self,
        external_id: str,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        role: Union[ChatRole, str],
        product_info: Optional[Union[ProductInfo, Dict[str, Any]]] = None,
        force_regeneration: bool = False,
    ) -> str:
        """生成一条回复；空字符串表示无需回复。

        Raises:
            各种 domain.exceptions 中定义的异常
        """
        return self.generate(external_id, messages, role, product_info, force_regeneration).reply

    def generate(
        self,
        external_id: str,
        messages: Sequence[Union[Message, Dict[str, Any]]],
        role: Union[ChatRole, str],
        product_info: Optional[Union[ProductInfo, Dict[str, Any]]] = None,
        force_regeneration: bool = False,
    ) -> OrchestrationResult:
        try:
            return self._orchestrator.generate(
                external_id,
                messages,
                role,
                product_info=product_info,
                options=GenerateOptions(force_regeneration=force_regeneration),
            )
        except Exception as e:
            logger.error(f"Generate failed: {e}", extra={"extra": {
                "external_id": external_id,
                "error": str(e),
            }})
            raise

    def discover(self) -> int:
        return self._transcription.discover()

    def get_thread_stats(self) -> ThreadStats:
        return self._registry.stats()

    def status(self) -> Dict[str, Any]:
        return {
            "threads": self._registry.stats().to_dict(),
            "tasks": [task.status() for task in self._tasks],
        }


def create_service(
    audio_source: Optional[AudioSource] = None,
    notifier: Optional[Notifier] = None,
    config=None,
) -> AssistantService:
    """按全局配置创建服务实例；调用方负责 start()/stop()。"""

    service = AssistantService(config=config, audio_source=audio_source, notifier=notifier)
    logger.log(logging.DEBUG, "Assistant service created")
    return service
