"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
时间类配置统一使用秒（float）。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ASSISTANT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except Exception as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class AssistantSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 远端 Assistants API ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    assistants_beta_header: str = Field(
        default="assistants=v2",
        description="OpenAI-Beta 请求头取值",
    )
    seller_assistant_id: Optional[str] = Field(default=None, description="卖家角色使用的 assistant ID")
    buyer_assistant_id: Optional[str] = Field(default=None, description="买家角色使用的 assistant ID")

    # ---- HTTP 与重试 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    max_retries: int = Field(default=3, ge=0, le=10, description="429/网络错误的最大重试次数")
    initial_retry_delay: float = Field(default=1.0, ge=0.0, description="指数退避的初始等待（秒）")
    max_retry_delay: float = Field(default=30.0, ge=0.0, description="单次退避等待上限（秒）")
    output_message_limit: int = Field(default=5, ge=1, le=100, description="run 完成后拉取的消息条数")

    # ---- Run 轮询 ----
    run_max_wait: float = Field(default=60.0, gt=0.0, description="等待 run 完成的最长时间（秒）")
    run_poll_interval: float = Field(default=1.0, gt=0.0, description="run 状态轮询间隔（秒）")

    # ---- 语音转写 ----
    transcription_enabled: bool = Field(default=True, description="是否启用语音转写")
    transcription_model: str = Field(default="whisper-1", description="转写模型")
    transcription_language: Optional[str] = Field(default=None, description="转写语言（ISO-639-1）")
    transcription_max_wait: float = Field(default=5.0, ge=0.0, description="生成回复前等待转写的上限（秒）")
    transcription_poll_interval: float = Field(default=0.5, gt=0.0, description="等待转写的轮询间隔（秒）")
    transcription_cache_size: int = Field(default=100, ge=1, description="转写缓存条目上限")
    transcription_workers: int = Field(default=2, ge=1, le=16, description="转写线程数")
    audio_discovery_interval: float = Field(default=10.0, gt=0.0, description="音频资源扫描间隔（秒）")

    # ---- 消息格式化 ----
    max_messages_new_thread: int = Field(default=50, ge=1, description="新线程最多发送的历史消息数")
    max_items_per_chunk: int = Field(default=10, ge=1, le=10, description="单条远端消息的最大内容项数")
    max_product_images: int = Field(default=5, ge=0, description="商品信息附带的最大图片数")
    image_detail: str = Field(default="auto", description="image_url 的 detail 取值")

    # ---- 线程注册表 ----
    thread_ttl: float = Field(default=24 * 60 * 60.0, gt=0.0, description="线程不活跃淘汰时间（秒）")
    thread_max_age: float = Field(default=30 * 24 * 60 * 60.0, gt=0.0, description="线程最大存活时间（秒）")
    thread_sweep_interval: float = Field(default=15 * 60.0, gt=0.0, description="淘汰扫描间隔（秒）")
    cursor_timestamp_tolerance: float = Field(
        default=60.0,
        ge=0.0,
        description="游标按时间戳回退匹配时允许的误差（秒）",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )

    def assistant_ids(self) -> Dict[str, Optional[str]]:
        """按角色返回 assistant ID 映射。"""

        return {
            "seller": self.seller_assistant_id,
            "buyer": self.buyer_assistant_id,
        }


settings = AssistantSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = AssistantSettings
