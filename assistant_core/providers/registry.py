"""Provider 与端点配置。

本模块集中维护远端 Assistants API 的固定参数（基础 URL、beta 头、转写模型等），
Settings 中的同名配置优先，未配置时回落到这里的默认值。"""

from dataclasses import dataclass, field
from typing import FrozenSet, Mapping


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    beta_header: str
    transcription_model: str
    transcription_filename: str = "audio.mp3"
    # 视为网络类瞬时故障、按退避重试的 HTTP 状态码
    retryable_statuses: FrozenSet[int] = field(default_factory=lambda: frozenset({502, 503, 504}))


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    beta_header="assistants=v2",
    transcription_model="whisper-1",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
