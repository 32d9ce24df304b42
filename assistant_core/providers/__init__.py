"""远端 Assistants API 集成层。

该包下的模块负责：
- 定义网关抽象接口 (base)。
- 维护 Provider 端点配置 (registry)。
- 提供具体实现 (openai_client)。
"""

from typing import Literal, Optional

from assistant_core.config.settings import settings
from assistant_core.providers.base import AssistantGateway
from assistant_core.providers.openai_client import OpenAIAssistantsClient
from assistant_core.providers.registry import get_provider_config


def create_gateway(name: Optional[str] = None, config=None) -> AssistantGateway:
    """根据名称创建网关实例，config 为空时使用全局配置。"""

    cfg = config or settings
    provider = get_provider_config(name or "openai")
    if provider.name == "openai":
        return OpenAIAssistantsClient(cfg)
    raise KeyError(f"No gateway implementation for provider {provider.name!r}")


DefaultProviderName = Literal["openai"]
