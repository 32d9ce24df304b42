"""Assistant Core 顶层包。

该包为大量长期存在的外部聊天会话驱动远端 Assistant：
线程映射与游标、语音转写协调、消息批次格式化、run 生命周期编排，
以及配置加载、结构化日志与持久化存储等能力。
"""

from assistant_core.api.service import AssistantService, create_service

__all__ = ["AssistantService", "create_service"]
