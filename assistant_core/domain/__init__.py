"""领域层模型与协议。

包含：
- conversation: 消息、商品信息、线程映射模型及 KeyValueStore 抽象。
- models: Batch / RunRequest / TranscriptionJob 等远端交互模型。
- exceptions: 业务异常类型定义。
- timeutils: UTC 时间与时间戳转换工具。
"""
