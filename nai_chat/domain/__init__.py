"""领域层模型与协议。

包含：
- models: Message / GenerationSettings / ThinkModePolicy / Usage 等数据模型。
- conversation: 消息历史状态机（追加、续写合并）及 LLMConversation 协议。
- cancellation: 协作式取消信号 CancelToken。
- exceptions: 业务异常类型定义。
"""
