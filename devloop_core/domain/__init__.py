"""领域层模型与协议。

包含：
- models: Turn / Part / StreamEvent / ChatRequest 等统一模型。
- conversation: 单个会话的 ConversationState 及其顺序约束。
- exceptions: 业务异常类型定义（含退出码）。
"""
