"""领域层模型与协议。

包含：
- models: 远端调用使用的 Part / Content / ChatRequest / ChatResult 等模型。
- conversation: Message / ChatSession / ChatHistory 以及 HistoryStore 抽象。
- exceptions: 业务异常类型定义。
"""
