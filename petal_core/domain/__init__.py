"""领域层模型与协议。

包含：
- models: ChatTurn / StreamChunk / TurnUpdate 等统一模型。
- conversation: 对话历史 ConversationHistory（单写者、快照读取、更新订阅）。
- exceptions: 业务异常类型定义。
"""
