"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在编排层或 UI 层做统一捕获与用户提示。

传播策略：
- 配置类错误（EmptyExemplarSet）在启动时直接抛出，不可恢复。
- 运行时后端错误（BackendUnavailable / GenerationFailed / StreamInterrupted）
  在 Orchestrator 边界被捕获：移除待定回复并暴露可观察的错误状态。
- 本层不做自动重试，重试策略属于具体的后端实现。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "BACKEND_UNAVAILABLE"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 backend、tool_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class EmptyExemplarSet(ValidationError):
    """注册工具时示例短语列表为空（启动期致命错误）。"""


class UnknownTool(BusinessError):
    """请求了未注册的 toolID。"""


class EmbeddingUnavailable(BusinessError):
    """嵌入函数不可用或计算失败，IntentGate 会按“不触发”处理。"""


class BackendUnavailable(BusinessError):
    """后端不可达，例如连接失败、超时、本地引擎未加载等。"""


class RateLimitError(BackendUnavailable):
    """后端限流错误，由具体后端实现负责重试/退避策略。"""


class GenerationFailed(BusinessError):
    """后端返回错误响应或生成过程失败。"""


class StreamInterrupted(BusinessError):
    """流式输出在中途中断。"""


class ToolExecutionFailed(BusinessError):
    """外部工具执行失败，以文本形式写入回复而不是向上抛出。"""
