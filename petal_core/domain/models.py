"""统一的对话与流式数据模型。

本模块定义了编排层在不同后端之间共享的标准数据结构：

- ChatTurn: 对话中的一条消息（user/assistant/system），带生命周期状态。
- StreamChunk: 后端流式输出的一个分片，支持 delta 与 cumulative 两种风格。
- TurnUpdate: 对话更新推送给观察者的事件。

所有后端适配器（CloudApiAdapter、LocalServerAdapter、LocalInferenceAdapter）
只产出 StreamChunk / 文本，永远不直接修改 ChatTurn。
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, TYPE_CHECKING
from uuid import uuid4

from petal_core.domain.exceptions import ValidationError

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from petal_core.tools.definitions import ToolCall


class Participant(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnState(str, Enum):
    """ChatTurn 生命周期状态。"""

    CREATED = "created"
    PENDING = "pending"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    ERRORED = "errored"


_ALLOWED_TRANSITIONS = {
    TurnState.CREATED: {TurnState.PENDING, TurnState.FINALIZED, TurnState.ERRORED},
    TurnState.PENDING: {TurnState.STREAMING, TurnState.FINALIZED, TurnState.ERRORED},
    TurnState.STREAMING: {TurnState.FINALIZED, TurnState.ERRORED},
    TurnState.FINALIZED: set(),
    TurnState.ERRORED: set(),
}


class ChunkStyle(str, Enum):
    """后端的分片投递风格。

    - DELTA: payload 只包含新文本。
    - CUMULATIVE: payload 是到目前为止生成的完整文本。
    """

    DELTA = "delta"
    CUMULATIVE = "cumulative"


@dataclass
class ChatTurn:
    """对话中的一轮消息。

    - content: 可变文本缓冲区，只允许 Orchestrator / StreamAssembler 修改。
    - tool_call_name: 本轮触发的工具名（若有）。
    - pending: UI 使用的“等待中”标记，收到第一个分片时清除。
    - meta: 附加元数据（backend、trace_id 等），不发给后端。
    """

    participant: Participant
    content: str = ""
    id: str = field(default_factory=lambda: f"t-{uuid4().hex}")
    tool_call_name: Optional[str] = None
    state: TurnState = TurnState.CREATED
    pending: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in (TurnState.FINALIZED, TurnState.ERRORED)

    def transition(self, target: TurnState) -> None:
        """迁移生命周期状态，非法迁移抛出 ValidationError。"""

        if target == self.state:
            return
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValidationError(
                code="INVALID_TURN_TRANSITION",
                message=f"Cannot move turn {self.id} from {self.state.value} to {target.value}",
            )
        self.state = target
        if target != TurnState.PENDING:
            self.pending = False

    def snapshot(self) -> "ChatTurn":
        """返回一份独立拷贝，供并发读取（例如 UI 展示）。"""

        return replace(self, meta=dict(self.meta))


@dataclass
class StreamChunk:
    """流式输出中的一个分片。

    tool_call 携带后端发起的结构化工具调用（名称 + 参数）；
    只有名称时使用 tool_call_name。
    """

    payload: str = ""
    is_final: bool = False
    tool_call_name: Optional[str] = None
    style: ChunkStyle = ChunkStyle.DELTA
    tool_call: Optional["ToolCall"] = None

    @property
    def resolved_tool_name(self) -> Optional[str]:
        if self.tool_call_name:
            return self.tool_call_name
        if self.tool_call is not None:
            return self.tool_call.name
        return None


@dataclass
class TurnUpdate:
    """推送给观察者的对话更新事件。

    kind:
        - "added": 新增一轮消息。
        - "updated": 某轮消息内容或状态发生变化。
        - "removed": 某轮消息被移除（错误回滚）。
        - "reset": 对话被清空（新会话 / 切换后端）。
        - "error": 本次发送失败，error 字段携带异常。
    """

    kind: Literal["added", "updated", "removed", "reset", "error"]
    turn: Optional[ChatTurn] = None
    delta_text: Optional[str] = None
    error: Optional[BaseException] = None
