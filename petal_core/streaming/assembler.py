"""流式组装器（StreamAssembler）。

把后端的分片序列增量地组装成一条 assistant 回复，并驱动该 turn 的生命周期：

    Pending --首个分片--> Streaming --完成/is_final--> Finalized
       |                     |
       +------ 出错 ---------+--> Errored（随后由 Orchestrator 从历史中移除）

分片归一化：
- delta 分片：payload 即新增文本。
- cumulative 分片：新增文本为 payload[previous_length:]，只做字符串切片，
  不回头重新解码整段历史。
previous_length 是本 turn 已交付的总长度，只在归一化时加锁修改。

工具触发模式下不做增量写入：分片上的工具名立即记录，正文在后端给出
最终结果时一次性整体替换；空 payload 的中间分片直接忽略。
"""

import logging
import threading
from typing import Iterable, Iterator, List, Optional

from petal_core.domain.conversation import ConversationHistory
from petal_core.domain.exceptions import BusinessError, GenerationFailed, StreamInterrupted
from petal_core.domain.models import ChatTurn, ChunkStyle, StreamChunk, TurnState, TurnUpdate
from petal_core.infrastructure.logging.logger import log_event
from petal_core.tools.definitions import ToolCall


def normalize_delta(chunk: StreamChunk, previous_length: int) -> str:
    """根据已交付长度计算分片的新增文本。"""

    if chunk.style == ChunkStyle.CUMULATIVE:
        return chunk.payload[previous_length:]
    return chunk.payload


class StreamAssembler:
    def __init__(
        self,
        history: ConversationHistory,
        turn: ChatTurn,
        tool_mode: bool = False,
        log_ctx: Optional[dict] = None,
    ):
        self._history = history
        self._turn = turn
        self.tool_mode = tool_mode
        self._log_ctx = dict(log_ctx or {})
        self._length_lock = threading.Lock()
        self.previous_length = 0
        self.chunks_seen = 0
        self.pending_tool_call: Optional[ToolCall] = None
        self._tool_parts: List[str] = []
        self._content_replaced = False

    @property
    def turn(self) -> ChatTurn:
        return self._turn

    # ---- 归一化 ----

    def normalize(self, chunk: StreamChunk) -> str:
        with self._length_lock:
            delta = normalize_delta(chunk, self.previous_length)
            self.previous_length += len(delta)
        return delta

    # ---- 驱动 ----

    def consume(self, chunks: Iterable[StreamChunk]) -> Iterator[TurnUpdate]:
        """消费整个分片序列，按顺序产出 TurnUpdate。

        序列出错时把 turn 标记为 Errored 并抛出异常；正常结束后由调用方调用 finish()。
        """

        iterator = iter(chunks)
        while True:
            try:
                chunk = next(iterator)
            except StopIteration:
                return
            except Exception as exc:
                raise self._interrupt(exc)
            yield from self.apply(chunk)
            if chunk.is_final:
                return

    def apply(self, chunk: StreamChunk) -> List[TurnUpdate]:
        """应用单个分片，返回由此产生的更新（可能为空）。"""

        updates: List[TurnUpdate] = []
        with self._history.lock():
            first = self.chunks_seen == 0
            self.chunks_seen += 1
            if first:
                self._on_first_chunk()

            tool_name = chunk.resolved_tool_name
            if tool_name and tool_name != self._turn.tool_call_name:
                self._turn.tool_call_name = tool_name
                updates.append(self._history.touch(self._turn))
            if chunk.tool_call is not None and chunk.tool_call.name:
                self.pending_tool_call = chunk.tool_call

            delta = self.normalize(chunk) if chunk.payload else ""
            if not delta:
                if first and not self.tool_mode:
                    updates.append(self._history.touch(self._turn))
            elif self.tool_mode:
                self._tool_parts.append(delta)
            else:
                self._turn.content += delta
                updates.append(self._history.touch(self._turn, delta_text=delta))
        return updates

    def complete_with(self, text: str) -> TurnUpdate:
        """非流式路径：一次性写入完整回复并定稿。"""

        with self._history.lock():
            self._turn.pending = False
            self._replace_content(text)
            self.previous_length = len(text)
            self._turn.transition(TurnState.FINALIZED)
            return self._history.touch(self._turn)

    def finish(self, resolved_text: Optional[str] = None) -> TurnUpdate:
        """流结束：工具模式下整体替换正文一次，随后迁移到 Finalized。"""

        with self._history.lock():
            if self.tool_mode:
                text = resolved_text if resolved_text is not None else "".join(self._tool_parts)
                self._replace_content(text)
            elif resolved_text is not None:
                self._replace_content(resolved_text)
            self._turn.transition(TurnState.FINALIZED)
            update = self._history.touch(self._turn)
        log_event(
            logging.INFO,
            "Turn finalized",
            self._log_ctx,
            turn_id=self._turn.id,
            chunks=self.chunks_seen,
            chars=len(self._turn.content),
            tool_mode=self.tool_mode,
            tool=self._turn.tool_call_name,
        )
        return update

    def fail(self) -> None:
        with self._history.lock():
            if not self._turn.is_terminal:
                self._turn.transition(TurnState.ERRORED)

    # ---- 内部 ----

    def _on_first_chunk(self) -> None:
        self._turn.pending = False
        if not self.tool_mode and self._turn.state == TurnState.PENDING:
            self._turn.transition(TurnState.STREAMING)

    def _replace_content(self, text: str) -> None:
        if self._content_replaced:
            return
        self._turn.content = text
        self._content_replaced = True

    def _interrupt(self, exc: Exception) -> BusinessError:
        self.fail()
        log_event(
            logging.WARNING,
            "Stream failed",
            self._log_ctx,
            turn_id=self._turn.id,
            chunks=self.chunks_seen,
            delivered=self.previous_length,
            error=str(exc),
        )
        if isinstance(exc, StreamInterrupted):
            return exc
        if self.chunks_seen == 0:
            if isinstance(exc, BusinessError):
                return exc
            return GenerationFailed(code="GENERATION_FAILED", message=str(exc))
        err = StreamInterrupted(
            code="STREAM_INTERRUPTED",
            message=f"Stream interrupted after {self.chunks_seen} chunks: {exc}",
            delivered=self.previous_length,
        )
        err.__cause__ = exc
        return err
