"""对话编排器（Orchestrator）。

把 IntentGate、BackendAdapter、StreamAssembler 组合成“每条消息一次”的请求/响应周期：

1. 追加 user turn，再追加处于 Pending 的 assistant turn。
2. IntentGate 判断本条消息是否进入工具触发模式。
3. 按 streaming 标志调用当前后端的 stream / complete，结果交给 StreamAssembler。
4. 任何失败都回滚：移除待定的 assistant turn，记录可观察的错误，不改动更早的历史。

后端/模型的切换由外部显式驱动，切换时清空对话历史。
"""

import logging
import threading
import time
from typing import Callable, Iterator, List, Optional, Sequence
from uuid import uuid4

from petal_core.backends import BackendAdapter, BackendKind, InferenceEngine, create_backend
from petal_core.config.exemplars import load_exemplars
from petal_core.config.settings import settings
from petal_core.domain.conversation import ConversationHistory, TurnObserver
from petal_core.domain.exceptions import BusinessError, GenerationFailed, ValidationError
from petal_core.domain.models import ChatTurn, Participant, TurnState, TurnUpdate
from petal_core.infrastructure.logging.logger import log_event
from petal_core.nlp.embedding import BagOfWordsEmbedding, EmbeddingFunction
from petal_core.nlp.exemplars import ExemplarStore
from petal_core.nlp.intent_gate import IntentGate
from petal_core.prompts import load_system_prompt
from petal_core.streaming.assembler import StreamAssembler
from petal_core.tools.executor import ToolExecutor


BackendFactory = Callable[[BackendKind, Optional[str]], BackendAdapter]


def _default_factory(kind: BackendKind, model: Optional[str]) -> BackendAdapter:
    return create_backend(kind, model=model)


class Orchestrator:
    def __init__(
        self,
        backend: BackendAdapter,
        gate: Optional[IntentGate] = None,
        tool_executor: Optional[ToolExecutor] = None,
        history: Optional[ConversationHistory] = None,
        system_prompt: str = "",
        max_context_messages: Optional[int] = None,
        backend_factory: Optional[BackendFactory] = None,
    ):
        self._backend = backend
        self._gate = gate
        self._tool_executor = tool_executor
        self._history = history or ConversationHistory()
        self._system_prompt = system_prompt
        self._max_context = max_context_messages or getattr(settings, "max_context_messages", 20)
        self._backend_factory = backend_factory or _default_factory
        self._send_lock = threading.Lock()

        self.busy = False
        self.is_processing_tool = False
        self.error: Optional[BaseException] = None

    # ---- 状态 ----

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def backend(self) -> BackendAdapter:
        return self._backend

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def subscribe(self, observer: TurnObserver) -> Callable[[], None]:
        return self._history.subscribe(observer)

    # ---- 会话管理 ----

    def stop(self) -> None:
        """清除错误状态。

        已经发出的后端调用不会被取消，其结果仍会写入当前 turn（或在出错时被回滚）。
        """

        self.error = None

    def start_new_chat(self) -> None:
        self.stop()
        self._history.reset()

    def switch_backend(self, backend: "BackendAdapter | BackendKind | str", model: Optional[str] = None) -> BackendAdapter:
        """切换当前后端并开始新会话。

        backend 可以是现成的适配器实例，也可以是变体标签（由 backend_factory 创建）。
        """

        if isinstance(backend, (BackendKind, str)):
            backend = self._backend_factory(BackendKind(backend), model)
        previous = self._backend.name
        self._backend = backend
        self.start_new_chat()
        log_event(logging.INFO, "Switched backend", {}, previous=previous, current=backend.name)
        return backend

    def select_model(self, model: str) -> BackendAdapter:
        """更换当前后端变体下的模型，同样会开始新会话。"""

        return self.switch_backend(self._backend.kind, model=model)

    # ---- 消息处理 ----

    def send(self, text: str, streaming: bool = True) -> Optional[ChatTurn]:
        """发送一条消息，返回定稿的 assistant turn；失败时返回 None，错误见 self.error。"""

        final: Optional[ChatTurn] = None
        for update in self.send_iter(text, streaming=streaming):
            if update.kind == "updated" and update.turn is not None and update.turn.state == TurnState.FINALIZED:
                final = update.turn
        return final

    def send_iter(self, text: str, streaming: bool = True) -> Iterator[TurnUpdate]:
        """发送一条消息，按修改发生的顺序产出 TurnUpdate。"""

        if not self._send_lock.acquire(blocking=False):
            raise ValidationError(code="CONVERSATION_BUSY", message="A message is already being generated")
        start_time = time.time()
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "backend": self._backend.name}
        assistant: Optional[ChatTurn] = None
        assembler: Optional[StreamAssembler] = None
        try:
            self.error = None
            self.busy = True

            user = ChatTurn(participant=Participant.USER, content=text)
            user.transition(TurnState.FINALIZED)
            yield self._history.append(user)

            context = self._context_for_backend()

            assistant = ChatTurn(participant=Participant.ASSISTANT, meta={"backend": self._backend.name})
            yield self._history.append(assistant)
            with self._history.lock():
                assistant.transition(TurnState.PENDING)
                assistant.pending = True
                pending_update = self._history.touch(assistant)
            yield pending_update

            tool_id = self._gate.matching_tool(text) if self._gate else None
            tool_mode = tool_id is not None
            self.is_processing_tool = tool_mode
            log_event(logging.INFO, "Gate evaluated", log_ctx, text=text, tool_mode=tool_mode, tool_id=tool_id)
            if tool_mode:
                with self._history.lock():
                    assistant.meta["gate_tool_id"] = tool_id
                    gate_update = self._history.touch(assistant)
                yield gate_update

            assembler = StreamAssembler(self._history, assistant, tool_mode=tool_mode, log_ctx=log_ctx)
            tools = self._tool_executor.tool_defs if (tool_mode and self._tool_executor) else None

            log_event(
                logging.INFO,
                "Calling backend (stream)" if (streaming or tool_mode) else "Calling backend",
                log_ctx,
                message_count=len(context),
                tools=len(tools or []),
            )
            # 工具名只会出现在分片上，所以工具触发模式总是走 stream
            if streaming or tool_mode:
                yield from assembler.consume(self._backend.stream(context, tools))
                resolved = self._resolve_tool_call(assembler, log_ctx) if tool_mode else None
                yield assembler.finish(resolved)
            else:
                yield assembler.complete_with(self._backend.complete(context))

            log_event(
                logging.INFO,
                "Completed send",
                log_ctx,
                elapsed_seconds=round(time.time() - start_time, 2),
                assistant_turn_id=assistant.id,
            )
        except GeneratorExit:
            # 调用方提前关闭了迭代器：未定稿的回复回滚，但不再产出事件
            if assistant is not None and assistant.state != TurnState.FINALIZED:
                for _ in self._rollback(assistant, assembler, None, log_ctx):
                    pass
            raise
        except Exception as exc:
            if assistant is not None and not self._in_history(assistant):
                # 会话已被重置或切换，本次发送视为放弃，不记录错误
                if assembler is not None:
                    assembler.fail()
                elif not assistant.is_terminal:
                    assistant.transition(TurnState.ERRORED)
                log_event(logging.WARNING, "Send abandoned: turn left history", log_ctx, error=str(exc))
                return
            err = exc if isinstance(exc, BusinessError) else GenerationFailed(code="GENERATION_FAILED", message=str(exc))
            yield from self._rollback(assistant, assembler, err, log_ctx)
        finally:
            self.busy = False
            self.is_processing_tool = False
            self._send_lock.release()

    # ---- 内部 ----

    def _context_for_backend(self) -> List[ChatTurn]:
        turns: Sequence[ChatTurn] = [t for t in self._history.snapshot() if t.state == TurnState.FINALIZED]
        if len(turns) > self._max_context:
            turns = turns[-self._max_context:]
        context: List[ChatTurn] = []
        if self._system_prompt:
            system = ChatTurn(participant=Participant.SYSTEM, content=self._system_prompt)
            system.transition(TurnState.FINALIZED)
            context.append(system)
        context.extend(turns)
        return context

    def _resolve_tool_call(self, assembler: StreamAssembler, log_ctx: dict) -> Optional[str]:
        call = assembler.pending_tool_call
        if call is None or self._tool_executor is None:
            return None
        log_event(logging.INFO, "Executing tool", log_ctx, tool=call.name, call_id=call.id)
        return self._tool_executor.execute(call).content

    def _in_history(self, turn: ChatTurn) -> bool:
        return any(t.id == turn.id for t in self._history.snapshot())

    def _rollback(
        self,
        assistant: Optional[ChatTurn],
        assembler: Optional[StreamAssembler],
        err: Optional[BaseException],
        log_ctx: dict,
    ) -> Iterator[TurnUpdate]:
        if assembler is not None:
            assembler.fail()
        elif assistant is not None and not assistant.is_terminal:
            with self._history.lock():
                assistant.transition(TurnState.ERRORED)
        if assistant is not None and self._in_history(assistant):
            yield self._history.remove(assistant)
        if err is None:
            log_event(logging.WARNING, "Send abandoned by caller", log_ctx)
            return
        self.error = err
        log_event(
            logging.ERROR,
            "Send failed",
            log_ctx,
            error_code=getattr(err, "code", type(err).__name__),
            error=str(err),
        )
        yield self._history.publish_error(err)


def create_default_orchestrator(
    engine: Optional[InferenceEngine] = None,
    embedding: Optional[EmbeddingFunction] = None,
    tool_executor: Optional[ToolExecutor] = None,
) -> Orchestrator:
    """按 settings 组装一个可用的 Orchestrator。

    embedding 缺省时使用基于示例词表的离线词袋嵌入。
    """

    exemplars = load_exemplars()
    embedding = embedding or BagOfWordsEmbedding.from_exemplars(exemplars)
    store = ExemplarStore(embedding, exemplars)
    gate = IntentGate(store, embedding)

    def _factory(kind: BackendKind, model: Optional[str]) -> BackendAdapter:
        return create_backend(kind, model=model, engine=engine)

    return Orchestrator(
        backend=_factory(BackendKind(settings.default_backend), None),
        gate=gate,
        tool_executor=tool_executor,
        system_prompt=load_system_prompt(),
        backend_factory=_factory,
    )
