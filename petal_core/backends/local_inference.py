"""进程内推理后端适配器（LocalInference 变体）。

模型权重下载/加载与显存配置不在本层范围内，宿主注入一个已加载的 InferenceEngine。
引擎在生成过程中反复回调 on_progress，回调参数有两种：

- 完整的 token 序列（每次都包含到目前为止的全部 token）：适配器只解码
  previous_token_count 之后的新 token，产出 delta 风格分片；
- 到目前为止的完整文本：原样产出 cumulative 风格分片，由 StreamAssembler 归一化。

回调运行在后台线程上，分片通过有界队列交给消费端；队列满时回调阻塞（背压）。
"""

import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Union

from petal_core.backends.base import BackendKind, BackgroundStream, ensure_final, to_wire_messages
from petal_core.backends.registry import get_backend_config
from petal_core.config.settings import settings
from petal_core.domain.exceptions import BackendUnavailable, BusinessError, GenerationFailed
from petal_core.domain.models import ChatTurn, ChunkStyle, StreamChunk
from petal_core.infrastructure.logging.logger import logger
from petal_core.tools.definitions import ToolDef


Progress = Union[Sequence[int], str]
OnProgress = Callable[[Progress], bool]


class InferenceEngine(Protocol):
    """进程内推理引擎协议。

    - generate(): 执行一次生成，on_progress 返回 False 时应尽快停止；返回最终文本。
    - decode(): 把 token id 序列解码为文本。
    """

    def generate(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        on_progress: OnProgress,
    ) -> str:
        ...

    def decode(self, tokens: Sequence[int]) -> str:
        ...


class LocalInferenceAdapter:
    kind = BackendKind.LOCAL_INFERENCE

    def __init__(self, engine: Optional[InferenceEngine], cfg=settings, model: Optional[str] = None):
        self._engine = engine
        self._settings = cfg
        self.model = model or get_backend_config(self.kind, cfg).default_model

    @property
    def name(self) -> str:
        return f"local:{self.model}"

    def complete(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> str:
        engine = self._require_engine()
        try:
            return engine.generate(to_wire_messages(history), self._tool_schemas(tools), lambda _progress: True)
        except BusinessError:
            raise
        except Exception as exc:
            raise GenerationFailed(code="GENERATION_FAILED", message=str(exc), backend=self.name) from exc

    def stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> Iterable[StreamChunk]:
        engine = self._require_engine()
        messages = to_wire_messages(history)
        tool_schemas = self._tool_schemas(tools)

        def _produce(emit: Callable[[StreamChunk], bool]) -> None:
            lock = threading.Lock()
            previous_token_count = 0
            callbacks = 0

            def _on_progress(progress: Progress) -> bool:
                nonlocal previous_token_count, callbacks
                callbacks += 1
                if isinstance(progress, str):
                    return emit(StreamChunk(payload=progress, style=ChunkStyle.CUMULATIVE))
                with lock:
                    new_tokens = list(progress[previous_token_count:])
                    if not new_tokens:
                        return True
                    previous_token_count = len(progress)
                text = engine.decode(new_tokens)
                return emit(StreamChunk(payload=text, style=ChunkStyle.DELTA))

            engine.generate(messages, tool_schemas, _on_progress)
            logger.log(
                logging.INFO,
                "Local inference finished",
                extra={"extra": {"backend": self.name, "callbacks": callbacks, "tokens": previous_token_count}},
            )
            emit(StreamChunk(payload="", is_final=True))

        return ensure_final(BackgroundStream(_produce, maxsize=self._settings.stream_queue_size, name=self.name))

    def _require_engine(self) -> InferenceEngine:
        if self._engine is None:
            raise BackendUnavailable(
                code="BACKEND_UNAVAILABLE",
                message="Local inference engine is not loaded",
                backend=self.name,
            )
        return self._engine

    @staticmethod
    def _tool_schemas(tools: Optional[List[ToolDef]]) -> Optional[List[Dict[str, Any]]]:
        if not tools:
            return None
        return [t.to_function_schema() for t in tools]
