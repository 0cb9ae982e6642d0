"""后端适配器（BackendAdapter）抽象。

上层 Orchestrator 不直接依赖具体后端的 SDK/HTTP 细节，而是依赖此协议：

- 三种变体：CloudAPI（远程生成服务）、LocalInference（进程内推理）、
  LocalServer（本机 HTTP 流式服务）。
- complete(history): 阻塞式返回完整文本。
- stream(history): 惰性、有限、不可重启的 StreamChunk 序列，最后一个分片 is_final=True。

切换激活的后端会清空对话历史（不同后端的上下文表示不兼容），这一点由 Orchestrator 保证。
"""

import queue
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from petal_core.domain.exceptions import BusinessError, GenerationFailed
from petal_core.domain.models import ChatTurn, StreamChunk
from petal_core.tools.definitions import ToolDef


class BackendKind(str, Enum):
    CLOUD_API = "cloud"
    LOCAL_INFERENCE = "local_inference"
    LOCAL_SERVER = "local_server"


class BackendAdapter(Protocol):
    """后端适配器协议。

    实现者需要提供：
    - kind: 变体标签。
    - name: 人类可读的身份字符串，仅用于日志。
    - model: 当前使用的模型名。
    """

    kind: BackendKind
    name: str
    model: str

    def complete(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> str:
        ...

    def stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> Iterable[StreamChunk]:
        ...


def to_wire_messages(history: Sequence[ChatTurn]) -> List[Dict[str, Any]]:
    """把 ChatTurn 序列转成后端通用的 {role, content} 列表，空内容的 turn 会被跳过。"""

    return [{"role": t.participant.value, "content": t.content} for t in history if t.content]


def ensure_final(chunks: Iterable[StreamChunk]) -> Iterator[StreamChunk]:
    """保证序列以 is_final=True 的分片结束，且 final 之后不再产出。"""

    for chunk in chunks:
        yield chunk
        if chunk.is_final:
            return
    yield StreamChunk(payload="", is_final=True)


_DONE = object()


class BackgroundStream:
    """在后台线程运行生产者，通过有界队列把分片交给消费者。

    生产者拿到 emit(chunk) 回调：队列满时阻塞（背压），消费者提前关闭后返回 False，
    生产者应据此停止生成。生产者抛出的异常会在消费端原样重新抛出。
    """

    def __init__(self, producer: Callable[[Callable[[StreamChunk], bool]], None], maxsize: int = 64, name: str = "backend-stream"):
        self._producer = producer
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._started = False

    def _put(self, item: Any) -> bool:
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _emit(self, chunk: StreamChunk) -> bool:
        return self._put(chunk)

    def _run(self) -> None:
        try:
            self._producer(self._emit)
        except BaseException as exc:
            self._put(exc)
            return
        self._put(_DONE)

    def __iter__(self) -> Iterator[StreamChunk]:
        if self._started:
            raise GenerationFailed(code="STREAM_NOT_RESTARTABLE", message="A stream can only be consumed once")
        self._started = True
        self._thread.start()
        try:
            while True:
                item = self._queue.get()
                if item is _DONE:
                    return
                if isinstance(item, BusinessError):
                    raise item
                if isinstance(item, BaseException):
                    raise GenerationFailed(code="GENERATION_FAILED", message=str(item)) from item
                yield item
        finally:
            self._closed.set()
