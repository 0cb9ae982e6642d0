"""对话历史（ConversationHistory）。

单写者约束：所有修改都经由本对象的方法，在同一把可重入锁下完成，
读取方通过 snapshot() 获得一致的拷贝。每次修改都会按发生顺序
推送 TurnUpdate 给订阅者。
"""

import logging
import threading
from typing import Callable, Iterator, List, Optional

from petal_core.domain.exceptions import ValidationError
from petal_core.domain.models import ChatTurn, TurnUpdate
from petal_core.infrastructure.logging.logger import logger


TurnObserver = Callable[[TurnUpdate], None]


class ConversationHistory:
    def __init__(self) -> None:
        self._turns: List[ChatTurn] = []
        self._lock = threading.RLock()
        self._observers: List[TurnObserver] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._turns)

    def __iter__(self) -> Iterator[ChatTurn]:
        return iter(self.snapshot())

    def subscribe(self, observer: TurnObserver) -> Callable[[], None]:
        """注册观察者，返回取消订阅函数。"""

        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def snapshot(self) -> List[ChatTurn]:
        with self._lock:
            return [t.snapshot() for t in self._turns]

    def last(self) -> Optional[ChatTurn]:
        with self._lock:
            return self._turns[-1].snapshot() if self._turns else None

    def append(self, turn: ChatTurn) -> TurnUpdate:
        with self._lock:
            self._turns.append(turn)
            return self._publish(TurnUpdate(kind="added", turn=turn.snapshot()))

    def touch(self, turn: ChatTurn, delta_text: Optional[str] = None) -> TurnUpdate:
        """在 turn 被原地修改后推送一次 updated 事件。"""

        with self._lock:
            self._require(turn)
            return self._publish(TurnUpdate(kind="updated", turn=turn.snapshot(), delta_text=delta_text))

    def remove(self, turn: ChatTurn) -> TurnUpdate:
        with self._lock:
            self._require(turn)
            self._turns = [t for t in self._turns if t.id != turn.id]
            return self._publish(TurnUpdate(kind="removed", turn=turn.snapshot()))

    def reset(self) -> TurnUpdate:
        with self._lock:
            dropped = len(self._turns)
            self._turns.clear()
            logger.log(logging.INFO, "Conversation reset", extra={"extra": {"dropped_turns": dropped}})
            return self._publish(TurnUpdate(kind="reset"))

    def publish_error(self, error: BaseException) -> TurnUpdate:
        with self._lock:
            return self._publish(TurnUpdate(kind="error", error=error))

    def lock(self) -> threading.RLock:
        """暴露写锁，供 StreamAssembler 在修改 turn 时持有。"""

        return self._lock

    def _require(self, turn: ChatTurn) -> None:
        if not any(t is turn for t in self._turns):
            raise ValidationError(code="TURN_NOT_IN_HISTORY", message=f"Turn {turn.id} is not in history")

    def _publish(self, update: TurnUpdate) -> TurnUpdate:
        for observer in list(self._observers):
            observer(update)
        return update
