"""工具示例短语存储（ExemplarStore）。

每个 toolID 对应一组有序的示例短语，首次请求时计算并缓存原型向量：

    prototype = mean( normalize(embed(p)) for p in sorted(phrases) )

- 先对每个短语向量做 L2 归一化，避免长短语主导原型；零向量保持为零。
- 按短语排序后再求和，保证结果对示例顺序的任意排列逐位一致。

缓存填充按 key 加锁：同一 toolID 并发首次访问只会计算一次，
不同 toolID 之间互不阻塞。
"""

import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from petal_core.domain.exceptions import EmbeddingUnavailable, EmptyExemplarSet, UnknownTool, ValidationError
from petal_core.infrastructure.logging.logger import get_logger
from petal_core.nlp.embedding import EmbeddingFunction, embed_text


logger = get_logger("nlp")


class ExemplarStore:
    def __init__(self, embedding: EmbeddingFunction, exemplars: Optional[Mapping[str, Sequence[str]]] = None):
        self._embedding = embedding
        self._exemplars: Dict[str, tuple] = {}
        self._cache: Dict[str, np.ndarray] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        for tool_id, phrases in (exemplars or {}).items():
            self.register(tool_id, phrases)

    @property
    def tool_ids(self) -> List[str]:
        return list(self._exemplars)

    def exemplars(self, tool_id: str) -> List[str]:
        try:
            return list(self._exemplars[tool_id])
        except KeyError:
            raise UnknownTool(code="UNKNOWN_TOOL", message=f"Unknown tool: {tool_id!r}", http_status=404)

    def register(self, tool_id: str, phrases: Sequence[str]) -> None:
        """注册一个工具的示例短语，空列表（或全是空白短语）直接拒绝。"""

        cleaned = tuple(p.strip() for p in phrases if p and p.strip())
        if not cleaned:
            raise EmptyExemplarSet(
                code="EMPTY_EXEMPLAR_SET",
                message=f"Tool {tool_id!r} has no exemplar phrases",
                tool_id=tool_id,
            )
        with self._registry_lock:
            if tool_id in self._exemplars:
                raise ValidationError(code="DUPLICATE_TOOL", message=f"Tool {tool_id!r} already registered")
            self._exemplars[tool_id] = cleaned
            self._key_locks[tool_id] = threading.Lock()

    def prototype(self, tool_id: str) -> Optional[np.ndarray]:
        """返回 toolID 的原型向量，未注册时返回 None。

        嵌入失败时抛出 EmbeddingUnavailable，且不会写入缓存。
        """

        cached = self._cache.get(tool_id)
        if cached is not None:
            return cached
        lock = self._key_locks.get(tool_id)
        if lock is None:
            return None
        with lock:
            cached = self._cache.get(tool_id)
            if cached is not None:
                return cached
            vec = self._compute(tool_id, self._exemplars[tool_id])
            self._cache[tool_id] = vec
            return vec

    def warm(self) -> None:
        """预先计算所有原型向量。"""

        for tool_id in self.tool_ids:
            self.prototype(tool_id)

    def _compute(self, tool_id: str, phrases: Sequence[str]) -> np.ndarray:
        vectors = []
        for phrase in sorted(phrases):
            vec = embed_text(self._embedding, phrase)
            norm = float(np.linalg.norm(vec))
            vectors.append(vec / norm if norm > 0 else vec)
        if len({v.shape for v in vectors}) != 1:
            raise EmbeddingUnavailable(
                code="EMBEDDING_DIMENSION_MISMATCH",
                message=f"Exemplar embeddings for {tool_id!r} have inconsistent dimensions",
            )
        prototype = np.vstack(vectors).sum(axis=0) / len(vectors)
        prototype.setflags(write=False)
        logger.log(
            logging.INFO,
            "Computed tool prototype",
            extra={"extra": {"tool_id": tool_id, "exemplars": len(vectors), "dimension": int(prototype.size)}},
        )
        return prototype
