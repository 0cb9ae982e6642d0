"""语义意图闸门（IntentGate）。

对每条用户消息判断是否应当走工具路径：

    similarity = cosine(embed(message), prototype(toolID))
    trigger    = similarity >= threshold

阈值是全局常量，所有工具共用（简化处理，未做按工具调参）。
任何一步失败（未注册工具、嵌入失败、维度不一致）都按“不触发”处理。
"""

import logging
from typing import Optional

import numpy as np

from petal_core.config.settings import settings
from petal_core.domain.exceptions import EmbeddingUnavailable
from petal_core.infrastructure.logging.logger import get_logger
from petal_core.nlp.embedding import EmbeddingFunction, embed_text
from petal_core.nlp.exemplars import ExemplarStore


logger = get_logger("nlp")


def cosine_similarity(a, b) -> float:
    """(a·b)/(‖a‖·‖b‖)，任一向量模为 0 时返回 0。"""

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector shapes differ: {va.shape} vs {vb.shape}")
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(va, vb) / (na * nb))
    # 浮点误差可能略微越界
    return max(-1.0, min(1.0, sim))


class IntentGate:
    def __init__(
        self,
        store: ExemplarStore,
        embedding: EmbeddingFunction,
        threshold: Optional[float] = None,
    ):
        self._store = store
        self._embedding = embedding
        self.threshold = settings.tool_trigger_threshold if threshold is None else threshold

    @property
    def store(self) -> ExemplarStore:
        return self._store

    def similarity(self, message: str, tool_id: str) -> Optional[float]:
        """返回消息与工具原型的相似度，无法计算时返回 None。"""

        try:
            return self._similarity(embed_text(self._embedding, message), tool_id)
        except EmbeddingUnavailable as exc:
            logger.warning("Embedding unavailable, gate fails closed", extra={"extra": {"error": exc.message}})
            return None

    def should_use_tool(self, message: str, tool_id: str) -> bool:
        sim = self.similarity(message, tool_id)
        return sim is not None and sim >= self.threshold

    def should_use_any_tool(self, message: str) -> bool:
        return self.matching_tool(message) is not None

    def matching_tool(self, message: str) -> Optional[str]:
        """返回第一个达到阈值的 toolID（消息只嵌入一次）。

        单个工具的原型计算失败只让该工具不触发，其余工具照常判断。
        """

        try:
            vec = embed_text(self._embedding, message)
        except EmbeddingUnavailable as exc:
            logger.warning("Embedding unavailable, gate fails closed", extra={"extra": {"error": exc.message}})
            return None
        for tool_id in self._store.tool_ids:
            try:
                sim = self._similarity(vec, tool_id)
            except EmbeddingUnavailable as exc:
                logger.warning(
                    "Prototype unavailable, tool skipped",
                    extra={"extra": {"tool_id": tool_id, "error": exc.message}},
                )
                continue
            if sim is not None and sim >= self.threshold:
                return tool_id
        return None

    def _similarity(self, vec: np.ndarray, tool_id: str) -> Optional[float]:
        prototype = self._store.prototype(tool_id)
        if prototype is None:
            return None
        try:
            sim = cosine_similarity(vec, prototype)
        except ValueError as exc:
            logger.warning(
                "Embedding dimension mismatch, gate fails closed",
                extra={"extra": {"tool_id": tool_id, "error": str(exc)}},
            )
            return None
        logger.log(
            logging.DEBUG,
            "Gate similarity",
            extra={"extra": {"tool_id": tool_id, "similarity": round(sim, 4), "threshold": self.threshold}},
        )
        return sim
