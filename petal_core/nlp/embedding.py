"""嵌入函数（EmbeddingFunction）。

嵌入算法本身是可插拔能力，由宿主提供。本模块定义协议，并给出两个实现：

- BagOfWordsEmbedding: 固定词表的词袋向量，纯离线、确定性，适合作为默认实现与测试桩。
- OllamaEmbedding: 调用本地 Ollama 的 /api/embeddings 接口。

所有调用都应通过 embed_text() 完成，它把任何失败统一转换为 EmbeddingUnavailable，
并保证返回一维、有限的 float64 向量。
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import httpx
import numpy as np

from petal_core.config.settings import settings
from petal_core.domain.exceptions import EmbeddingUnavailable


_TOKEN_RE = re.compile(r"[a-z0-9']+")


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


class EmbeddingFunction(Protocol):
    """嵌入函数协议。

    - name: 名称，用于日志。
    - embed(text): 将字符串映射为固定维度的向量；相同输入必须得到相同输出。
    """

    name: str

    def embed(self, text: str) -> Sequence[float]:
        ...


def embed_text(fn: EmbeddingFunction, text: str) -> np.ndarray:
    """调用嵌入函数并做统一校验。"""

    try:
        raw = fn.embed(text)
    except EmbeddingUnavailable:
        raise
    except Exception as exc:
        raise EmbeddingUnavailable(
            code="EMBEDDING_UNAVAILABLE",
            message=f"Embedding function {getattr(fn, 'name', fn)!r} failed: {exc}",
        ) from exc
    vec = np.asarray(raw, dtype=np.float64)
    if vec.ndim != 1 or vec.size == 0 or not np.all(np.isfinite(vec)):
        raise EmbeddingUnavailable(
            code="EMBEDDING_UNAVAILABLE",
            message=f"Embedding function {getattr(fn, 'name', fn)!r} returned an invalid vector",
        )
    return vec


class BagOfWordsEmbedding:
    """固定词表的词袋嵌入。

    维度 D 等于词表大小，词表外的词被忽略，因此与任何示例都不相关的消息
    会得到零向量（余弦相似度按 0 处理，不会触发工具）。
    """

    name = "bag-of-words"

    def __init__(self, vocabulary: Iterable[str]):
        words = sorted({w for w in vocabulary if w})
        self._index: Dict[str, int] = {w: i for i, w in enumerate(words)}

    @classmethod
    def from_exemplars(cls, exemplars: Mapping[str, Sequence[str]]) -> "BagOfWordsEmbedding":
        vocab = set()
        for phrases in exemplars.values():
            for phrase in phrases:
                vocab.update(tokenize(phrase))
        return cls(vocab)

    @property
    def dimension(self) -> int:
        return len(self._index)

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(max(self.dimension, 1), dtype=np.float64)
        for token in tokenize(text):
            idx = self._index.get(token)
            if idx is not None:
                vec[idx] += 1.0
        return vec


class OllamaEmbedding:
    """通过 Ollama /api/embeddings 计算嵌入。"""

    name = "ollama"

    def __init__(self, cfg=settings, model: Optional[str] = None):
        self._settings = cfg
        self._model = model or cfg.embedding_model

    def embed(self, text: str) -> np.ndarray:
        base = self._settings.local_server_url.rstrip("/")
        payload = {"model": self._model, "prompt": text}
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(f"{base}/api/embeddings", json=payload)
        except httpx.RequestError as e:
            raise EmbeddingUnavailable(code="EMBEDDING_UNAVAILABLE", message=str(e))
        if resp.status_code >= 400:
            raise EmbeddingUnavailable(
                code="EMBEDDING_UNAVAILABLE",
                message=f"embed failed: {resp.status_code}: {resp.text}",
                http_status=resp.status_code,
            )
        data = resp.json()
        emb = data.get("embedding")
        if not emb and isinstance(data.get("data"), list) and data["data"]:
            emb = data["data"][0].get("embedding")
        if not emb:
            raise EmbeddingUnavailable(code="EMBEDDING_UNAVAILABLE", message="embedding missing from response")
        return np.array(emb, dtype=np.float64)
