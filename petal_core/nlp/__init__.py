"""语义意图闸门（Semantic gate）。

- embedding: 嵌入函数协议与两个实现（离线词袋 / Ollama 嵌入接口）。
- exemplars: ExemplarStore，按 toolID 缓存原型向量。
- intent_gate: IntentGate，基于余弦相似度决定是否走工具路径。
"""

from petal_core.nlp.embedding import BagOfWordsEmbedding, EmbeddingFunction, OllamaEmbedding
from petal_core.nlp.exemplars import ExemplarStore
from petal_core.nlp.intent_gate import IntentGate, cosine_similarity

__all__ = [
    "BagOfWordsEmbedding",
    "EmbeddingFunction",
    "OllamaEmbedding",
    "ExemplarStore",
    "IntentGate",
    "cosine_similarity",
]
