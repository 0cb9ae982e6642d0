"""后端集成层。

该包下的模块负责：
- 定义 BackendAdapter 抽象接口与变体标签 (base)。
- 维护各变体的连接与模型配置 (registry)。
- 提供三种具体实现 (cloud_client、local_server_client、local_inference)。
"""

from typing import Optional

from petal_core.config.settings import settings
from petal_core.backends.base import BackendAdapter, BackendKind
from petal_core.backends.cloud_client import CloudApiAdapter
from petal_core.backends.local_inference import InferenceEngine, LocalInferenceAdapter
from petal_core.backends.local_server_client import LocalServerAdapter


def create_backend(
    kind: Optional[BackendKind | str] = None,
    model: Optional[str] = None,
    engine: Optional[InferenceEngine] = None,
) -> BackendAdapter:
    """根据变体标签创建后端实例，默认取配置中的 default_backend。"""

    backend_kind = BackendKind(kind or getattr(settings, "default_backend", "cloud"))
    if backend_kind == BackendKind.LOCAL_SERVER:
        return LocalServerAdapter(settings, model=model)
    if backend_kind == BackendKind.LOCAL_INFERENCE:
        return LocalInferenceAdapter(engine, settings, model=model)
    return CloudApiAdapter(settings, model=model)


__all__ = [
    "BackendAdapter",
    "BackendKind",
    "CloudApiAdapter",
    "InferenceEngine",
    "LocalInferenceAdapter",
    "LocalServerAdapter",
    "create_backend",
]
