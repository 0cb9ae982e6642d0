"""后端与模型配置。

本模块把“后端变体”与“具体连接参数”解耦：

- kind: 变体标签（cloud / local_inference / local_server）。
- base_url / default_model: 从 settings 读取，集中管理。

上层只关心变体标签，具体连哪个地址、用哪个模型由这里统一配置。"""

from dataclasses import dataclass
from typing import Dict, Optional

from petal_core.backends.base import BackendKind
from petal_core.config.settings import settings


@dataclass
class BackendConfig:
    """某个后端变体的整体配置。"""

    kind: BackendKind
    name: str
    base_url: Optional[str]
    default_model: str


def build_registry(cfg=settings) -> Dict[BackendKind, BackendConfig]:
    return {
        BackendKind.CLOUD_API: BackendConfig(
            kind=BackendKind.CLOUD_API,
            name="cloud",
            base_url=cfg.cloud_base_url,
            default_model=cfg.cloud_model,
        ),
        BackendKind.LOCAL_SERVER: BackendConfig(
            kind=BackendKind.LOCAL_SERVER,
            name="ollama",
            base_url=cfg.local_server_url,
            default_model=cfg.local_server_model,
        ),
        BackendKind.LOCAL_INFERENCE: BackendConfig(
            kind=BackendKind.LOCAL_INFERENCE,
            name="local-inference",
            base_url=None,
            default_model=cfg.local_inference_model,
        ),
    }


def get_backend_config(kind: BackendKind | str, cfg=settings) -> BackendConfig:
    """根据变体标签获取 BackendConfig，字符串不区分大小写。"""

    try:
        key = BackendKind(kind.lower() if isinstance(kind, str) else kind)
    except ValueError:
        raise KeyError(f"Unknown backend: {kind!r}")
    return build_registry(cfg)[key]
