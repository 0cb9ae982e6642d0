"""配置管理模块。

配置来源按优先级：构造参数 > 环境变量 > .env > YAML 配置文件 > secrets 目录。
YAML 文件由 PETAL_CONFIG_FILE 指定，未指定时依次查找当前目录和项目根目录下的 config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Iterator, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_ENV_VAR = "PETAL_CONFIG_FILE"


def _config_candidates() -> Iterator[Path]:
    explicit = os.getenv(CONFIG_ENV_VAR)
    if explicit:
        # 显式指定时只认这一个文件
        yield Path(explicit).expanduser()
        return
    yield Path.cwd() / "config.yaml"
    yield Path(__file__).resolve().parents[2] / "config.yaml"


def _load_config_from_yaml() -> Dict[str, Any]:
    """读取第一个存在的 YAML 配置文件；内容不是 mapping 时忽略并告警。"""

    for path in dict.fromkeys(_config_candidates()):
        if not path.is_file():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
            continue
        if data is None:
            return {}
        if not isinstance(data, dict):
            warnings.warn(f"Config file {path} is not a mapping, ignored")
            continue
        # 允许把配置放在 petal: 段下
        section = data.get("petal")
        return dict(section) if isinstance(section, dict) else data
    return {}


BackendName = Literal["cloud", "local_inference", "local_server"]


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 后端相关配置 ----
    default_backend: BackendName = Field(
        default="cloud",
        description="启动时激活的后端：cloud、local_inference、local_server",
    )

    # 云端 API（OpenAI 兼容的 chat/completions 接口）
    cloud_api_key: Optional[str] = Field(default=None, description="云端 API 密钥")
    cloud_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/openai",
        description="云端 API 基础URL",
    )
    cloud_model: str = Field(default="gemini-1.5-flash-latest", description="云端模型名")

    # 本地服务（Ollama）
    local_server_url: str = Field(default="http://localhost:11434", description="本地服务地址")
    local_server_model: str = Field(default="llama3.1", description="本地服务模型名")

    # 进程内推理
    local_inference_model: str = Field(
        default="llama-3.2-3b-instruct-4bit",
        description="进程内推理引擎使用的模型标识，仅用于日志",
    )

    # ---- 意图闸门 ----
    embedding_model: str = Field(default="nomic-embed-text", description="嵌入模型名")
    tool_trigger_threshold: float = Field(
        default=0.75,
        ge=-1.0,
        le=1.0,
        description="全局工具触发阈值（余弦相似度），所有工具共用",
    )
    exemplar_file: Optional[str] = Field(
        default=None,
        description="工具示例短语 YAML 文件（toolID -> [phrase]），为空时使用内置配置",
    )

    # ---- 通用 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_queue_size: int = Field(default=64, ge=1, le=4096, description="流式分片有界队列容量")
    max_context_messages: int = Field(default=20, ge=1, le=100, description="最大上下文消息数")
    system_prompt_file: Optional[str] = Field(default=None, description="自定义系统提示词文件")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="日志中正文类字段只记录长度")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("cloud_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
