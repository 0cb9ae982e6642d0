"""JSON-lines 文件日志。

每条记录一行 JSON，结构化字段通过 extra={"extra": {...}} 传入并合并到记录里。
开启 log_redact_content 后，正文类字段（用户消息、模型输出）只记录长度。
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from petal_core.config.settings import settings


LOGGER_NAME = "petal_core"
LOG_FILE = "petal.log"

# 可能包含用户对话内容的字段
CONTENT_FIELDS = ("text", "content", "prompt", "delta")


class JsonFormatter(logging.Formatter):
    def __init__(self, redact: bool = False):
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(self._scrub(extra) if self._redact else extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)

    @staticmethod
    def _scrub(fields: Dict[str, Any]) -> Dict[str, Any]:
        scrubbed = dict(fields)
        for key in CONTENT_FIELDS:
            value = scrubbed.get(key)
            if isinstance(value, str):
                scrubbed[key] = f"<redacted {len(value)} chars>"
        return scrubbed


def setup_logger(log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """配置 petal_core 根日志器；重复调用不会叠加 handler。"""

    root = logging.getLogger(LOGGER_NAME)
    root.setLevel((level or settings.log_level).upper())
    target = Path(log_dir or settings.log_dir)
    target.mkdir(parents=True, exist_ok=True)
    log_path = (target / LOG_FILE).resolve()

    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path:
            return root

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact=settings.log_redact_content))
    root.addHandler(fh)
    return root


def get_logger(suffix: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAME}.{suffix}")


logger = setup_logger()


def log_event(level: int, message: str, log_ctx: dict, **fields) -> None:
    """带上下文字段写一条结构化日志。"""

    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
