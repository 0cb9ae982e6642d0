"""本地服务后端适配器（LocalServer 变体，Ollama）。

接口说明：
- URL: {local_server_url}/api/chat
- 流式响应为逐行 JSON（NDJSON），每行形如
  {"message": {"role": "assistant", "content": "..."}, "done": false}
- 工具调用出现在 message.tool_calls 中，arguments 已是对象。

每行的 content 都是新增文本（delta 风格）。
"""

import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import httpx

from petal_core.backends.base import BackendKind, ensure_final, to_wire_messages
from petal_core.backends.registry import get_backend_config
from petal_core.config.settings import settings
from petal_core.domain.exceptions import BackendUnavailable, GenerationFailed, RateLimitError
from petal_core.domain.models import ChatTurn, ChunkStyle, StreamChunk
from petal_core.infrastructure.logging.logger import logger
from petal_core.tools.definitions import ToolCall, ToolDef


class LocalServerAdapter:
    """本地 Ollama 服务客户端实现。"""

    kind = BackendKind.LOCAL_SERVER

    def __init__(self, cfg=settings, model: Optional[str] = None):
        self._settings = cfg
        self._config = get_backend_config(self.kind, cfg)
        self.model = model or self._config.default_model
        logger.info("Local server adapter initialized", extra={"extra": {"model": self.model}})

    @property
    def name(self) -> str:
        return f"ollama:{self.model}"

    # ---- 非流式 ----

    def complete(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> str:
        payload = self._build_payload(history, tools, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._url(), json=payload)
        except httpx.RequestError as e:
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=str(e), backend=self.name)
        self._raise_for_status(resp.status_code, resp.text)
        data = resp.json()
        if data.get("error"):
            raise GenerationFailed(code="GENERATION_FAILED", message=str(data["error"]), backend=self.name)
        message = data.get("message") or {}
        return message.get("content") or ""

    # ---- 流式 ----

    def stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> Iterable[StreamChunk]:
        return ensure_final(self._stream(history, tools))

    def _stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]]) -> Iterator[StreamChunk]:
        payload = self._build_payload(history, tools, stream=True)
        chunk_count = 0
        total_chars = 0
        try:
            # 本地模型首个 token 可能很慢，读超时不设上限
            timeout = httpx.Timeout(self._settings.http_timeout, read=None)
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream("POST", self._url(), json=payload) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp.status_code, resp.text)
                    for line in resp.iter_lines():
                        line = (line or "").strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            raise GenerationFailed(
                                code="GENERATION_FAILED",
                                message=str(data["error"]),
                                backend=self.name,
                            )
                        for chunk in self._parse_line(data):
                            chunk_count += 1
                            total_chars += len(chunk.payload)
                            yield chunk
                        if data.get("done"):
                            break
        except httpx.RequestError as e:
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=str(e), backend=self.name)
        logger.log(
            logging.INFO,
            "Local server stream finished",
            extra={"extra": {"backend": self.name, "chunks": chunk_count, "chars": total_chars}},
        )

    # ---- 辅助方法 ----

    def _url(self) -> str:
        base = (getattr(self._settings, "local_server_url", None) or self._config.base_url or "").rstrip("/")
        return f"{base}/api/chat"

    def _raise_for_status(self, status_code: int, text: str) -> None:
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Local server busy", http_status=429, backend=self.name)
        if status_code == 404:
            # Ollama 在模型未拉取时返回 404
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=text, http_status=404, backend=self.name)
        if status_code >= 500:
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=text, http_status=status_code, backend=self.name)
        if status_code >= 400:
            raise GenerationFailed(code="GENERATION_FAILED", message=text, http_status=status_code, backend=self.name)

    def _build_payload(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]], stream: bool) -> dict:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": to_wire_messages(history),
            "stream": stream,
        }
        if tools:
            payload["tools"] = [t.to_function_schema() for t in tools]
        return payload

    def _parse_line(self, data: Dict[str, Any]) -> Iterator[StreamChunk]:
        message = data.get("message") or {}
        for idx, raw_call in enumerate(message.get("tool_calls") or []):
            func = raw_call.get("function") or {}
            arguments = func.get("arguments")
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    arguments = {"_raw": arguments}
            call = ToolCall(
                id=raw_call.get("id") or f"tool_call_{idx}",
                name=func.get("name") or "",
                arguments=arguments if isinstance(arguments, dict) else {},
            )
            yield StreamChunk(tool_call_name=call.name, tool_call=call)
        content = message.get("content") or ""
        done = bool(data.get("done"))
        if content or done:
            yield StreamChunk(payload=content, is_final=done, style=ChunkStyle.DELTA)
