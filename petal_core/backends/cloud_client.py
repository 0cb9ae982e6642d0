"""云端 API 后端适配器（CloudAPI 变体）。

本模块负责：

1. 接收统一的 ChatTurn 历史。
2. 将其转换为 OpenAI 兼容的 chat/completions 请求格式。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应解析为完整文本，或把 SSE 流解析为 delta 风格的 StreamChunk。

工具调用的参数在流式响应中是分段下发的：名称一出现就产出带 tool_call_name 的分片，
参数拼接完整后再产出带 tool_call 的分片。
"""

import httpx
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from petal_core.backends.base import BackendKind, ensure_final, to_wire_messages
from petal_core.backends.registry import get_backend_config
from petal_core.config.settings import settings
from petal_core.domain.exceptions import BackendUnavailable, GenerationFailed, RateLimitError, ValidationError
from petal_core.domain.models import ChatTurn, ChunkStyle, StreamChunk
from petal_core.infrastructure.logging.logger import logger
from petal_core.tools.definitions import ToolCall, ToolDef


class CloudApiAdapter:
    """云端生成服务客户端实现。"""

    kind = BackendKind.CLOUD_API

    def __init__(self, cfg=settings, model: Optional[str] = None):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._config = get_backend_config(self.kind, cfg)
        self.model = model or self._config.default_model

    @property
    def name(self) -> str:
        return f"cloud:{self.model}"

    # ---- 非流式 ----

    def complete(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> str:
        payload = self._build_payload(history, tools, stream=False)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=str(e), backend=self.name)
        self._raise_for_status(resp.status_code, resp.text)
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise GenerationFailed(code="GENERATION_FAILED", message="Response contained no choices", backend=self.name)
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    # ---- 流式 ----

    def stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]] = None) -> Iterable[StreamChunk]:
        return ensure_final(self._stream(history, tools))

    def _stream(self, history: Sequence[ChatTurn], tools: Optional[List[ToolDef]]) -> Iterator[StreamChunk]:
        payload = self._build_payload(history, tools, stream=True)
        pending_calls: Dict[int, Dict[str, Any]] = {}
        chunk_count = 0
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        self._raise_for_status(resp.status_code, resp.text)
                    for line in resp.iter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str:
                            continue
                        if data_str == "[DONE]":
                            break
                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if data.get("error"):
                            raise GenerationFailed(
                                code="GENERATION_FAILED",
                                message=str(data["error"]),
                                backend=self.name,
                            )
                        for chunk in self._parse_stream_event(data, pending_calls):
                            chunk_count += 1
                            yield chunk
        except httpx.RequestError as e:
            raise BackendUnavailable(code="BACKEND_UNAVAILABLE", message=str(e), backend=self.name)
        for chunk in self._flush_tool_calls(pending_calls):
            yield chunk
        logger.log(logging.INFO, "Cloud stream finished", extra={"extra": {"backend": self.name, "chunks": chunk_count}})

    # ---- 辅助方法 ----

    def _url(self) -> str:
        base = (getattr(self._settings, "cloud_base_url", None) or self._config.base_url or "").rstrip("/")
        return f"{base}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        if not getattr(self._settings, "cloud_api_key", None):
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(code="MISSING_API_KEY", message="CLOUD_API_KEY not set")
        return {
            "Authorization": f"Bearer {self._settings.cloud_api_key}",
            "Content-Type": "application/json",
        }

    def _raise_for_status(self, status_code: int, text: str) -> None:
        if status_code == 429:
            # 限流错误交给具体部署的重试策略
            raise RateLimitError(code="RATE_LIMIT", message="Cloud API rate limit", http_status=429, backend=self.name)
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
            payload["tool_choice"] = "auto"
        return payload

    def _parse_stream_event(self, data: dict, pending_calls: Dict[int, Dict[str, Any]]) -> Iterator[StreamChunk]:
        for ch in data.get("choices") or []:
            delta = ch.get("delta") or {}
            for raw_call in delta.get("tool_calls") or []:
                idx = raw_call.get("index", 0)
                func = raw_call.get("function") or {}
                entry = pending_calls.setdefault(idx, {"id": raw_call.get("id"), "name": "", "arguments": ""})
                if raw_call.get("id"):
                    entry["id"] = raw_call["id"]
                if func.get("name") and not entry["name"]:
                    entry["name"] = func["name"]
                    yield StreamChunk(tool_call_name=entry["name"])
                entry["arguments"] += func.get("arguments") or ""
            content = delta.get("content") or ""
            if content:
                yield StreamChunk(payload=content, style=ChunkStyle.DELTA)
            if ch.get("finish_reason") == "tool_calls":
                for chunk in self._flush_tool_calls(pending_calls):
                    yield chunk

    def _flush_tool_calls(self, pending_calls: Dict[int, Dict[str, Any]]) -> Iterator[StreamChunk]:
        for idx in sorted(pending_calls):
            entry = pending_calls[idx]
            call = ToolCall(
                id=entry.get("id") or f"tool_call_{idx}",
                name=entry["name"],
                arguments=self._parse_arguments(entry["arguments"]),
            )
            yield StreamChunk(tool_call_name=call.name, tool_call=call)
        pending_calls.clear()

    @staticmethod
    def _parse_arguments(raw: Any) -> Dict[str, Any]:
        """解析工具调用的 arguments 字段。

        云端会把 arguments 作为 JSON 字符串返回，这里做一层 json.loads 尝试，
        失败时保留原始字符串到 `_raw`，避免信息丢失。
        """

        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str) and raw.strip():
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                return {"_raw": raw}
            return parsed if isinstance(parsed, dict) else {"_raw": raw}
        return {}
