from typing import Any, Callable, Dict, List, Optional
import logging

from petal_core.domain.exceptions import ToolExecutionFailed
from petal_core.infrastructure.logging.logger import logger
from .definitions import ToolCall, ToolDef, ToolResult


ToolFunc = Callable[[Dict[str, Any]], str]


class ToolExecutor:
    """外部工具的调用入口：(toolID, 参数) -> 文本结果 | 失败。

    Orchestrator 不关心工具内部实现，只拿到文本结果写入回复。
    工具通常带副作用（创建日程、写备忘录），因此结果不做缓存。
    """

    def __init__(self, tools: Optional[Dict[str, ToolFunc]] = None, defs: Optional[List[ToolDef]] = None):
        self._tools: Dict[str, ToolFunc] = dict(tools or {})
        self._defs: Dict[str, ToolDef] = {d.name: d for d in (defs or [])}

    def register(self, tool_def: ToolDef, func: ToolFunc) -> None:
        self._defs[tool_def.name] = tool_def
        self._tools[tool_def.name] = func

    @property
    def tool_defs(self) -> List[ToolDef]:
        return list(self._defs.values())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def invoke(self, tool_id: str, arguments: Dict[str, Any]) -> str:
        func = self._tools.get(tool_id)
        if not func:
            raise ToolExecutionFailed(
                code="TOOL_EXECUTION_FAILED",
                message=f"Tool not registered: {tool_id}",
                tool_id=tool_id,
            )
        try:
            result = func(arguments)
        except ToolExecutionFailed:
            raise
        except Exception as exc:
            raise ToolExecutionFailed(
                code="TOOL_EXECUTION_FAILED",
                message=f"{tool_id} failed: {exc}",
                tool_id=tool_id,
            ) from exc
        return "" if result is None else str(result)

    def execute(self, call: ToolCall) -> ToolResult:
        """执行一次工具调用。失败时返回 ok=False 的诊断文本，而不是抛出异常。"""

        try:
            content = self.invoke(call.name, call.arguments)
        except ToolExecutionFailed as exc:
            logger.log(
                logging.WARNING,
                "Tool execution failed",
                extra={"extra": {"tool": call.name, "call_id": call.id, "error": exc.message}},
            )
            return ToolResult(call_id=call.id, content=f"Tool error: {exc.message}", ok=False)
        logger.log(
            logging.INFO,
            "Tool executed",
            extra={"extra": {"tool": call.name, "call_id": call.id, "chars": len(content)}},
        )
        return ToolResult(call_id=call.id, content=content)
