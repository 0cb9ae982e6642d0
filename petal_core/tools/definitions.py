"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给后端（ToolDef / ToolParam）。
- 在 Orchestrator 中记录和执行后端发起的工具调用（ToolCall / ToolResult）。

具体工具（日历、提醒事项、备忘录等系统自动化）由宿主实现，这里只约定调用契约。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str
    required: bool
    schema: Dict[str, Any] = field(default_factory=lambda: {"type": "string"})


@dataclass
class ToolDef:
    """一个可供后端调用的工具定义，name 即 toolID。"""

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)

    def to_function_schema(self) -> Dict[str, Any]:
        """转成 OpenAI / Ollama 通用的 function tool 描述。"""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for name, param in self.params.items():
            properties[name] = dict(param.schema or {"type": "string"})
            if param.description:
                properties[name]["description"] = param.description
            if param.required:
                required.append(name)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }


@dataclass
class ToolCall:
    """后端发起的一次工具调用请求。"""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """工具执行结果的封装（文本形式）。"""

    call_id: str
    content: str
    ok: bool = True
