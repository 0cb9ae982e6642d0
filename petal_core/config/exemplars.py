"""工具示例短语配置（ExemplarConfiguration）。

静态映射 toolID -> [示例短语]，启动时加载一次：

- DEFAULT_EXEMPLARS: 内置的工具示例短语。
- load_exemplars(path): 从 YAML 文件读取自定义映射，未指定时回退到内置配置。

这里只负责“读取与基本校验”，空短语列表的拒绝由 ExemplarStore.register 完成。
"""

from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml

from petal_core.config.settings import settings
from petal_core.domain.exceptions import ValidationError


ExemplarConfiguration = Mapping[str, List[str]]


DEFAULT_EXEMPLARS: Dict[str, List[str]] = {
    "petalCalendarFetchEventsTool": [
        "Fetch calendar events for me",
        "Show calendar events",
        "List my events",
        "Get events from my calendar",
        "Retrieve calendar events",
    ],
    "petalCalendarCreateEventTool": [
        "Create a calendar event on [date]",
        "Schedule a new calendar event",
        "Add a calendar event to my schedule",
        "Book an event on my calendar",
        "Set up a calendar event",
    ],
    "petalFetchRemindersTool": [
        "Show me my reminders",
        "List my tasks for today",
        "Fetch completed reminders",
        "Get all my pending reminders",
        "Find reminders containing 'doctor'",
    ],
    "petalGenericCanvasCoursesTool": [
        "Show me my Canvas courses",
        "List my classes on Canvas",
        "Display my Canvas courses",
        "What courses am I enrolled in?",
        "Fetch my Canvas classes",
    ],
    "petalFetchCanvasAssignmentsTool": [
        "Fetch assignments for my course",
        "Show my Canvas assignments",
        "Get assignments for my class",
        "Retrieve course assignments from Canvas",
        "List assignments for my course",
    ],
    "petalFetchCanvasGradesTool": [
        "Show me my grades",
        "Get my Canvas grades",
        "Fetch my course grades",
        "Display grades for my class",
        "Retrieve my grades from Canvas",
    ],
    "petalNotesTool": [
        "Find my notes about [topic]",
        "Create a new note with [content]",
        "Show all my notes",
        "Make a note about [topic]",
        "Search my notes for [query]",
        "Create a new note titled Meeting with Sam with content # Discussion Points -Project timeline -Budget concerns -Next steps",
    ],
}


def load_exemplars(path: Optional[str] = None) -> Dict[str, List[str]]:
    """加载 ExemplarConfiguration。

    优先使用参数 path，其次是 settings.exemplar_file，都没有时返回内置配置的拷贝。
    文件内容必须是 mapping，且每个值是字符串列表。
    """

    raw_path = path or getattr(settings, "exemplar_file", None)
    if not raw_path:
        return {tool_id: list(phrases) for tool_id, phrases in DEFAULT_EXEMPLARS.items()}

    file_path = Path(raw_path).expanduser()
    try:
        data = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ValidationError(
            code="EXEMPLAR_FILE_ERROR",
            message=f"Failed to read exemplar file {file_path}: {exc}",
        )
    if not isinstance(data, dict):
        raise ValidationError(code="EXEMPLAR_FILE_ERROR", message=f"{file_path} is not a mapping")

    exemplars: Dict[str, List[str]] = {}
    for tool_id, phrases in data.items():
        if not isinstance(phrases, list) or not all(isinstance(p, str) for p in phrases):
            raise ValidationError(
                code="EXEMPLAR_FILE_ERROR",
                message=f"Exemplars for {tool_id!r} must be a list of strings",
            )
        exemplars[str(tool_id)] = list(phrases)
    return exemplars
