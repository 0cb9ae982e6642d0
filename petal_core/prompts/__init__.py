"""系统提示词加载工具。

默认从 prompts/<locale>/assistant_system.md 读取，settings.system_prompt_file
指定时优先使用该文件，用于构造 participant=system 的首条消息。
"""

from pathlib import Path
from typing import Optional

from petal_core.config.settings import settings


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(locale: str = "en", path: Optional[str] = None) -> str:
    """加载系统提示词文本，文件不存在时返回空字符串（即不发送系统消息）。"""

    raw = path or getattr(settings, "system_prompt_file", None)
    fname = Path(raw).expanduser() if raw else PROMPTS_DIR / locale / "assistant_system.md"
    if not fname.exists():
        return ""
    return fname.read_text(encoding="utf-8").strip()
