"""系统提示词加载工具。

按名称从 prompts 目录读取 markdown 文本，用作 ChatRequest.system_prompt。
"""

from pathlib import Path
from typing import Optional, Union


PROMPTS_DIR = Path(__file__).resolve().parent


def load_system_prompt(name: str = "system", workspace_root: Optional[Union[str, Path]] = None) -> str:
    """加载系统提示词，并填入工作目录。"""

    text = (PROMPTS_DIR / f"{name}.md").read_text(encoding="utf-8")
    root = str(Path(workspace_root).resolve()) if workspace_root else str(Path.cwd())
    return text.replace("{workspace_root}", root)
