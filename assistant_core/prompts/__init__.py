"""提示词模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取模板文本，
目前只有跟进指令一种模板，{role} 会被替换为我方身份。
"""

from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


def load_follow_up_instruction(role: str, locale: str = "en") -> str:
    """加载跟进指令，并代入角色名称（seller / buyer）。"""

    fname = PROMPTS_DIR / locale / "follow_up.md"
    return fname.read_text(encoding="utf-8").strip().replace("{role}", role)
