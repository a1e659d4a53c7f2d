"""系统提示词与提示模板加载工具。

按语言(locale) 从 prompts/<locale> 目录读取：
- 助手版本对应的 system instruction（luna_1_0_system.md / luna_2_0_system.md）；
- 动作模板（study / code_review / debug / title），用 str.format 填充。
"""

from pathlib import Path
from typing import Optional

from luna_core.domain.conversation import Persona


PROMPTS_DIR = Path(__file__).resolve().parent


def _read(name: str, locale: str) -> str:
    return (PROMPTS_DIR / locale / name).read_text(encoding="utf-8").strip()


def load_system_prompt(version: str, persona: Optional[Persona] = None, locale: str = "en") -> str:
    """根据助手版本加载系统提示词；选中人设时以人设提示词为准。"""

    if persona is not None and persona.prompt.strip():
        return persona.prompt.strip()
    fname = f"luna_{version.replace('.', '_')}_system.md"
    return _read(fname, locale)


def render_template(name: str, locale: str = "en", **values: str) -> str:
    return _read(f"{name}.md", locale).format(**values)
