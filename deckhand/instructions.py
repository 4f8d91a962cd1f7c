"""Load and render prompt templates from disk.

Supports a two-layer override system:
  1. Personal overrides in ``~/.deckhand/instructions/`` (highest priority)
  2. Packaged defaults in ``deckhand/prompts/``
"""

from __future__ import annotations

import os
import platform
from datetime import datetime
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.deckhand/instructions").expanduser()

SYSTEM_PROMPT = "system_prompt.md"
COMPACTION_SYSTEM_PROMPT = "compaction_summary_system_prompt.md"
COMPACTION_USER_PROMPT = "compaction_summary_user_prompt.md"
COMPACTION_NOTICE = "compaction_notice.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render prompt templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("DECKHAND_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def is_overridden(self, name: str) -> bool:
        return (self.personal_dir / name).is_file()

    def load(self, name: str) -> str:
        """Load template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Prompt template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))

    def system_prompt(self, cwd: str | Path) -> str:
        """Render the agent system prompt for the given working directory."""
        return self.render(
            SYSTEM_PROMPT,
            cwd=str(cwd),
            platform=f"{platform.system()} {platform.release()}".strip(),
            home=str(Path.home()),
            timestamp=datetime.now().astimezone().isoformat(timespec="seconds"),
        )
