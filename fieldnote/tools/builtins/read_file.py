from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, Field

from fieldnote.infra.errors import ToolError
from fieldnote.tools.base import BaseTool, RiskLevel
from fieldnote.tools.builtins._workspace import resolve_in_workspace

if TYPE_CHECKING:
    from fieldnote.tools.context import ToolContext

logger = structlog.get_logger()

_MAX_READ_CHARS = 50_000


class ReadFileArgs(BaseModel):
    path: str = Field(
        description="Relative path within workspace, e.g. 'notes/q3.md' or 'data/prices.csv'."
    )


class ReadFileTool(BaseTool):
    """Read a file from the workspace directory with path safety enforcement."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read the contents of a text file within the workspace directory."

    @property
    def args_model(self) -> type[BaseModel]:
        return ReadFileArgs

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    def query_hint(self, arguments: dict) -> str | None:
        return arguments.get("path")

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        raw_path = arguments.get("path", "")
        try:
            target = resolve_in_workspace(self._workspace_dir, raw_path)
        except ToolError:
            logger.warning("path_escape_blocked", path=raw_path)
            raise

        if not target.is_file():
            raise ToolError(f"File not found: {raw_path}", code="FILE_NOT_FOUND")

        content = target.read_text(encoding="utf-8")
        truncated = len(content) > _MAX_READ_CHARS
        return {
            "path": raw_path,
            "size": len(content),
            "truncated": truncated,
            "content": content[:_MAX_READ_CHARS],
        }
