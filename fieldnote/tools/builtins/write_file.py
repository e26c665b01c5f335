from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal

import structlog
from pydantic import BaseModel, Field

from fieldnote.tools.base import BaseTool, RiskLevel
from fieldnote.tools.builtins._workspace import resolve_in_workspace

if TYPE_CHECKING:
    from fieldnote.tools.context import ToolContext

logger = structlog.get_logger()


class WriteFileArgs(BaseModel):
    path: str = Field(description="Relative path within workspace to write to.")
    content: str = Field(description="Full text content to write.")
    mode: Literal["overwrite", "append"] = Field(
        "overwrite", description="Overwrite the file or append to it."
    )


class WriteFileTool(BaseTool):
    """Write a text file in the workspace. Side-effecting: needs approval."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write or append text to a file within the workspace directory, "
            "e.g. to save a research report. Requires user approval."
        )

    @property
    def args_model(self) -> type[BaseModel]:
        return WriteFileArgs

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.high

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        target = resolve_in_workspace(self._workspace_dir, arguments["path"])
        target.parent.mkdir(parents=True, exist_ok=True)
        content = arguments["content"]
        if arguments.get("mode") == "append":
            with target.open("a", encoding="utf-8") as fh:
                fh.write(content)
        else:
            target.write_text(content, encoding="utf-8")
        logger.info("file_written", path=arguments["path"], chars=len(content))
        return {"path": arguments["path"], "bytes_written": len(content.encode("utf-8"))}
