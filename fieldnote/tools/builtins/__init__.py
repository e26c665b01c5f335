from __future__ import annotations

from pathlib import Path

from fieldnote.tools.builtins.current_time import CurrentTimeTool
from fieldnote.tools.builtins.portfolio_metrics import PortfolioMetricsTool
from fieldnote.tools.builtins.read_file import ReadFileTool
from fieldnote.tools.builtins.write_file import WriteFileTool
from fieldnote.tools.registry import ToolRegistry


def register_builtins(registry: ToolRegistry, workspace_dir: Path) -> None:
    """Register all built-in tools with the registry.

    File tools are confined to workspace_dir.
    """
    registry.register(CurrentTimeTool())
    registry.register(PortfolioMetricsTool())
    registry.register(ReadFileTool(workspace_dir))
    registry.register(WriteFileTool(workspace_dir))
