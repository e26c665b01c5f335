from __future__ import annotations

from pathlib import Path

from fieldnote.infra.errors import ToolError


def resolve_in_workspace(workspace_dir: Path, raw_path: str) -> Path:
    """Resolve *raw_path* inside the workspace or raise ToolError(ACCESS_DENIED).

    Rejects absolute paths, ".." escapes and symlinks pointing outside.
    """
    if not raw_path or Path(raw_path).is_absolute():
        raise ToolError(
            "Absolute or empty paths are not allowed. Use a relative path within workspace.",
            code="ACCESS_DENIED",
        )
    target = (workspace_dir / raw_path).resolve()
    if not target.is_relative_to(workspace_dir):
        raise ToolError("Path escapes workspace boundary.", code="ACCESS_DENIED")
    return target
