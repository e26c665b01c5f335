from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from fieldnote.infra.errors import ToolError
from fieldnote.tools.base import BaseTool

logger = structlog.get_logger()


class ToolRegistry:
    """Registry for agent tools: name → tool with schema and invoke."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool. Raises ValueError if name already registered."""
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.info(
            "tool_registered",
            tool_name=tool.name,
            risk_level=tool.risk_level.value,
        )

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name. Returns None if not found."""
        return self._tools.get(name)

    def list_tools(self) -> list[BaseTool]:
        return list(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def validate_args(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate arguments against the tool's declared schema.

        Returns the normalized arguments (defaults applied).
        Raises ToolError with code UNKNOWN_TOOL or INVALID_ARGS.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError(f"Unknown tool: {name}", code="UNKNOWN_TOOL")
        try:
            model = tool.args_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolError(
                f"Invalid arguments for {name}: {e.errors(include_url=False)}",
                code="INVALID_ARGS",
            ) from e
        return model.model_dump()

    def get_tools_schema(self) -> list[dict]:
        """Return tools in OpenAI function calling format.

        Output format:
        [{"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}]
        """
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self._tools.values()
        ]
