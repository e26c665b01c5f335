from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from fieldnote.tools.base import BaseTool, RiskLevel

if TYPE_CHECKING:
    from fieldnote.tools.context import ToolContext


class CurrentTimeArgs(BaseModel):
    timezone: str = Field(
        "UTC",
        description="IANA timezone name, e.g. 'America/New_York'. Defaults to UTC.",
    )


class CurrentTimeTool(BaseTool):
    """Returns the current date and time."""

    @property
    def name(self) -> str:
        return "current_time"

    @property
    def description(self) -> str:
        return (
            "Get the current date and time, optionally in a specific timezone. "
            "Use it to resolve relative dates such as 'last quarter' or 'YTD'."
        )

    @property
    def args_model(self) -> type[BaseModel]:
        return CurrentTimeArgs

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict:
        tz_name = arguments.get("timezone") or "UTC"
        try:
            tz = UTC if tz_name == "UTC" else ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {tz_name}") from e

        now = datetime.now(tz)
        return {
            "time": now.strftime("%Y-%m-%d %H:%M:%S"),
            "timezone": tz_name,
            "iso": now.isoformat(),
            "weekday": now.strftime("%A"),
        }
