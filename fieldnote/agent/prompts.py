"""Prompt assembly for the agent loop.

The system prompt is built from layers (identity, tooling, guidance,
date/time) joined by blank lines; per-iteration user prompts are rebuilt
from the scratchpad so the model always sees the freshest evidence.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from fieldnote.agent.scratchpad import result_text

if TYPE_CHECKING:
    from fieldnote.agent.scratchpad import Scratchpad
    from fieldnote.tools.registry import ToolRegistry

logger = structlog.get_logger()


def _layer_identity() -> str:
    return (
        "You are Fieldnote, a research assistant. "
        "You answer questions by gathering evidence with the tools available "
        "to you, then reasoning over that evidence. Be accurate and concise."
    )


def _layer_tooling(registry: ToolRegistry | None) -> str:
    if registry is None:
        return ""
    tools = registry.list_tools()
    if not tools:
        return ""
    lines = ["## Available Tools", ""]
    for tool in tools:
        lines.append(f"- **{tool.name}**: {tool.description}")
    logger.debug("tooling_layer_injected", tool_count=len(tools))
    return "\n".join(lines)


def _layer_guidance() -> str:
    return (
        "## How to Work\n\n"
        "- Call tools only when the question needs data you do not already have.\n"
        "- Do not repeat a tool call whose result is already in the context.\n"
        "- When you have enough evidence, reply with plain text and no tool calls.\n"
        "- For greetings or clarifying questions, answer directly."
    )


def _layer_datetime(now: datetime) -> str:
    return f"Current date and time (UTC): {now.strftime('%Y-%m-%d %H:%M:%S')}"


def build_system_prompt(registry: ToolRegistry | None, now: datetime | None = None) -> str:
    layers = [
        _layer_identity(),
        _layer_tooling(registry),
        _layer_guidance(),
        _layer_datetime(now or datetime.now(UTC)),
    ]
    return "\n\n".join(layer for layer in layers if layer)


def build_initial_prompt(query: str, history: list[str] | None = None) -> str:
    """First-iteration prompt: the raw query, optionally with prior queries."""
    if not history:
        return query
    numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(history, start=1))
    return (
        f"Current query to answer: {query}\n\n"
        f"Previous user queries for context:\n{numbered}"
    )


def build_iteration_prompt(query: str, tool_results: str, tool_usage: str = "") -> str:
    parts = [f"Query: {query}"]
    if tool_results.strip():
        parts.append(f"Data retrieved from tool calls:\n\n{tool_results}")
    if tool_usage:
        parts.append(tool_usage)
    parts.append(
        "Continue working toward answering the query. If the data above is "
        "sufficient, respond without calling any tools."
    )
    return "\n\n".join(parts)


def build_final_answer_context(scratchpad: Scratchpad) -> str:
    """Consolidate all evidence, evicted results included, for the final-answer call."""
    blocks: list[str] = []
    for entry in scratchpad.history:
        if entry.type == "thinking" and entry.content:
            blocks.append(f"Reasoning: {entry.content}")
        elif entry.type == "tool_result":
            blocks.append(f"Output of {entry.tool_name}:\n{result_text(entry.result)}")
    if not blocks:
        return "No data was gathered."
    return "\n\n".join(blocks)


def build_final_answer_prompt(query: str, context: str) -> str:
    return (
        f"Query: {query}\n\n"
        f"Evidence gathered while researching:\n\n{context}\n\n"
        "Write the final answer to the query using only this evidence. "
        "Lead with the direct answer, then the supporting numbers. "
        "If the evidence is incomplete, say what is missing."
    )
