"""Telegram reply rendering: Markdown cleanup, MarkdownV2 escaping, splitting."""

from __future__ import annotations

import re

# ── Error code → user-facing reply ───────────────────────────────────────

_ERROR_MESSAGES: dict[str, str] = {
    "RUN_IN_PROGRESS": "I'm still working on your previous message. Please wait for it to finish.",
    "RUN_TIMEOUT": "That took too long, so I stopped. Try a narrower question.",
    "LLM_ERROR": "The language model is unavailable right now. Please try again later.",
    "MISSING_API_KEY": "The assistant is not configured yet.",
}

_DEFAULT_ERROR = "Something went wrong while handling your message. Please try again."


def friendly_error_message(code: str | None) -> str:
    if code and code in _ERROR_MESSAGES:
        return _ERROR_MESSAGES[code]
    return _DEFAULT_ERROR


# ── Markdown cleanup ─────────────────────────────────────────────────────

_HEADING_RE = re.compile(r"^#{1,6}[ \t]+(.+?)[ \t]*#*[ \t]*$", re.MULTILINE)
_RULE_RE = re.compile(r"^[ \t]*(?:-{3,}|\*{3,}|_{3,})[ \t]*$\n?", re.MULTILINE)
_TABLE_SEP_RE = re.compile(
    r"^[ \t]*\|?[ \t]*:?-{3,}:?[ \t]*(?:\|[ \t]*:?-{3,}:?[ \t]*)*\|?[ \t]*$\n?", re.MULTILINE
)
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def clean_markdown(text: str) -> str:
    """Reduce model Markdown to what Telegram renders.

    Headings become bold lines; horizontal rules and table separator rows are
    dropped; runs of blank lines collapse to one.
    """
    result = _HEADING_RE.sub(r"**\1**", text)
    result = _TABLE_SEP_RE.sub("", result)
    result = _RULE_RE.sub("", result)
    return _BLANK_RUN_RE.sub("\n\n", result).strip()


# ── Message splitting ────────────────────────────────────────────────────

_CODE_BLOCK_RE = re.compile(r"```[^\n]*\n[\s\S]*?```")
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+")


def split_message(text: str, max_length: int = 4096) -> list[str]:
    """Split text into chunks within Telegram's message length limit.

    Split priority: code-block boundaries → paragraphs → sentences → hard cut.
    Fenced code blocks stay intact when they fit, and are re-fenced per chunk
    when they don't.
    """
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    buf = ""
    for segment in _segments(text):
        if len(buf) + len(segment) <= max_length:
            buf += segment
            continue
        if buf:
            chunks.append(buf)
            buf = ""
        if len(segment) <= max_length:
            buf = segment
            continue
        if segment.startswith("```"):
            pieces = _split_code_block(segment, max_length)
        else:
            pieces = _pack(segment.split("\n\n"), "\n\n", max_length, _split_sentences)
        chunks.extend(pieces[:-1])
        buf = pieces[-1] if pieces else ""
    if buf:
        chunks.append(buf)
    return [c for c in chunks if c.strip()]


def _segments(text: str) -> list[str]:
    """Alternating plain-text / fenced-code segments, in order."""
    parts: list[str] = []
    last = 0
    for m in _CODE_BLOCK_RE.finditer(text):
        if m.start() > last:
            parts.append(text[last : m.start()])
        parts.append(m.group())
        last = m.end()
    if last < len(text):
        parts.append(text[last:])
    return parts


def _pack(pieces, sep: str, max_length: int, oversize) -> list[str]:
    """Greedily join pieces with sep; pieces longer than max_length go to oversize()."""
    chunks: list[str] = []
    current = ""
    for piece in pieces:
        candidate = current + sep + piece if current else piece
        if len(candidate) <= max_length:
            current = candidate
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(piece) <= max_length:
            current = piece
            continue
        sub = oversize(piece, max_length)
        chunks.extend(sub[:-1])
        current = sub[-1] if sub else ""
    if current:
        chunks.append(current)
    return chunks


def _hard_cut(text: str, max_length: int) -> list[str]:
    return [text[i : i + max_length] for i in range(0, len(text), max_length)]


def _split_sentences(text: str, max_length: int) -> list[str]:
    return _pack(_SENTENCE_BOUNDARY_RE.split(text), " ", max_length, _hard_cut)


def _split_code_block(block: str, max_length: int) -> list[str]:
    """Split an oversized fenced block by lines, re-wrapping each chunk in fences."""
    header, nl, body = block.partition("\n")
    if not nl:
        return _hard_cut(block, max_length)
    body = body.removesuffix("```").rstrip("\n")
    if not body:
        return _hard_cut(block, max_length)

    fence = "```"
    budget = max(max_length - len(header) - len(fence) - 2, 20)
    return [
        f"{header}\n{chunk}\n{fence}"
        for chunk in _pack(body.split("\n"), "\n", budget, _hard_cut)
    ]


# ── MarkdownV2 ───────────────────────────────────────────────────────────

_HAS_MARKDOWN_RE = re.compile(r"```|`[^`]+`|\*\*")
_MD2_ESCAPE_RE = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")
_CODE_OR_INLINE_RE = re.compile(r"```[^\n]*\n[\s\S]*?```|`[^`\n]+`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


def format_for_telegram(text: str) -> tuple[str, str | None]:
    """Clean up and format an answer. Returns (text, parse_mode).

    MarkdownV2 is used only when the answer contains code or bold markup;
    otherwise the cleaned text is sent as plain text (parse_mode None).
    """
    cleaned = clean_markdown(text)
    if not cleaned:
        return ("", None)
    if not _HAS_MARKDOWN_RE.search(cleaned):
        return (cleaned, None)
    return (_to_markdownv2(cleaned), "MarkdownV2")


def _to_markdownv2(text: str) -> str:
    """Escape everything except code spans; **bold** becomes *bold*."""
    out: list[str] = []
    last = 0
    for m in _CODE_OR_INLINE_RE.finditer(text):
        out.append(_format_plain(text[last : m.start()]))
        code = m.group()
        if code.startswith("```"):
            header, _, rest = code.partition("\n")
            out.append(f"{header}\n{_escape_code(rest[:-3])}```")
        else:
            out.append(f"`{_escape_code(code[1:-1])}`")
        last = m.end()
    out.append(_format_plain(text[last:]))
    return "".join(out)


def _escape_code(text: str) -> str:
    return text.replace("\\", "\\\\").replace("`", "\\`")


def _format_plain(text: str) -> str:
    if not text:
        return ""
    out: list[str] = []
    last = 0
    for m in _BOLD_RE.finditer(text):
        out.append(_MD2_ESCAPE_RE.sub(r"\\\1", text[last : m.start()]))
        out.append("*" + _MD2_ESCAPE_RE.sub(r"\\\1", m.group(1)) + "*")
        last = m.end()
    out.append(_MD2_ESCAPE_RE.sub(r"\\\1", text[last:]))
    return "".join(out)
