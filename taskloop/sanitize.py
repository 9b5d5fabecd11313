"""Display cleanup for streamed assistant text."""

import re

_THINK_BLOCK_RE = re.compile(r"<think(?:ing)?>.*?</think(?:ing)?>", re.DOTALL | re.IGNORECASE)
_OPEN_THINK_RE = re.compile(r"<think(?:ing)?>.*\Z", re.DOTALL | re.IGNORECASE)
_TOOL_MARKUP_RE = re.compile(
    r"<(tool_call|function_call|invoke)\b[^>]*>.*?</\1>",
    re.DOTALL | re.IGNORECASE,
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def sanitize_assistant_text_for_display(text: str) -> str:
    """Strip reasoning tags, inline tool-call markup and control characters.

    An unterminated ``<think>`` block hides everything after it, so a partial
    stream never flashes reasoning text that the finished turn would hide.
    """
    if not text:
        return ""
    cleaned = _THINK_BLOCK_RE.sub("", text)
    cleaned = _OPEN_THINK_RE.sub("", cleaned)
    cleaned = _TOOL_MARKUP_RE.sub("", cleaned)
    cleaned = _CONTROL_RE.sub("", cleaned)
    cleaned = cleaned.replace("\r\n", "\n")
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()
