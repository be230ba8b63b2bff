"""Tool-aware truncation of results before they are stored as turns."""

from .base import TruncationMode

TOOL_RESULT_MAX_CHARS = 500
LINE_TAIL_MAX_CHARS = 100
ELLIPSIS = "..."


def truncate_tool_result(
    content: str,
    mode: TruncationMode = "chars",
    max_chars: int = TOOL_RESULT_MAX_CHARS,
    line_tail_chars: int = LINE_TAIL_MAX_CHARS,
) -> str:
    """Shorten ``content`` for storage.

    ``lines`` keeps whole lines while they fit and then one shortened
    line; ``chars`` cuts at ``max_chars``; ``none`` keeps everything.
    """
    if len(content) <= max_chars or mode == "none":
        return content

    if mode == "lines":
        kept = []
        used = 0
        for line in content.split("\n"):
            if used + len(line) > max_chars:
                kept.append(line[:line_tail_chars] + ELLIPSIS)
                break
            kept.append(line)
            used += len(line)
        return "\n".join(kept)

    return content[:max_chars] + ELLIPSIS
