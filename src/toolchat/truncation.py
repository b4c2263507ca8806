from __future__ import annotations

from dataclasses import dataclass

MAX_LINES = 400
MAX_BYTES = 16 * 1024  # 16 KB


@dataclass
class TruncateResult:
    content: str
    truncated: bool


def truncate_output(
    text: str,
    direction: str = "head",  # "head" | "tail"
    max_lines: int = MAX_LINES,
    max_bytes: int = MAX_BYTES,
) -> TruncateResult:
    """
    Apply line and byte caps to tool output before it is fed back to the
    model, appending a note with how much was hidden.
    """
    if not text:
        return TruncateResult(content="", truncated=False)

    encoded = text.encode("utf-8", errors="ignore")
    lines = text.splitlines()

    if len(lines) <= max_lines and len(encoded) <= max_bytes:
        return TruncateResult(content=text, truncated=False)

    kept: list[str] = []
    total_bytes = 0

    ordered = lines if direction == "head" else list(reversed(lines))
    for line in ordered:
        # +1 for the newline joining this line to the previous one
        line_bytes = len(line.encode("utf-8", errors="ignore")) + (1 if kept else 0)
        if len(kept) + 1 > max_lines or total_bytes + line_bytes > max_bytes:
            break
        kept.append(line)
        total_bytes += line_bytes

    if not kept and ordered:
        # A single oversized line: keep a byte-bounded slice of it.
        head = encoded[:max_bytes] if direction == "head" else encoded[-max_bytes:]
        kept = [head.decode("utf-8", errors="ignore")]
        total_bytes = len(head)

    if direction != "head":
        kept.reverse()

    preview = "\n".join(kept)
    hidden_lines = max(0, len(lines) - len(kept))
    hidden_bytes = max(0, len(encoded) - total_bytes)
    suffix = f"\n... {hidden_lines} lines / {hidden_bytes} bytes truncated ..."
    return TruncateResult(content=preview + suffix, truncated=True)
