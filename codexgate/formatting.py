"""Reply text helpers: normalization, truncation and chunking."""

from typing import List


def normalize_text(text) -> str:
    if not text:
        return ""
    return str(text).replace("\r\n", "\n").strip()


def trim_output(text: str, max_chars: int) -> str:
    """Truncate text to max_chars, appending an explicit marker."""
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n[truncated to {max_chars} chars]"


def split_chunks(text: str, max_size: int) -> List[str]:
    """Split text into chunks of at most max_size characters.

    Lines are kept whole where possible; consecutive lines are packed
    into one chunk while they fit. A single line longer than max_size
    is hard-split.
    """
    if not text:
        return []
    if len(text) <= max_size:
        return [text]

    chunks: List[str] = []
    current = ""

    for line in text.split("\n"):
        if len(line) > max_size:
            if current:
                chunks.append(current)
                current = ""
            for i in range(0, len(line), max_size):
                chunks.append(line[i:i + max_size])
            continue

        if not current:
            current = line
            continue

        if len(current) + len(line) + 1 > max_size:
            chunks.append(current)
            current = line
            continue

        current += f"\n{line}"

    if current:
        chunks.append(current)
    return chunks
