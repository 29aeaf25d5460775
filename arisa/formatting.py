"""Splitting long replies into channel-sized chunks."""

from __future__ import annotations

MAX_MESSAGE_LENGTH = 4096
CHUNK_MARKER = "\n---CHUNK---\n"


def chunk_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split ``text`` into pieces no longer than ``limit``.

    Prefers to cut at a newline as long as that keeps at least half of the
    window; otherwise cuts hard at ``limit``.
    """
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, limit + 1)
        if split_at == -1 or split_at < limit * 0.5:
            split_at = limit
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    return chunks


def split_response(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Honour explicit chunk markers from the worker, else chunk by size."""
    if CHUNK_MARKER.strip() in text:
        parts = [p for p in text.split(CHUNK_MARKER) if p.strip()]
        return [chunk for part in parts for chunk in chunk_message(part, limit)]
    return chunk_message(text, limit)
