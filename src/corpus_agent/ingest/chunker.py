"""Sentence-greedy chunking with trailing-word overlap."""

from __future__ import annotations

import re

from corpus_agent.config import ChunkingConfig

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def chunk_text(
    text: str,
    max_chars: int,
    overlap_words: int,
    min_chars: int = 20,
) -> list[str]:
    """Split text into bounded, overlapping chunks.

    Sentences are packed greedily into a buffer, joined by single spaces. When
    the next sentence and its joining space would push the buffer past
    `max_chars`, the buffer is closed as a chunk and the next buffer starts
    with the last `overlap_words` words of that chunk, followed by the
    sentence that overflowed. A single sentence longer than
    `max_chars` therefore ends up as a chunk of its own.

    Chunks shorter than `min_chars` are dropped. Empty or whitespace-only
    input produces no chunks.
    """

    if not text.strip():
        return []

    chunks: list[str] = []
    current = ""

    for sentence in _SENTENCE_SPLIT.split(text):
        if not sentence:
            continue
        if current and len(current) + 1 + len(sentence) > max_chars:
            closed = current.strip()
            chunks.append(closed)
            current = _overlap_seed(closed, overlap_words) + sentence
        else:
            current += (" " if current else "") + sentence

    if current.strip():
        chunks.append(current.strip())

    return [chunk for chunk in chunks if len(chunk) >= min_chars]


def _overlap_seed(chunk: str, overlap_words: int) -> str:
    if overlap_words <= 0:
        return ""
    words = chunk.split(" ")[-overlap_words:]
    return " ".join(words) + " "


class SentenceChunker:
    """Chunker bound to a `ChunkingConfig`."""

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk(self, text: str) -> list[str]:
        return chunk_text(
            text,
            max_chars=self.config.max_chars,
            overlap_words=self.config.overlap_words,
            min_chars=self.config.min_chunk_chars,
        )
