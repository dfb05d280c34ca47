"""Sentence-aligned text chunking for knowledge documents."""
from __future__ import annotations

from typing import List
import re

DEFAULT_MAX_CHARS = 800

# Split after a sentence terminator, keeping it attached to its sentence.
_SENTENCE_END = re.compile(r"(?<=[。！？!?.\n])")


def split_sentences(text: str) -> List[str]:
    return [part for part in _SENTENCE_END.split(text) if part]


def _hard_split(sentence: str, max_chars: int) -> List[str]:
    return [sentence[i:i + max_chars] for i in range(0, len(sentence), max_chars)]


def chunk_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> List[str]:
    """Greedily pack whole sentences into chunks of at most ``max_chars``.

    A sentence is only cut when it is longer than ``max_chars`` on its own.
    Empty or whitespace-only text yields no chunks.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    trimmed = (text or "").strip()
    if not trimmed:
        return []
    chunks: List[str] = []
    buffer = ""
    for sentence in split_sentences(trimmed):
        if len(sentence) > max_chars:
            if buffer:
                chunks.append(buffer)
                buffer = ""
            pieces = _hard_split(sentence, max_chars)
            chunks.extend(pieces[:-1])
            buffer = pieces[-1]
            continue
        if buffer and len(buffer) + len(sentence) > max_chars:
            chunks.append(buffer)
            buffer = sentence
        else:
            buffer += sentence
    if buffer:
        chunks.append(buffer)
    return chunks
