"""Text normalization and chunking service.

Lengths are measured in characters. A chunk never exceeds ``chunk_size``;
the overlap carried from the previous chunk is dropped when keeping it would
break that bound.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass


@dataclass
class TextChunk:
    """A chunk of text with its position index."""
    index: int
    content: str
    char_count: int


_INLINE_SPACE = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NEWLINE = re.compile(r" *\n *")
_BLANK_LINES = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """NFC-normalize, drop control/format characters and collapse whitespace.

    Paragraph breaks survive as a single blank line.
    """
    text = unicodedata.normalize("NFC", text).replace("\r\n", "\n").replace("\r", "\n")
    text = "".join(
        ch for ch in text
        if ch in "\n\t" or unicodedata.category(ch) not in ("Cc", "Cf")
    )
    text = _INLINE_SPACE.sub(" ", text)
    text = _SPACE_AROUND_NEWLINE.sub("\n", text)
    return _BLANK_LINES.sub("\n\n", text).strip()


# Coarse to fine; "" is the character-level fallback
_SEPARATORS = ("\n\n", "\n", ". ", "? ", "! ", "; ", ", ", " ", "")


def chunk_text(
    text: str,
    chunk_size: int = 1000,
    chunk_overlap: int = 150,
    separators: tuple[str, ...] | None = None,
) -> list[TextChunk]:
    """Split text into overlapping chunks using recursive character splitting.

    Args:
        text: The input text to chunk.
        chunk_size: Maximum characters per chunk.
        chunk_overlap: Characters carried over from the end of the previous chunk.
        separators: Ordered list of separators to try. Defaults to paragraph → character.

    Returns:
        List of TextChunk objects with contiguous indices starting at 0.

    Raises:
        ValueError: If the size/overlap combination is invalid.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")

    text = normalize_text(text)
    if not text:
        return []

    if len(text) <= chunk_size:
        return [TextChunk(index=0, content=text, char_count=len(text))]

    seps = separators or _SEPARATORS
    splits = _recursive_split(text, seps, chunk_size)

    contents: list[str] = []
    current = ""

    for split in splits:
        candidate = f"{current} {split}" if current else split
        if len(candidate) <= chunk_size:
            current = candidate
            continue

        contents.append(current)
        tail = _overlap_tail(current, chunk_overlap)
        seeded = f"{tail} {split}" if tail else split
        current = seeded if len(seeded) <= chunk_size else split

    if current:
        contents.append(current)

    return [
        TextChunk(index=i, content=content, char_count=len(content))
        for i, content in enumerate(contents)
    ]


def _overlap_tail(chunk: str, chunk_overlap: int) -> str:
    """Trailing ``chunk_overlap`` characters, trimmed to start on a word."""
    if chunk_overlap <= 0 or len(chunk) <= chunk_overlap:
        return ""
    tail = chunk[-chunk_overlap:]
    space = tail.find(" ")
    if 0 <= space < len(tail) - 1:
        tail = tail[space + 1:]
    return tail.strip()


def _recursive_split(text: str, separators: tuple[str, ...], chunk_size: int) -> list[str]:
    """Recursively split text until every piece fits in ``chunk_size``."""
    if not separators:
        return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]

    sep = separators[0]
    remaining_seps = separators[1:]

    if sep == "":
        # Character-level split
        return [text[i:i + chunk_size] for i in range(0, len(text), chunk_size)]

    parts = text.split(sep)
    # Keep sentence punctuation attached to the sentence it ends
    keep = sep.rstrip()

    result: list[str] = []
    for i, part in enumerate(parts):
        if keep and i < len(parts) - 1:
            part = part + keep
        part = part.strip()
        if not part:
            continue
        if len(part) <= chunk_size:
            result.append(part)
        else:
            # Still too large, recurse with the next separator
            result.extend(_recursive_split(part, remaining_seps, chunk_size))

    return result
