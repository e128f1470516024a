#!/usr/bin/env python3
"""
Token-bounded, paragraph-aware text chunking for long content.

Text that fits the per-chunk ceiling is returned as one chunk. Longer text is
split on paragraph boundaries and packed into chunks; every chunk after the
first starts with an overlap tail (the last words of the previous chunk) so
context spanning a boundary is not lost. Paragraphs that are too large on their
own are split on sentence boundaries without overlap; a single sentence larger
than the ceiling becomes an oversized chunk by itself, unless it holds a run
without whitespace that is itself over the ceiling, in which case it is cut on
word boundaries and that run on character windows.

Each Chunk keeps its `core_text` separately from the overlap prefix, and the
core texts of all chunks concatenate back to the original input exactly.
"""

import math
import re
from dataclasses import dataclass
from typing import List

from config import get_logger
from tokens import CHARS_PER_TOKEN, WORDS_PER_TOKEN, conservative_tokens, estimate_tokens

logger = get_logger("chunker")

DEFAULT_MAX_TOKENS_PER_CHUNK = 6000
DEFAULT_OVERLAP_TOKENS = 200

SHORT_CONTENT_MAX_TOKENS = 4000
MEDIUM_CONTENT_MAX_TOKENS = 16000

_PARAGRAPH_BREAK = re.compile(r"(\n\s*\n)")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])(\s+)")
_WHITESPACE = re.compile(r"(\s+)")


@dataclass
class Chunk:
    text: str
    index: int
    token_count: int
    core_text: str
    overlap_text: str = ""
    is_first: bool = False
    is_last: bool = False


def get_chunking_strategy(token_count: int) -> str:
    """Classify content size: short (single call), medium or long (chunk and combine)."""
    if token_count <= SHORT_CONTENT_MAX_TOKENS:
        return "short"
    if token_count <= MEDIUM_CONTENT_MAX_TOKENS:
        return "medium"
    return "long"


def _split_keeping_separators(pattern: re.Pattern, text: str) -> List[str]:
    """Split text into units that each carry their trailing separator."""
    parts = pattern.split(text)
    units = []
    for i in range(0, len(parts), 2):
        unit = parts[i] + (parts[i + 1] if i + 1 < len(parts) else "")
        if unit:
            units.append(unit)
    return units


class _ChunkBuilder:
    def __init__(self, max_tokens: int, overlap_tokens: int):
        self.max_tokens = max_tokens
        self.overlap_words = math.ceil(overlap_tokens * WORDS_PER_TOKEN) if overlap_tokens > 0 else 0
        self.overlap_tokens = max(overlap_tokens, 0)
        self.chunks: List[Chunk] = []
        self.core = ""
        self.overlap = ""

    def _has_content(self) -> bool:
        return bool(self.core.strip())

    def _fits(self, unit: str) -> bool:
        return conservative_tokens(self.overlap + self.core + unit) <= self.max_tokens

    def _overlap_tail(self, core: str) -> str:
        if not self.overlap_words:
            return ""
        words = core.split()[-self.overlap_words:]
        if not words:
            return ""
        while len(words) > 1 and conservative_tokens(" ".join(words)) > self.overlap_tokens:
            words.pop(0)
        tail = " ".join(words)
        if conservative_tokens(tail) > self.overlap_tokens:
            # One unbroken run; keep its end
            tail = tail[-self.overlap_tokens * CHARS_PER_TOKEN:]
        return tail + "\n\n"

    def flush(self, carry_overlap: bool) -> None:
        if not self._has_content():
            return
        text = self.overlap + self.core
        self.chunks.append(Chunk(
            text=text,
            index=len(self.chunks),
            token_count=conservative_tokens(text),
            core_text=self.core,
            overlap_text=self.overlap,
        ))
        self.overlap = self._overlap_tail(self.core) if carry_overlap else ""
        self.core = ""

    def _start_with(self, unit: str) -> None:
        # Current chunk holds at most whitespace; drop the overlap if it would push us over
        if not self._fits(unit):
            self.overlap = ""
        self.core += unit

    def add_paragraph(self, unit: str) -> None:
        if conservative_tokens(unit) > self.max_tokens:
            self.flush(carry_overlap=True)
            self._add_sentences(unit)
            return
        if not self._has_content():
            self._start_with(unit)
        elif self._fits(unit):
            self.core += unit
        else:
            self.flush(carry_overlap=True)
            self._start_with(unit)

    def _add_sentences(self, paragraph: str) -> None:
        for sentence in _split_keeping_separators(_SENTENCE_BREAK, paragraph):
            if conservative_tokens(sentence) > self.max_tokens:
                self.flush(carry_overlap=False)
                self.overlap = ""
                self._add_oversized(sentence)
                continue
            if not self._has_content():
                self._start_with(sentence)
            elif self._fits(sentence):
                self.core += sentence
            else:
                self.flush(carry_overlap=False)
                self._start_with(sentence)

    def _add_oversized(self, sentence: str) -> None:
        runs = _split_keeping_separators(_WHITESPACE, sentence)
        if all(conservative_tokens(run) <= self.max_tokens for run in runs):
            logger.debug(f"Emitting oversized sentence chunk (~{conservative_tokens(sentence)} tokens)")
            self.core += sentence
            self.flush(carry_overlap=False)
            return

        window = self.max_tokens * CHARS_PER_TOKEN
        logger.debug(f"Cutting unbroken text (~{conservative_tokens(sentence)} tokens) into {window}-character windows")
        for run in runs:
            if conservative_tokens(run) <= self.max_tokens:
                pieces = [run]
            else:
                pieces = [run[i:i + window] for i in range(0, len(run), window)]
            for piece in pieces:
                if self._has_content() and not self._fits(piece):
                    self.flush(carry_overlap=False)
                self.core += piece
        self.flush(carry_overlap=False)

    def finish(self) -> List[Chunk]:
        if self._has_content() or not self.chunks:
            self.flush(carry_overlap=False)
        elif self.core:
            # Trailing whitespace belongs to the last chunk so nothing is lost
            last = self.chunks[-1]
            last.core_text += self.core
            last.text += self.core
            self.core = ""
        return self.chunks


class Chunker:
    """Split text into ordered, token-bounded chunks.

    Args:
        max_tokens_per_chunk: Ceiling for each chunk's estimated tokens (overlap included)
        overlap_tokens: Size of the overlap tail carried into the next chunk
        preserve_paragraphs: Split on paragraph/sentence boundaries; when False, split
            on fixed character windows (4 characters per token)
    """

    def __init__(
        self,
        max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK,
        overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        preserve_paragraphs: bool = True,
    ):
        if max_tokens_per_chunk <= 0:
            raise ValueError("max_tokens_per_chunk must be positive")
        self.max_tokens_per_chunk = max_tokens_per_chunk
        self.overlap_tokens = max(overlap_tokens, 0)
        self.preserve_paragraphs = preserve_paragraphs

    def chunk(self, text: str) -> List[Chunk]:
        text = text or ""
        if conservative_tokens(text) <= self.max_tokens_per_chunk:
            chunks = [Chunk(text=text, index=0, token_count=conservative_tokens(text), core_text=text)]
        elif self.preserve_paragraphs:
            builder = _ChunkBuilder(self.max_tokens_per_chunk, self.overlap_tokens)
            for paragraph in _split_keeping_separators(_PARAGRAPH_BREAK, text):
                builder.add_paragraph(paragraph)
            chunks = builder.finish()
        else:
            chunks = self._chunk_by_characters(text)

        for i, chunk in enumerate(chunks):
            chunk.index = i
            chunk.is_first = i == 0
            chunk.is_last = i == len(chunks) - 1
        if len(chunks) > 1:
            logger.info(f"Split ~{conservative_tokens(text)} tokens into {len(chunks)} chunks")
        return chunks

    def _chunk_by_characters(self, text: str) -> List[Chunk]:
        window = self.max_tokens_per_chunk * CHARS_PER_TOKEN
        overlap_chars = self.overlap_tokens * CHARS_PER_TOKEN
        step = window - overlap_chars
        if step <= 0:
            step, overlap_chars = window, 0
        chunks: List[Chunk] = []
        start = 0
        while start < len(text):
            # The first window has no overlap, so it may use the full width
            end = start + (window if not chunks else step)
            core = text[start:end]
            overlap = text[max(start - overlap_chars, 0):start] if chunks else ""
            chunk_text = overlap + core
            chunks.append(Chunk(
                text=chunk_text,
                index=len(chunks),
                token_count=estimate_tokens(chunk_text),
                core_text=core,
                overlap_text=overlap,
            ))
            start = end
        return chunks


def chunk_content(
    text: str,
    max_tokens_per_chunk: int = DEFAULT_MAX_TOKENS_PER_CHUNK,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
    preserve_paragraphs: bool = True,
) -> List[Chunk]:
    """Convenience wrapper around Chunker(...).chunk(text)."""
    return Chunker(max_tokens_per_chunk, overlap_tokens, preserve_paragraphs).chunk(text)
