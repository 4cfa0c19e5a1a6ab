from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable


# Chunking constants are sized for CJK report text, where one character is roughly one word.
CHUNK_SIZE_CHARS = 600
CHUNK_OVERLAP_CHARS = 100
MIN_CHUNK_CHARS = 100

SENTENCE_TERMINATORS = frozenset("。！？；：.!?")
DEFAULT_SECTION = "general"
SECTION_KEYWORDS: tuple[str, ...] = (
    "性格特征",
    "事业运",
    "财运",
    "感情运",
    "健康运",
    "人际关系",
    "命理分析",
    "大运",
    "流年",
    "十神",
    "五行",
    "原局",
    "建议",
    "总结",
)

_MARKDOWN_HEADING_RE = re.compile(r"^[ \t]*(#{1,6}[ \t]+(.+?))[ \t#]*$", re.MULTILINE)
# Short standalone lines carrying a section keyword act as headings in plain-text reports.
_KEYWORD_HEADING_MAX_CHARS = 24


@dataclass(frozen=True)
class ContentChunk:
    chunk_index: int
    content: str
    section: str
    start_char: int
    end_char: int
    word_count: int

    def metadata(self) -> dict[str, Any]:
        return {
            "section": self.section,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "word_count": self.word_count,
        }


@dataclass(frozen=True)
class _Window:
    # start includes the overlap seed; own_start is where this chunk's new sentences begin.
    start: int
    own_start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


def _stripped_span(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return start, end


def _sentence_spans(text: str) -> list[tuple[int, int]]:
    # Offsets rather than copies so chunks stay exact slices of the source text.
    spans: list[tuple[int, int]] = []
    start = 0
    for idx, char in enumerate(text):
        if char in SENTENCE_TERMINATORS:
            span = _stripped_span(text, start, idx + 1)
            if span is not None:
                spans.append(span)
            start = idx + 1
    span = _stripped_span(text, start, len(text))
    if span is not None:
        spans.append(span)
    return spans


def _bounded_spans(spans: Iterable[tuple[int, int]], size: int) -> Iterable[tuple[int, int]]:
    # A sentence longer than a whole chunk is cut into fixed windows.
    for start, end in spans:
        if end - start <= size:
            yield start, end
            continue
        cursor = start
        while cursor < end:
            yield cursor, min(end, cursor + size)
            cursor += size


def _seed_start(text: str, previous: _Window, next_start: int, overlap: int) -> int:
    if overlap <= 0:
        return next_start
    start = max(previous.start, next_start - overlap)
    while start < next_start and text[start].isspace():
        start += 1
    return start


def _merge_small(windows: list[_Window], *, max_length: int, min_chunk: int) -> list[_Window]:
    merged: list[_Window] = []
    for window in windows:
        if merged:
            previous = merged[-1]
            too_small = window.length < min_chunk or previous.length < min_chunk
            if too_small and window.end - previous.start <= max_length:
                merged[-1] = _Window(previous.start, previous.own_start, window.end)
                continue
        merged.append(window)
    return merged


def _chunk_windows(text: str, chunk_size: int, overlap: int, min_chunk: int) -> list[_Window]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    windows: list[_Window] = []
    seed_start = own_start = end = -1
    for start, stop in _bounded_spans(_sentence_spans(text), chunk_size):
        if own_start < 0:
            seed_start = own_start = start
        elif stop - seed_start > chunk_size:
            flushed = _Window(seed_start, own_start, end)
            windows.append(flushed)
            seed_start = _seed_start(text, flushed, start, overlap)
            own_start = start
        end = stop
    if own_start >= 0:
        windows.append(_Window(seed_start, own_start, end))
    # A short tail only ever adds under min_chunk of its own text to its neighbour.
    return _merge_small(
        windows, max_length=chunk_size + max(overlap, min_chunk), min_chunk=min_chunk
    )


def split_into_chunks(
    text: str,
    chunk_size: int = CHUNK_SIZE_CHARS,
    overlap: int = CHUNK_OVERLAP_CHARS,
    min_chunk: int = MIN_CHUNK_CHARS,
) -> list[str]:
    if not text or not text.strip():
        return []
    return [text[w.start : w.end] for w in _chunk_windows(text, chunk_size, overlap, min_chunk)]


def _is_keyword_line(stripped: str) -> bool:
    if not stripped or len(stripped) > _KEYWORD_HEADING_MAX_CHARS or stripped.startswith("#"):
        return False
    # A trailing colon is allowed; any other terminator makes it a sentence, not a heading.
    return not any(char in SENTENCE_TERMINATORS for char in stripped.rstrip("：:"))


def find_headings(text: str) -> list[tuple[int, str]]:
    headings: dict[int, str] = {}
    for match in _MARKDOWN_HEADING_RE.finditer(text):
        headings[match.start(1)] = match.group(2).strip()

    offset = 0
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if _is_keyword_line(stripped):
            keyword = next((k for k in SECTION_KEYWORDS if k in stripped), None)
            if keyword is not None:
                headings[offset + len(line) - len(line.lstrip())] = keyword
        offset += len(line)
    return sorted(headings.items())


def _section_for(text: str, headings: list[tuple[int, str]], window: _Window) -> str:
    # Nearest heading at or before the chunk's own content; overlap seeds belong to the prior chunk.
    section: str | None = None
    for position, name in headings:
        if position > window.own_start:
            break
        section = name
    if section is not None:
        return section
    content = text[window.start : window.end]
    for keyword in SECTION_KEYWORDS:
        if keyword in content:
            return keyword
    return DEFAULT_SECTION


def build_content_chunks(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    overlap: int = CHUNK_OVERLAP_CHARS,
    min_chunk: int = MIN_CHUNK_CHARS,
) -> list[ContentChunk]:
    if not text or not text.strip():
        return []
    headings = find_headings(text)
    chunks: list[ContentChunk] = []
    for index, window in enumerate(_chunk_windows(text, chunk_size, overlap, min_chunk)):
        content = text[window.start : window.end]
        chunks.append(
            ContentChunk(
                chunk_index=index,
                content=content,
                section=_section_for(text, headings, window),
                start_char=window.start,
                end_char=window.end,
                # Character count stands in for word count in CJK text.
                word_count=len(content),
            )
        )
    return chunks
