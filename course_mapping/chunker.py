from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import PreconditionError
from .schemas import FormatTag, PipelineConfig, RawChunk


# Probes
PIPE_ROW_RE = re.compile(r"^[^\n|]*\|[^\n|]*\|.*$", re.MULTILINE)
SEVEN_DIGIT_CODE_RE = re.compile(r"(?<!\d)\d{7}(?!\d)")
SCHOOL_HEADER_RE = re.compile(
    r"^\s*(?:[A-Z][\w.'&-]*\s+){0,6}(?:High School|Middle School|Elementary School|Academy|School of\b)",
    re.MULTILINE,
)
ASTERISK_HEADING_RE = re.compile(r"^[ \t]*[A-Z][A-Za-z0-9 &/,'()-]{2,80}\*+[ \t]*$", re.MULTILINE)

# Section boundaries for loosely structured prose; each match starts a new section
SECTION_BOUNDARY_RE = re.compile(
    r"\n(?=[A-Z][A-Z \t]{3,}:|\d+\.\s+[A-Z]|\n[A-Z][A-Z \t]+\n)"
)

MIN_PIPE_ROWS = 3
MIN_SEVEN_DIGIT_CODES = 3


@dataclass(frozen=True)
class FormatProbe:
    pipe_rows: int
    seven_digit_codes: int
    school_headers: int
    asterisk_headings: int

    @property
    def format_tag(self) -> FormatTag:
        if self.pipe_rows >= MIN_PIPE_ROWS:
            return "tabular-pipe-delimited"
        if self.seven_digit_codes >= MIN_SEVEN_DIGIT_CODES or (
            self.school_headers > 0 and self.asterisk_headings > 0
        ):
            return "code-list"
        return "plain"

    @property
    def is_dense(self) -> bool:
        return self.format_tag != "plain"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def probe_format(text: str) -> FormatProbe:
    return FormatProbe(
        pipe_rows=len(PIPE_ROW_RE.findall(text)),
        seven_digit_codes=len(SEVEN_DIGIT_CODE_RE.findall(text)),
        school_headers=len(SCHOOL_HEADER_RE.findall(text)),
        asterisk_headings=len(ASTERISK_HEADING_RE.findall(text)),
    )


def _window_spans(start: int, end: int, max_chars: int, min_chars: int) -> List[Tuple[int, int]]:
    """Equal-length windows over [start, end); a short tail joins the previous window."""
    length = end - start
    if length <= max_chars:
        return [(start, end)]
    n = math.ceil(length / max_chars)
    size = math.ceil(length / n)
    spans: List[Tuple[int, int]] = []
    i = start
    while i < end:
        j = min(i + size, end)
        if spans and (j - i) < min_chars:
            prev_start, _ = spans.pop()
            spans.append((prev_start, j))
        else:
            spans.append((i, j))
        i = j
    return spans


def _section_spans(text: str) -> List[Tuple[int, int]]:
    cuts = [0] + [m.start() for m in SECTION_BOUNDARY_RE.finditer(text) if m.start() > 0] + [len(text)]
    spans: List[Tuple[int, int]] = []
    for a, b in zip(cuts, cuts[1:]):
        if b > a:
            spans.append((a, b))
    return spans


def _pack_sections(
    text: str, sections: List[Tuple[int, int]], max_tokens: int, min_chars: int
) -> List[Tuple[int, int]]:
    max_chars = max_tokens * 4
    packed: List[Tuple[int, int]] = []
    cur: Optional[Tuple[int, int]] = None

    for a, b in sections:
        if estimate_tokens(text[a:b]) > max_tokens:
            if cur is not None:
                packed.append(cur)
                cur = None
            packed.extend(_window_spans(a, b, max_chars, min_chars))
            continue
        if cur is None:
            cur = (a, b)
        elif estimate_tokens(text[cur[0]:b]) > max_tokens:
            packed.append(cur)
            cur = (a, b)
        else:
            cur = (cur[0], b)

    if cur is not None:
        packed.append(cur)
    return packed


def chunk_document(text: str, config: Optional[PipelineConfig] = None) -> List[RawChunk]:
    """
    Split document text into ordered, contiguous chunks.

    - Dense catalog formats (pipe tables, 7-digit code lists) stay whole so
      rows keep their headers, unless the text exceeds the hard ceiling; then
      equal-length windows are cut.
    - Prose is split at section boundaries and greedily packed up to the
      token budget.

    Chunk spans partition the input: no gaps, no overlap.
    """
    if not text or not text.strip():
        raise PreconditionError("Document text is empty")
    config = config or PipelineConfig()

    probe = probe_format(text)
    tag = probe.format_tag

    if probe.is_dense:
        spans = _window_spans(0, len(text), config.dense_chunk_max_chars, config.min_chunk_chars)
    else:
        spans = _pack_sections(text, _section_spans(text), config.max_chunk_tokens, config.min_chunk_chars)

    return [
        RawChunk(
            index=i,
            start=a,
            end=b,
            format_tag=tag,
            estimated_tokens=estimate_tokens(text[a:b]),
            text=text[a:b],
        )
        for i, (a, b) in enumerate(spans)
    ]
