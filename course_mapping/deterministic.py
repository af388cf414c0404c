from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .schemas import CourseRecord, MappingCandidate, MasterCatalogEntry, PipelineConfig

logger = logging.getLogger(__name__)

CODE_MATCH_CONFIDENCE = 100
CODE_TRIM_MATCH_CONFIDENCE = 85

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def normalize_code(code: Optional[str]) -> str:
    if not code or not isinstance(code, str):
        return ""
    return _NON_ALNUM_RE.sub("", code.lower())


class CatalogIndex:
    """Read-only lookups over one master catalog snapshot."""

    def __init__(self, entries: Iterable[MasterCatalogEntry], prefix_length: int = 7):
        self.entries: List[MasterCatalogEntry] = list(entries)
        self.prefix_length = prefix_length
        self.by_code: Dict[str, MasterCatalogEntry] = {}
        self.by_prefix: Dict[str, MasterCatalogEntry] = {}
        for e in self.entries:
            norm = normalize_code(e.code)
            if not norm:
                continue
            # First occurrence wins for both lookups
            self.by_code.setdefault(norm, e)
            self.by_prefix.setdefault(norm[:prefix_length], e)

    def __len__(self) -> int:
        return len(self.entries)

    def exists(self, code: Optional[str]) -> bool:
        return normalize_code(code) in self.by_code

    def get_entry(self, code: Optional[str]) -> Optional[MasterCatalogEntry]:
        return self.by_code.get(normalize_code(code))

    def valid_codes(self) -> List[str]:
        """Canonical codes in catalog order."""
        return [e.code for e in self.by_code.values()]


@dataclass
class DeterministicOutcome:
    candidates: List[MappingCandidate] = field(default_factory=list)
    unmapped: List[Tuple[int, CourseRecord]] = field(default_factory=list)
    code_matches: int = 0
    trim_matches: int = 0


def match_record(record: CourseRecord, index: CatalogIndex, source_id: Optional[int] = None) -> Optional[MappingCandidate]:
    norm = normalize_code(record.code)
    if not norm:
        return None

    entry = index.by_code.get(norm)
    if entry is not None:
        return MappingCandidate(
            source_name=record.name,
            source_code=record.code,
            source_id=source_id,
            mapped_code=entry.code,
            confidence=CODE_MATCH_CONFIDENCE,
            match_method="CODE_MATCH",
            reasoning="Exact code match after normalization",
        )

    # Prefix match only after exact matching failed
    entry = index.by_prefix.get(norm[: index.prefix_length])
    if entry is not None:
        return MappingCandidate(
            source_name=record.name,
            source_code=record.code,
            source_id=source_id,
            mapped_code=entry.code,
            confidence=CODE_TRIM_MATCH_CONFIDENCE,
            match_method="CODE_TRIM_MATCH",
            reasoning=f"First {index.prefix_length} characters of the code match {entry.code}",
        )
    return None


def deterministic_pass(
    records: List[CourseRecord],
    index: CatalogIndex,
    config: Optional[PipelineConfig] = None,
) -> DeterministicOutcome:
    if config is not None and config.code_prefix_length != index.prefix_length:
        index = CatalogIndex(index.entries, prefix_length=config.code_prefix_length)

    out = DeterministicOutcome()
    for i, record in enumerate(records):
        cand = match_record(record, index, source_id=i)
        if cand is None:
            out.unmapped.append((i, record))
        elif cand.match_method == "CODE_MATCH":
            out.candidates.append(cand)
            out.code_matches += 1
        else:
            out.candidates.append(cand)
            out.trim_matches += 1

    logger.info(
        "Deterministic pass: %d code matches, %d trim matches, %d unmapped",
        out.code_matches, out.trim_matches, len(out.unmapped),
    )
    return out
