from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .deterministic import CatalogIndex, normalize_code
from .schemas import (
    MATCH_METHODS,
    CourseRecord,
    MappingCandidate,
    MappingResult,
    PipelineConfig,
)

logger = logging.getLogger(__name__)


class MappingValidationError(Exception):
    """One rejected mapping. Collected per session, never fatal to the batch."""

    def __init__(self, candidate: MappingCandidate, reason: str):
        super().__init__(reason)
        self.candidate = candidate
        self.reason = reason

    def describe(self) -> str:
        name = self.candidate.source_name
        return f"{name!r} -> {self.candidate.mapped_code!r}: {self.reason}"


@dataclass
class ValidationOutcome:
    results: List[MappingResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _as_int_confidence(val: Any) -> Optional[int]:
    if isinstance(val, bool):
        return None
    if isinstance(val, int):
        return val
    if isinstance(val, float) and val.is_integer():
        return int(val)
    return None


def resolve_source(candidate: MappingCandidate, records: Sequence[CourseRecord]) -> int:
    """Position of the input record a candidate refers to."""
    sid = candidate.source_id
    name = candidate.source_name
    if name is not None and not isinstance(name, str):
        raise MappingValidationError(candidate, "source_name must be a string")

    if sid is not None:
        if isinstance(sid, bool) or not isinstance(sid, int) or not 0 <= sid < len(records):
            raise MappingValidationError(candidate, f"source id {sid!r} does not refer to an input course")
        if name is not None and normalize_code(name) != normalize_code(records[sid].name):
            raise MappingValidationError(
                candidate, f"source name does not match input course {records[sid].name!r}"
            )
        return sid

    if not name:
        raise MappingValidationError(candidate, "missing source reference")
    matches = [i for i, r in enumerate(records) if normalize_code(r.name) == normalize_code(name)]
    if not matches:
        raise MappingValidationError(candidate, "source name doesn't match any input course")
    if len(matches) > 1:
        raise MappingValidationError(candidate, "source name matches several input courses")
    return matches[0]


def validate_candidate(
    candidate: MappingCandidate,
    records: Sequence[CourseRecord],
    index: CatalogIndex,
    config: Optional[PipelineConfig] = None,
) -> Tuple[int, MappingResult, List[str]]:
    """
    Turn one untrusted candidate into a MappingResult.

    Returns (record position, result, notes). Notes describe dropped
    alternative codes; they do not reject the mapping.

    Raises:
        MappingValidationError: the candidate must not be persisted.
    """
    config = config or PipelineConfig()
    pos = resolve_source(candidate, records)

    code = candidate.mapped_code
    if not isinstance(code, str) or not code.strip():
        raise MappingValidationError(candidate, "missing or invalid mapped code")
    entry = index.get_entry(code)
    if entry is None:
        raise MappingValidationError(candidate, f"INVALID CODE {code!r} - not in master catalog")

    confidence = _as_int_confidence(candidate.confidence)
    if confidence is None:
        raise MappingValidationError(candidate, f"confidence must be an integer, got {candidate.confidence!r}")
    if not 0 <= confidence <= 100:
        raise MappingValidationError(candidate, f"confidence {confidence} outside 0-100 range")

    if candidate.match_method not in MATCH_METHODS:
        raise MappingValidationError(candidate, f"invalid match method {candidate.match_method!r}")

    reasoning = candidate.reasoning if candidate.reasoning is not None else ""
    if not isinstance(reasoning, str):
        raise MappingValidationError(candidate, "reasoning must be a string")

    notes: List[str] = []
    alternatives: List[str] = []
    alts = candidate.alternative_codes
    if alts is not None and not isinstance(alts, list):
        notes.append(f"{candidate.source_name!r}: alternative codes must be a list, dropped")
        alts = []
    for alt in alts or []:
        alt_entry = index.get_entry(alt) if isinstance(alt, str) else None
        if alt_entry is None:
            notes.append(f"{candidate.source_name!r}: alternative code {alt!r} is invalid, dropped")
            continue
        if alt_entry.code != entry.code and alt_entry.code not in alternatives:
            alternatives.append(alt_entry.code)

    status = "mapped" if confidence >= config.confidence_threshold else "flagged_for_review"
    result = MappingResult(
        record=records[pos],
        status=status,
        # Canonical catalog spelling, never the suggested variant
        mapped_code=entry.code,
        mapped_category=entry.category or None,
        mapped_program_area=entry.program_area or None,
        match_method=candidate.match_method,
        confidence=confidence,
        reasoning=reasoning,
        alternative_codes=alternatives,
    )
    return pos, result, notes


def detect_confidence_anomalies(
    results: Sequence[MappingResult],
    config: Optional[PipelineConfig] = None,
) -> List[str]:
    """Soft warnings for runs where suggested confidences cluster at the extremes."""
    config = config or PipelineConfig()
    confidences = [
        r.confidence
        for r in results
        if r.match_method == "SEMANTIC_MATCH" and r.confidence is not None
    ]
    if not confidences:
        return []
    too_high = sum(1 for c in confidences if c > config.anomaly_high)
    too_low = sum(1 for c in confidences if c < config.anomaly_low)
    fraction = (too_high + too_low) / len(confidences)
    if fraction <= config.anomaly_fraction:
        return []
    return [
        f"{too_high + too_low} of {len(confidences)} semantic mappings have extreme confidence"
        f" ({too_high} >{config.anomaly_high}, {too_low} <{config.anomaly_low}); review this run"
    ]


def validate_candidates(
    candidates: Sequence[MappingCandidate],
    records: Sequence[CourseRecord],
    index: CatalogIndex,
    config: Optional[PipelineConfig] = None,
) -> ValidationOutcome:
    """
    Validate every candidate against the catalog snapshot and the input batch.

    Produces exactly one result per input record, in input order; records
    without an accepted candidate stay unmapped.
    """
    config = config or PipelineConfig()
    accepted: Dict[int, MappingResult] = {}
    out = ValidationOutcome()

    for cand in candidates:
        try:
            pos, result, notes = validate_candidate(cand, records, index, config)
        except MappingValidationError as e:
            out.errors.append(e.describe())
            logger.warning("Rejected mapping %s", e.describe())
            continue
        out.errors.extend(notes)
        if pos in accepted:
            msg = f"{cand.source_name!r} -> {cand.mapped_code!r}: duplicate mapping for an already mapped course"
            out.errors.append(msg)
            continue
        accepted[pos] = result

    out.results = [accepted.get(i) or MappingResult(record=r) for i, r in enumerate(records)]
    out.warnings = detect_confidence_anomalies(out.results, config)
    for w in out.warnings:
        logger.warning(w)
    return out
