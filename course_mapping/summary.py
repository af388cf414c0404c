from __future__ import annotations

from typing import Optional, Sequence

from .schemas import CourseRecord, MappingResult, MappingSessionStats, RemapStats, SecondaryMapping, UsageCounters

HIGH_CONFIDENCE = 85
LOW_CONFIDENCE = 65


def compute_summary(
    records: Sequence[CourseRecord],
    results: Sequence[MappingResult],
    usage: Optional[UsageCounters] = None,
    errors: Optional[Sequence[str]] = None,
    warnings: Optional[Sequence[str]] = None,
) -> MappingSessionStats:
    """Aggregate one run's results. Newly mapped counts both mapped and flagged results."""
    stats = MappingSessionStats(total_processed=len(records))
    for r in results:
        if r.status == "unmapped":
            stats.still_unmapped += 1
            continue
        stats.newly_mapped += 1
        if r.status == "flagged_for_review":
            stats.flagged_for_review += 1
        if r.match_method == "CODE_MATCH":
            stats.code_matches += 1
        elif r.match_method == "CODE_TRIM_MATCH":
            stats.trim_matches += 1
        elif r.match_method == "SEMANTIC_MATCH":
            stats.semantic_matches += 1

    if usage is not None:
        stats.api_calls = usage.calls_attempted
        stats.estimated_tokens = usage.estimated_prompt_tokens
    stats.validation_errors = list(errors or [])
    stats.warnings = list(warnings or [])
    return stats


def compute_remap_summary(
    suggestions: Sequence[SecondaryMapping],
    usage: Optional[UsageCounters] = None,
    errors: Optional[Sequence[str]] = None,
    warnings: Optional[Sequence[str]] = None,
) -> RemapStats:
    stats = RemapStats(total_courses=len(suggestions))
    for s in suggestions:
        if s.suggested_code is None:
            stats.no_suggestion += 1
            continue
        stats.suggestions += 1
        if s.confidence >= HIGH_CONFIDENCE:
            stats.high_confidence += 1
        elif s.confidence < LOW_CONFIDENCE:
            stats.low_confidence += 1

    if usage is not None:
        stats.api_calls = usage.calls_attempted
        stats.estimated_tokens = usage.estimated_prompt_tokens
    stats.validation_errors = list(errors or [])
    stats.warnings = list(warnings or [])
    return stats
