from course_mapping.schemas import CourseRecord, MappingResult, SecondaryMapping, UsageCounters
from course_mapping.summary import compute_remap_summary, compute_summary


def test_counts_by_status_and_method():
    recs = [CourseRecord(name=f"C{i}") for i in range(5)]
    results = [
        MappingResult(record=recs[0], status="mapped", match_method="CODE_MATCH", confidence=100),
        MappingResult(record=recs[1], status="mapped", match_method="CODE_TRIM_MATCH", confidence=85),
        MappingResult(record=recs[2], status="mapped", match_method="SEMANTIC_MATCH", confidence=90),
        MappingResult(record=recs[3], status="flagged_for_review", match_method="SEMANTIC_MATCH", confidence=60),
        MappingResult(record=recs[4]),
    ]
    usage = UsageCounters(calls_attempted=3, calls_succeeded=2, estimated_prompt_tokens=1200)

    stats = compute_summary(recs, results, usage, errors=["bad code"], warnings=["odd run"])

    assert stats.total_processed == 5
    assert stats.code_matches == 1
    assert stats.trim_matches == 1
    assert stats.semantic_matches == 2
    assert stats.newly_mapped == 4
    assert stats.flagged_for_review == 1
    assert stats.still_unmapped == 1
    assert stats.api_calls == 3
    assert stats.estimated_tokens == 1200
    assert stats.validation_errors == ["bad code"]
    assert stats.warnings == ["odd run"]


def test_empty_run():
    stats = compute_summary([], [])
    assert stats.to_dict()["total_processed"] == 0
    assert stats.validation_errors == []


def test_remap_summary_buckets_confidence():
    rec = CourseRecord(name="Art")
    suggestions = [
        SecondaryMapping(record=rec, suggested_code="A", confidence=95),
        SecondaryMapping(record=rec, suggested_code="B", confidence=85),
        SecondaryMapping(record=rec, suggested_code="C", confidence=70),
        SecondaryMapping(record=rec, suggested_code="D", confidence=40),
        SecondaryMapping(record=rec),
    ]
    stats = compute_remap_summary(suggestions, UsageCounters(calls_attempted=1), errors=["x"])
    assert stats.total_courses == 5
    assert stats.suggestions == 4
    assert stats.no_suggestion == 1
    assert stats.high_confidence == 2
    assert stats.low_confidence == 1
    assert stats.api_calls == 1
    assert stats.validation_errors == ["x"]
