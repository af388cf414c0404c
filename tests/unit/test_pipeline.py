import asyncio
import json

import pytest

from course_mapping.errors import PreconditionError
from course_mapping.llm_client import LlmTransientError, RateLimitExceeded
from course_mapping.pipeline import (
    extract_and_save,
    extract_document,
    map_records,
    refine_extraction,
    remap_extraction,
)
from course_mapping.resilient_caller import RequestLog, ResilientCaller
from course_mapping.schemas import CourseRecord, Credential
from course_mapping.summary import compute_summary

HEADINGS = ["ALPHA", "BRAVO", "CHARLIE", "DELTA", "ECHO"]


def _document() -> str:
    return "\n".join(f"{h}:\n" + f"{h.title()} course covers many useful things. " * 5 for h in HEADINGS)


def _heading_in(messages) -> str:
    user = messages[-1]["content"]
    return next(h for h in HEADINGS if f"{h}:" in user)


def _courses_for(messages) -> str:
    h = _heading_in(messages).title()
    return json.dumps({"courses": [{"CourseName": f"{h} 101", "Category": h}]})


@pytest.fixture
def config(fast_config):
    fast_config.max_chunk_tokens = 60
    return fast_config


def test_extracts_every_chunk_in_order(fake_backend, config):
    backend = fake_backend(lambda n, m, mode: _courses_for(m))
    events = []
    records = asyncio.run(
        extract_document(_document(), "guide.txt", ResilientCaller(backend, config), config, on_progress=events.append)
    )
    assert [r.name for r in records] == [f"{h.title()} 101" for h in HEADINGS]
    assert all(r.source_file == "guide.txt" for r in records)
    assert [e.status for e in events if e.status != "processing"] == ["chunk_complete"] * 5
    assert all(m["mode"] == "extract" for m in backend.calls)


def test_failing_chunk_yields_nothing_and_processing_continues(fake_backend, config):
    def responder(n, messages, mode):
        if _heading_in(messages) == "BRAVO":
            return LlmTransientError("connection reset")
        return _courses_for(messages)

    backend = fake_backend(responder)
    records = asyncio.run(extract_document(_document(), "guide.txt", ResilientCaller(backend, config), config))
    assert [r.name for r in records] == ["Alpha 101", "Charlie 101", "Delta 101", "Echo 101"]
    assert len(backend.calls) == 7


def test_rate_limit_on_second_chunk_aborts_session(fake_backend, config):
    def responder(n, messages, mode):
        if n == 2:
            return RateLimitExceeded("Too many requests", retry_after=30, key_id="primary")
        return _courses_for(messages)

    backend = fake_backend(responder)
    with pytest.raises(RateLimitExceeded) as excinfo:
        asyncio.run(extract_document(_document(), "guide.txt", ResilientCaller(backend, config), config))

    assert len(backend.calls) == 2
    assert excinfo.value.retry_after == 30
    assert [r.name for r in excinfo.value.partial_records] == ["Alpha 101"]


def test_cancellation_returns_partial_results(fake_backend, config):
    backend = fake_backend(lambda n, m, mode: _courses_for(m))
    records = asyncio.run(
        extract_document(
            _document(), "guide.txt", ResilientCaller(backend, config), config,
            should_continue=lambda: len(backend.calls) < 2,
        )
    )
    assert [r.name for r in records] == ["Alpha 101", "Bravo 101"]


def test_empty_document_fails_before_any_call(fake_backend, config):
    backend = fake_backend(lambda n, m, mode: _courses_for(m))
    with pytest.raises(PreconditionError):
        asyncio.run(extract_document("   ", "empty.txt", ResilientCaller(backend, config), config))
    assert backend.calls == []


def test_extract_and_save_reuses_identical_text(fake_backend, config, store):
    backend = fake_backend(lambda n, m, mode: _courses_for(m))
    caller = ResilientCaller(backend, config)
    first = asyncio.run(extract_and_save(_document(), "guide.txt", caller, store, config))
    second = asyncio.run(extract_and_save(_document(), "guide-copy.txt", caller, store, config))
    assert first == second
    assert len(backend.calls) == 5
    assert len(store.get_extraction(first)) == 5


def _seed(store, catalog, records):
    store.import_catalog(catalog)
    return store.save_extraction("guide.txt", records)


def _refine(store, extraction_id, backend, config, **kw):
    return asyncio.run(
        refine_extraction(
            extraction_id,
            Credential(key_id="test", api_key="sk-test"),
            store,
            client_factory=lambda credential, cfg: backend,
            config=config,
            **kw,
        )
    )


def test_refine_end_to_end(fake_backend, fast_config, store, catalog):
    records = [
        CourseRecord(name="Intro CS", category="Tech", code="CS-101"),
        CourseRecord(name="CS Principles", category="Tech", code="CS10100X9"),
        CourseRecord(name="Algebra One", category="Math"),
        CourseRecord(name="Made Up Course", category="Misc"),
        CourseRecord(name="Ninth Grade English", category="English"),
    ]
    extraction_id = _seed(store, catalog, records)

    def responder(n, messages, mode):
        return json.dumps(
            {
                "mappings": [
                    {"source_id": 2, "source_name": "Algebra One", "mapped_code": "MA1200310", "confidence": 92,
                     "match_method": "SEMANTIC_MATCH", "reasoning": "Same course.", "alternative_codes": ["MA1200320"]},
                    {"source_id": 3, "source_name": "Made Up Course", "mapped_code": "ZZ0000000", "confidence": 97,
                     "match_method": "SEMANTIC_MATCH", "reasoning": "Invented.", "alternative_codes": []},
                    {"source_id": 4, "source_name": "Ninth Grade English", "mapped_code": "EN1001310",
                     "confidence": 70, "match_method": "SEMANTIC_MATCH", "reasoning": "Probably.",
                     "alternative_codes": []},
                ]
            }
        )

    backend = fake_backend(responder)
    log = RequestLog()
    stats = _refine(store, extraction_id, backend, fast_config, request_log=log)

    assert stats.total_processed == 5
    assert stats.code_matches == 1
    assert stats.trim_matches == 1
    assert stats.semantic_matches == 2
    assert stats.newly_mapped == 4
    assert stats.flagged_for_review == 1
    assert stats.still_unmapped == 1
    assert stats.api_calls == 1
    assert any("ZZ0000000" in e for e in stats.validation_errors)
    assert len(log) == 1

    stored = store.get_mappings(extraction_id)
    by_name = {row["name"]: row for row in stored}
    assert by_name["Intro CS"]["mapped_code"] == "CS101"
    assert by_name["Intro CS"]["match_method"] == "CODE_MATCH"
    assert by_name["CS Principles"]["confidence"] == 85
    assert by_name["Algebra One"]["alternative_codes"] == ["MA1200320"]
    assert by_name["Made Up Course"]["status"] == "unmapped"
    assert by_name["Made Up Course"]["mapped_code"] is None
    assert by_name["Ninth Grade English"]["status"] == "flagged_for_review"
    assert store.get_summary(extraction_id).is_refined


def test_refine_twice_is_idempotent(fake_backend, fast_config, store, catalog):
    extraction_id = _seed(store, catalog, [CourseRecord(name="Intro CS", code="CS101")])
    backend = fake_backend(lambda n, m, mode: "{}")
    first = _refine(store, extraction_id, backend, fast_config)
    snapshot = store.get_mappings(extraction_id)
    second = _refine(store, extraction_id, backend, fast_config)
    assert first.to_dict() == second.to_dict()
    assert store.get_mappings(extraction_id) == snapshot
    assert backend.calls == []


def test_refine_unknown_extraction(fake_backend, fast_config, store, catalog):
    store.import_catalog(catalog)
    backend = fake_backend(lambda n, m, mode: "{}")
    with pytest.raises(PreconditionError):
        _refine(store, "does-not-exist", backend, fast_config)
    assert backend.calls == []


def test_refine_with_empty_catalog(fake_backend, fast_config, store):
    extraction_id = store.save_extraction("guide.txt", [CourseRecord(name="Art")])
    backend = fake_backend(lambda n, m, mode: "{}")
    with pytest.raises(PreconditionError):
        _refine(store, extraction_id, backend, fast_config)
    assert backend.calls == []


def test_refine_empty_extraction(fake_backend, fast_config, store, catalog):
    extraction_id = _seed(store, catalog, [])
    with pytest.raises(PreconditionError):
        _refine(store, extraction_id, fake_backend(lambda n, m, mode: "{}"), fast_config)


def test_refine_rate_limit_persists_nothing(fake_backend, fast_config, store, catalog):
    extraction_id = _seed(store, catalog, [CourseRecord(name="Intro CS", code="CS101"), CourseRecord(name="Art")])
    backend = fake_backend(lambda n, m, mode: RateLimitExceeded("slow down", retry_after=12))
    with pytest.raises(RateLimitExceeded):
        _refine(store, extraction_id, backend, fast_config)
    assert all(row["status"] == "unmapped" for row in store.get_mappings(extraction_id))
    assert not store.get_summary(extraction_id).is_refined


def test_map_records_needs_caller_only_for_leftovers(fast_config, catalog):
    outcome = asyncio.run(map_records([CourseRecord(name="Intro CS", code="CS-101")], catalog, None, fast_config))
    assert outcome.results[0].status == "mapped"
    with pytest.raises(PreconditionError):
        asyncio.run(map_records([CourseRecord(name="Art")], catalog, None, fast_config))


def test_model_labelled_code_match_counts_as_semantic(fake_backend, fast_config, catalog):
    backend = fake_backend(
        lambda n, m, mode: json.dumps(
            {"mappings": [{"source_id": 0, "source_name": "Algebra One", "mapped_code": "MA1200310",
                           "confidence": 100, "match_method": "CODE_MATCH", "reasoning": "Exact.",
                           "alternative_codes": []}]}
        )
    )
    records = [CourseRecord(name="Algebra One", category="Math")]
    outcome = asyncio.run(map_records(records, catalog, ResilientCaller(backend, fast_config), fast_config))
    result = outcome.results[0]
    assert result.status == "mapped"
    assert result.match_method == "SEMANTIC_MATCH"

    stats = compute_summary(records, outcome.results)
    assert stats.code_matches == 0
    assert stats.semantic_matches == 1


def _remap(store, extraction_id, backend, config, credential=Credential(key_id="test", api_key="sk-test"), **kw):
    return asyncio.run(
        remap_extraction(
            extraction_id, credential, store, client_factory=lambda credential, cfg: backend, config=config, **kw
        )
    )


def _suggestions(n, messages, mode):
    return json.dumps(
        {
            "mappings": [
                {"source_id": 0, "source_name": "Intro CS", "mapped_code": "cs-1010000", "confidence": 88,
                 "match_method": "SEMANTIC_MATCH", "reasoning": "Principles course.", "alternative_codes": ["CS101"]},
                {"source_id": 1, "source_name": "Algebra One", "mapped_code": "ZZ0000000", "confidence": 95,
                 "match_method": "SEMANTIC_MATCH", "reasoning": "Invented.", "alternative_codes": []},
            ]
        }
    )


def test_remap_stores_suggestions_without_touching_primary(fake_backend, fast_config, store, catalog):
    records = [CourseRecord(name="Intro CS", category="Tech", code="CS-101"), CourseRecord(name="Algebra One")]
    extraction_id = _seed(store, catalog, records)
    _refine(store, extraction_id, fake_backend(lambda n, m, mode: "{}"), fast_config)
    primary = store.get_mappings(extraction_id)

    backend = fake_backend(_suggestions)
    outcome = _remap(store, extraction_id, backend, fast_config)

    # Code matches are remapped too: the whole extraction goes to the model
    assert len(backend.calls) == 1
    assert '"id": 0' in backend.user_text(0)
    assert outcome.persisted
    assert outcome.stats.total_courses == 2
    assert outcome.stats.suggestions == 1
    assert outcome.stats.no_suggestion == 1
    assert outcome.stats.high_confidence == 1
    assert any("ZZ0000000" in e for e in outcome.stats.validation_errors)

    assert store.get_mappings(extraction_id) == primary
    stored = store.get_secondary_mappings(extraction_id)
    assert stored[0].suggested_code == "CS1010000"
    assert stored[0].suggested_name == "Computer Science Principles"
    assert stored[0].alternative_codes == ["CS101"]
    assert stored[0].model == fast_config.model
    assert stored[1].suggested_code is None
    assert stored[1].run_at is not None


def test_remap_dry_run_writes_nothing(fake_backend, fast_config, store, catalog):
    records = [CourseRecord(name="Intro CS", category="Tech", code="CS-101"), CourseRecord(name="Algebra One")]
    extraction_id = _seed(store, catalog, records)
    outcome = _remap(store, extraction_id, fake_backend(_suggestions), fast_config, dry_run=True)
    assert not outcome.persisted
    assert outcome.suggestions[0].suggested_code == "CS1010000"
    assert all(s.run_at is None for s in store.get_secondary_mappings(extraction_id))


def test_remap_selected_positions_only(fake_backend, fast_config, store, catalog):
    records = [CourseRecord(name="Art"), CourseRecord(name="Intro CS"), CourseRecord(name="Music")]
    extraction_id = _seed(store, catalog, records)
    backend = fake_backend(
        lambda n, m, mode: json.dumps(
            {"mappings": [{"source_id": 0, "source_name": "Intro CS", "mapped_code": "CS101", "confidence": 90,
                           "match_method": "SEMANTIC_MATCH", "reasoning": "Same.", "alternative_codes": []}]}
        )
    )
    outcome = _remap(store, extraction_id, backend, fast_config, positions=[1])
    assert [s.record.name for s in outcome.suggestions] == ["Intro CS"]
    assert "Art" not in backend.user_text(0)
    stored = store.get_secondary_mappings(extraction_id)
    assert [s.suggested_code for s in stored] == [None, "CS101", None]
    assert stored[0].run_at is None


def test_remap_preconditions_before_any_call(fake_backend, fast_config, store, catalog):
    extraction_id = _seed(store, catalog, [CourseRecord(name="Art")])
    backend = fake_backend(_suggestions)
    with pytest.raises(PreconditionError):
        _remap(store, extraction_id, backend, fast_config, credential=None)
    with pytest.raises(PreconditionError):
        _remap(store, extraction_id, backend, fast_config, positions=[5])
    with pytest.raises(PreconditionError):
        _remap(store, "does-not-exist", backend, fast_config)
    assert backend.calls == []


def test_remap_rate_limit_persists_nothing(fake_backend, fast_config, store, catalog):
    extraction_id = _seed(store, catalog, [CourseRecord(name="Art")])
    backend = fake_backend(lambda n, m, mode: RateLimitExceeded("slow down", retry_after=5))
    with pytest.raises(RateLimitExceeded):
        _remap(store, extraction_id, backend, fast_config)
    assert all(s.run_at is None for s in store.get_secondary_mappings(extraction_id))
