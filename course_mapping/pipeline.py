from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .chunker import chunk_document
from .deterministic import CatalogIndex, deterministic_pass
from .errors import PreconditionError
from .llm_client import LlmJSONClient, RateLimitExceeded
from .normalizer import normalize_records
from .persister import persist_mappings, persist_secondary_mappings
from .prompt_builder import build_extraction_messages
from .record_store import RecordStore, sha256_text
from .resilient_caller import InferenceBackend, RequestLog, ResilientCaller
from .schemas import (
    CourseRecord,
    Credential,
    MappingSessionStats,
    MasterCatalogEntry,
    MappingResult,
    PipelineConfig,
    ProgressEvent,
    RemapStats,
    SecondaryMapping,
    UsageCounters,
)
from .semantic_matcher import semantic_pass
from .summary import compute_remap_summary, compute_summary
from .validator import ValidationOutcome, validate_candidates
from .vector_store import CatalogVectorStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ClientFactory = Callable[[Credential, PipelineConfig], InferenceBackend]


def _emit(on_progress: Optional[ProgressCallback], event: ProgressEvent) -> None:
    logger.info("[%d/%d] %s", event.current, event.total, event.message)
    if on_progress is not None:
        on_progress(event)


async def _extract_chunks(
    text: str,
    filename: str,
    caller: ResilientCaller,
    config: PipelineConfig,
    on_progress: Optional[ProgressCallback],
    should_continue: Optional[Callable[[], bool]],
) -> Tuple[List[CourseRecord], bool]:
    chunks = chunk_document(text, config)
    total = len(chunks)
    raw: List[Dict[str, Any]] = []

    for chunk in chunks:
        current = chunk.index + 1
        if should_continue is not None and not should_continue():
            _emit(
                on_progress,
                ProgressEvent("cancelled", total, chunk.index, f"Cancelled before chunk {current}", len(raw)),
            )
            return normalize_records(raw, source_file=filename), False

        # Chunks run one after another, spaced out for shared quotas
        if chunk.index > 0 and config.inter_chunk_delay_s > 0:
            await asyncio.sleep(config.inter_chunk_delay_s)

        _emit(
            on_progress,
            ProgressEvent(
                "processing", total, current,
                f"Processing chunk {current}/{total} ({chunk.format_tag}, ~{chunk.estimated_tokens} tokens)",
            ),
        )
        messages = build_extraction_messages(chunk, filename)
        try:
            items = await caller.call(messages, "extract", label=f"{filename} chunk {current}/{total}")
        except RateLimitExceeded as e:
            _emit(
                on_progress,
                ProgressEvent("chunk_error", total, current, f"Rate limited on chunk {current}: retry in {e.retry_after:g}s"),
            )
            e.partial_records = normalize_records(raw, source_file=filename)
            raise
        raw.extend(items)
        _emit(
            on_progress,
            ProgressEvent("chunk_complete", total, current, f"Chunk {current}/{total}: {len(items)} courses", len(items)),
        )

    return normalize_records(raw, source_file=filename), True


async def extract_document(
    text: str,
    filename: str,
    caller: ResilientCaller,
    config: Optional[PipelineConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_continue: Optional[Callable[[], bool]] = None,
) -> List[CourseRecord]:
    """
    Extract normalized, deduplicated course records from document text.

    Chunks are processed sequentially. A chunk whose call fails or returns
    garbage contributes no records. `should_continue` is checked at every
    chunk boundary; when it returns False the records found so far are
    returned.

    Raises:
        PreconditionError: the text is empty.
        RateLimitExceeded: remaining chunks are not attempted; records
            extracted before the limit are on `partial_records`.
    """
    config = config or caller.config
    records, _ = await _extract_chunks(text, filename, caller, config, on_progress, should_continue)
    return records


async def extract_and_save(
    text: str,
    filename: str,
    caller: ResilientCaller,
    store: RecordStore,
    config: Optional[PipelineConfig] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_continue: Optional[Callable[[], bool]] = None,
) -> str:
    """Extract and store a document. Identical text returns the earlier extraction id."""
    config = config or caller.config
    if not text or not text.strip():
        raise PreconditionError("Document text is empty")
    file_hash = sha256_text(text)
    cached = store.find_extraction_by_hash(file_hash)
    if cached is not None:
        logger.info("Reusing extraction %s for %s (same text)", cached, filename)
        return cached

    records, completed = await _extract_chunks(text, filename, caller, config, on_progress, should_continue)
    # Partial runs are stored but never served from the cache
    return store.save_extraction(filename, records, file_hash=file_hash if completed else None)


async def map_records(
    records: Sequence[CourseRecord],
    catalog: Sequence[MasterCatalogEntry],
    caller: Optional[ResilientCaller],
    config: Optional[PipelineConfig] = None,
    vector_store: Optional[CatalogVectorStore] = None,
) -> ValidationOutcome:
    """
    Deterministic pass, then the semantic pass for leftovers, then validation.

    `caller` may be None when every record resolves by code.
    """
    config = config or PipelineConfig()
    index = CatalogIndex(catalog, prefix_length=config.code_prefix_length)
    det = deterministic_pass(list(records), index, config)

    candidates = list(det.candidates)
    if det.unmapped:
        if caller is None:
            raise PreconditionError(f"{len(det.unmapped)} courses need semantic matching but no credential was given")
        sem = await semantic_pass(det.unmapped, index, caller, config, vector_store)
        candidates.extend(sem.candidates)
        if sem.no_match_ids:
            logger.info("Model found no catalog match for %d courses", len(sem.no_match_ids))

    return validate_candidates(candidates, records, index, config)


async def refine_extraction(
    extraction_id: str,
    credential: Optional[Credential],
    store: RecordStore,
    client_factory: Optional[ClientFactory] = None,
    config: Optional[PipelineConfig] = None,
    request_log: Optional[RequestLog] = None,
    vector_store: Optional[CatalogVectorStore] = None,
) -> MappingSessionStats:
    """
    Map a stored extraction onto the master catalog and persist the mapping columns.

    Re-running recomputes and overwrites mapping columns only.

    Raises:
        PreconditionError: unknown or empty extraction, empty catalog, or no
            credential when semantic matching is needed. Raised before any
            external call.
        RateLimitExceeded: nothing from this run is persisted.
    """
    config = config or PipelineConfig()
    records = store.get_extraction(extraction_id)
    if records is None:
        raise PreconditionError(f"Unknown extraction id {extraction_id}")
    if not records:
        raise PreconditionError(f"Extraction {extraction_id} has no courses")
    # Snapshot read once; the run never sees later catalog changes
    catalog = store.load_catalog()
    if not catalog:
        raise PreconditionError("Master catalog is empty; import a catalog first")

    caller: Optional[ResilientCaller] = None
    if credential is not None:
        factory = client_factory or LlmJSONClient.for_credential
        caller = ResilientCaller(factory(credential, config), config, request_log=request_log)

    outcome = await map_records(records, catalog, caller, config, vector_store)
    persist_mappings(store, extraction_id, outcome.results)

    usage = caller.usage if caller is not None else UsageCounters()
    stats = compute_summary(records, outcome.results, usage, outcome.errors, outcome.warnings)
    logger.info(
        "Refined %s: %d processed, %d mapped (%d code, %d trim, %d semantic), %d flagged, %d unmapped",
        extraction_id, stats.total_processed, stats.newly_mapped, stats.code_matches,
        stats.trim_matches, stats.semantic_matches, stats.flagged_for_review, stats.still_unmapped,
    )
    return stats


@dataclass
class RemapOutcome:
    suggestions: List[SecondaryMapping] = field(default_factory=list)
    stats: RemapStats = field(default_factory=RemapStats)
    persisted: bool = False


def _as_suggestion(result: MappingResult, index: CatalogIndex, model: str, run_at: str) -> SecondaryMapping:
    if result.mapped_code is None:
        return SecondaryMapping(record=result.record, model=model, run_at=run_at)
    entry = index.get_entry(result.mapped_code)
    return SecondaryMapping(
        record=result.record,
        suggested_code=result.mapped_code,
        suggested_name=entry.name if entry else None,
        confidence=result.confidence,
        reasoning=result.reasoning,
        alternative_codes=list(result.alternative_codes),
        model=model,
        run_at=run_at,
    )


async def remap_records(
    records: Sequence[CourseRecord],
    catalog: Sequence[MasterCatalogEntry],
    caller: ResilientCaller,
    config: Optional[PipelineConfig] = None,
    vector_store: Optional[CatalogVectorStore] = None,
) -> RemapOutcome:
    """
    AI-first suggestions for every record, code matches included.

    Suggestions pass the same validator as primary mappings, so a suggested
    code is always a catalog code.
    """
    config = config or PipelineConfig()
    index = CatalogIndex(catalog, prefix_length=config.code_prefix_length)
    sem = await semantic_pass(list(enumerate(records)), index, caller, config, vector_store)
    validated = validate_candidates(sem.candidates, records, index, config)

    run_at = datetime.now(timezone.utc).isoformat()
    suggestions = [_as_suggestion(r, index, config.model, run_at) for r in validated.results]
    stats = compute_remap_summary(suggestions, caller.usage, validated.errors, validated.warnings)
    return RemapOutcome(suggestions=suggestions, stats=stats)


async def remap_extraction(
    extraction_id: str,
    credential: Optional[Credential],
    store: RecordStore,
    client_factory: Optional[ClientFactory] = None,
    config: Optional[PipelineConfig] = None,
    positions: Optional[Sequence[int]] = None,
    dry_run: bool = False,
    request_log: Optional[RequestLog] = None,
    vector_store: Optional[CatalogVectorStore] = None,
) -> RemapOutcome:
    """
    Store AI suggestions for a saved extraction beside its primary mapping.

    `positions` limits the run to those stored records. With `dry_run` the
    suggestions are returned and nothing is written. Primary mapping columns
    are never modified.

    Raises:
        PreconditionError: unknown or empty extraction, bad positions, empty
            catalog, or no credential. Raised before any external call.
        RateLimitExceeded: nothing from this run is persisted.
    """
    config = config or PipelineConfig()
    records = store.get_extraction(extraction_id)
    if records is None:
        raise PreconditionError(f"Unknown extraction id {extraction_id}")
    if positions:
        bad = [p for p in positions if not 0 <= p < len(records)]
        if bad:
            raise PreconditionError(f"Extraction {extraction_id} has no courses at positions {bad}")
        records = [records[p] for p in sorted(set(positions))]
    if not records:
        raise PreconditionError(f"Extraction {extraction_id} has no courses")
    catalog = store.load_catalog()
    if not catalog:
        raise PreconditionError("Master catalog is empty; import a catalog first")
    if credential is None:
        raise PreconditionError("AI remapping needs a credential")

    factory = client_factory or LlmJSONClient.for_credential
    caller = ResilientCaller(factory(credential, config), config, request_log=request_log)
    outcome = await remap_records(records, catalog, caller, config, vector_store)
    if not dry_run:
        persist_secondary_mappings(store, extraction_id, outcome.suggestions)
        outcome.persisted = True

    stats = outcome.stats
    logger.info(
        "Remapped %s%s: %d courses, %d suggestions (%d high, %d low confidence)",
        extraction_id, " (dry run)" if dry_run else "", stats.total_courses, stats.suggestions,
        stats.high_confidence, stats.low_confidence,
    )
    return outcome
