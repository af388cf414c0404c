from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .deterministic import CatalogIndex
from .prompt_builder import build_mapping_messages
from .resilient_caller import ResilientCaller
from .schemas import CourseRecord, MappingCandidate, MasterCatalogEntry, PipelineConfig
from .vector_store import CatalogVectorStore

logger = logging.getLogger(__name__)


@dataclass
class SemanticOutcome:
    candidates: List[MappingCandidate] = field(default_factory=list)
    # Records the model explicitly declined to map
    no_match_ids: List[int] = field(default_factory=list)
    batches: int = 0


def _batches(items: Sequence[Tuple[int, CourseRecord]], size: int) -> List[Sequence[Tuple[int, CourseRecord]]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


def catalog_sample(
    batch: Sequence[Tuple[int, CourseRecord]],
    index: CatalogIndex,
    size: int,
    vector_store: Optional[CatalogVectorStore] = None,
) -> List[MasterCatalogEntry]:
    """Catalog entries shown to the model alongside the full code list."""
    if len(index) <= size:
        return list(index.entries)
    if vector_store is not None:
        # Only show entries that belong to this run's snapshot
        return [e for e in vector_store.sample_for([r for _, r in batch], size) if index.exists(e.code)]
    return list(index.entries[:size])


def _to_candidate(item: Dict[str, Any]) -> MappingCandidate:
    return MappingCandidate(
        source_name=item.get("source_name"),
        source_id=item.get("source_id"),
        source_code=item.get("source_code"),
        mapped_code=item.get("mapped_code"),
        confidence=item.get("confidence"),
        # Suggestions are semantic by construction, whatever the model labels them
        match_method="SEMANTIC_MATCH",
        reasoning=item.get("reasoning") or "",
        alternative_codes=item.get("alternative_codes"),
    )


async def semantic_pass(
    unmapped: Sequence[Tuple[int, CourseRecord]],
    index: CatalogIndex,
    caller: ResilientCaller,
    config: Optional[PipelineConfig] = None,
    vector_store: Optional[CatalogVectorStore] = None,
) -> SemanticOutcome:
    """
    Ask the model for best-guess codes for records the deterministic pass missed.

    Output is untrusted: candidates go to the validator before anything is
    stored. RateLimitExceeded from the caller propagates.
    """
    config = config or PipelineConfig()
    out = SemanticOutcome()
    if not unmapped:
        return out

    valid_codes = index.valid_codes()
    for n, batch in enumerate(_batches(list(unmapped), config.semantic_batch_size), start=1):
        sample = catalog_sample(batch, index, config.catalog_sample_size, vector_store)
        messages, schema = build_mapping_messages(batch, sample, valid_codes, config)
        items = await caller.call(messages, "map", json_schema=schema, label=f"map batch {n}")
        out.batches += 1

        for item in items:
            if item.get("mapped_code") in (None, "", "null", "NOT_FOUND", "UNMAPPED"):
                if isinstance(item.get("source_id"), int):
                    out.no_match_ids.append(item["source_id"])
                continue
            out.candidates.append(_to_candidate(item))

        logger.info(
            "Semantic batch %d: %d records, %d suggestions", n, len(batch), len(items)
        )
    return out
