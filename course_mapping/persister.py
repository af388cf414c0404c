from __future__ import annotations

import logging
from typing import Sequence

from .record_store import RecordStore
from .schemas import MappingResult, SecondaryMapping

logger = logging.getLogger(__name__)


def persist_mappings(store: RecordStore, extraction_id: str, results: Sequence[MappingResult]) -> int:
    """
    Store one mapping run's results and mark the extraction refined.

    Every result is written, unmapped ones included, so a re-run replaces the
    previous run's mapping columns for each record. Pristine fields are left
    untouched. Returns the number of rows updated.
    """
    updated = store.update_course_mappings(extraction_id, results)
    if updated != len(results):
        logger.warning(
            "Persisted %d of %d mapping results for extraction %s", updated, len(results), extraction_id
        )
    store.mark_refined(extraction_id)
    return updated


def persist_secondary_mappings(store: RecordStore, extraction_id: str, suggestions: Sequence[SecondaryMapping]) -> int:
    """Store AI-first suggestions beside the primary mapping, which stays as it is."""
    updated = store.update_secondary_mappings(extraction_id, suggestions)
    if updated != len(suggestions):
        logger.warning(
            "Persisted %d of %d suggestions for extraction %s", updated, len(suggestions), extraction_id
        )
    return updated
