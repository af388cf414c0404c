from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from sqlalchemy import create_engine

from course_mapping.record_store import RecordStore
from course_mapping.schemas import MasterCatalogEntry, PipelineConfig


class FakeBackend:
    """Scripted inference backend; `responder(call_number, messages, mode)` returns text or an exception."""

    def __init__(self, responder: Callable[[int, List[Dict[str, Any]], str], Any]):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    async def submit(self, messages, mode, json_schema: Optional[Dict] = None) -> str:
        self.calls.append({"messages": messages, "mode": mode, "json_schema": json_schema})
        out = self.responder(len(self.calls), messages, mode)
        if isinstance(out, BaseException):
            raise out
        return out

    def user_text(self, n: int) -> str:
        return self.calls[n]["messages"][-1]["content"]


@pytest.fixture
def fast_config() -> PipelineConfig:
    return PipelineConfig(
        call_timeout_s=5.0,
        backoff_initial_s=0.0,
        backoff_max_s=0.0,
        inter_chunk_delay_s=0.0,
    )


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def catalog() -> List[MasterCatalogEntry]:
    return [
        MasterCatalogEntry(code="CS101", name="Intro to Computer Science", category="Technology", program_area="CTE"),
        MasterCatalogEntry(code="CS1010000", name="Computer Science Principles", category="Technology", program_area="CTE"),
        MasterCatalogEntry(code="MA1200310", name="Algebra 1", category="Mathematics", program_area="Core"),
        MasterCatalogEntry(code="MA1200320", name="Algebra 1 Honors", category="Mathematics", program_area="Core"),
        MasterCatalogEntry(code="EN1001310", name="English 1", category="English", program_area="Core"),
    ]


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    engine = create_engine(f"sqlite:///{tmp_path / 'courses.sqlite'}", future=True)
    s = RecordStore(engine)
    s.init_schema()
    return s
