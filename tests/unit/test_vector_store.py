import numpy as np
import pytest

pytest.importorskip("faiss")

from course_mapping.deterministic import CatalogIndex
from course_mapping.schemas import CourseRecord, MasterCatalogEntry
from course_mapping.semantic_matcher import catalog_sample
from course_mapping.vector_store import CatalogVectorStore


class WordEmbedder:
    """One dimension per distinct lowercase word."""

    def __init__(self, dim: int = 128):
        self.dim = dim
        self.vocab = {}

    def __call__(self, texts):
        out = np.zeros((len(texts), self.dim), dtype=np.float32)
        for i, t in enumerate(texts):
            for word in t.lower().replace("|", " ").split():
                j = self.vocab.setdefault(word, len(self.vocab))
                out[i, j] += 1.0
        return out


@pytest.fixture
def embedder():
    return WordEmbedder()


@pytest.fixture
def entries():
    return [
        MasterCatalogEntry(code="MA1", name="Algebra", category="Mathematics"),
        MasterCatalogEntry(code="MA2", name="Geometry", category="Mathematics"),
        MasterCatalogEntry(code="SC1", name="Biology", category="Science"),
        MasterCatalogEntry(code="SC2", name="Chemistry", category="Science"),
        MasterCatalogEntry(code="AR1", name="Painting", category="Art"),
    ]


def test_search_ranks_matching_entry_first(entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries)
    hits = store.search("chemistry", top_k=3)
    assert hits[0][0] == "SC2"
    assert len(hits) == 3


def test_top_k_is_capped_at_store_size(entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries)
    assert len(store.search("art", top_k=50)) == len(entries)


def test_duplicate_codes_are_indexed_once(entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries + [MasterCatalogEntry(code="MA1", name="Algebra again")])
    assert len(store) == len(entries)
    assert store.get_entry("MA1").name == "Algebra"


def test_empty_catalog_cannot_be_indexed(embedder):
    with pytest.raises(ValueError):
        CatalogVectorStore(embedder=embedder).build_from_entries([])


def test_save_and_load(tmp_path, entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries)
    store.save(str(tmp_path / "idx"))

    loaded = CatalogVectorStore.load(str(tmp_path / "idx"), embedder=embedder)
    assert loaded.exists("SC1")
    assert loaded.get_entry("AR1") == entries[4]
    assert loaded.search("biology", top_k=1)[0][0] == "SC1"


def test_sample_for_merges_queries(entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries)
    sample = store.sample_for([CourseRecord(name="Biology"), CourseRecord(name="Painting")], size=2)
    assert {e.code for e in sample} == {"SC1", "AR1"}


def test_catalog_sample_uses_vector_store(entries, embedder):
    store = CatalogVectorStore(embedder=embedder)
    store.build_from_entries(entries)
    index = CatalogIndex(entries)
    sample = catalog_sample([(0, CourseRecord(name="Geometry"))], index, size=1, vector_store=store)
    assert [e.code for e in sample] == ["MA2"]
