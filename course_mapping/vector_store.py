from __future__ import annotations

import json
import logging
import os
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .schemas import CourseRecord, MasterCatalogEntry, VectorStoreConfig

logger = logging.getLogger(__name__)

try:
    import faiss  # type: ignore
except ImportError:  # pragma: no cover - import error clarity
    faiss = None  # type: ignore

INDEX_FILE = "catalog.faiss"
CATALOG_FILE = "catalog.json"

Embedder = Callable[[List[str]], np.ndarray]


def record_query_text(record: CourseRecord) -> str:
    """Search text for one extracted course: code, name, category and a bit of description."""
    parts = [p for p in (record.code, record.name, record.category) if p]
    if record.description:
        parts.append(record.description[:300])
    return " | ".join(parts)


class CatalogVectorStore:
    """
    Embedding index over master catalog entries.

    Only used to pick which catalog entries are shown to the model next to
    a batch of courses; it never decides a mapping.
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None, embedder: Optional[Embedder] = None):
        if faiss is None:
            raise ImportError("faiss-cpu is required for the catalog vector store. Install faiss-cpu.")
        self.config = config or VectorStoreConfig()
        self.embedder = embedder
        self._model = None
        self.index = None
        self.codes: List[str] = []
        self.entries: Dict[str, MasterCatalogEntry] = {}

    def _encode(self, texts: List[str]) -> np.ndarray:
        if self.embedder is None:
            if self._model is None:
                from sentence_transformers import SentenceTransformer  # heavy, load on first use

                self._model = SentenceTransformer(self.config.local_model_name)
            vectors = self._model.encode(texts, normalize_embeddings=False)
        else:
            vectors = self.embedder(texts)
        vectors = np.asarray(vectors, dtype=np.float32)
        if self.config.normalize_embeddings:
            # Unit rows make inner product equal cosine similarity
            lengths = np.linalg.norm(vectors, axis=1, keepdims=True)
            vectors = vectors / np.where(lengths == 0.0, 1.0, lengths)
        return vectors

    def build_from_entries(self, entries: Sequence[MasterCatalogEntry]) -> None:
        by_code: Dict[str, MasterCatalogEntry] = {}
        for e in entries:
            by_code.setdefault(e.code, e)
        if not by_code:
            raise ValueError("Cannot build an index over an empty catalog.")

        self.codes = list(by_code)
        self.entries = by_code
        vectors = self._encode([by_code[c].as_search_text() for c in self.codes])
        self.index = faiss.IndexFlatIP(vectors.shape[1])
        self.index.add(vectors)
        logger.info("Indexed %d catalog entries (dim=%d)", len(self.codes), vectors.shape[1])

    def save(self, out_dir: str) -> None:
        if self.index is None:
            raise RuntimeError("Nothing to save; build the index first.")
        os.makedirs(out_dir, exist_ok=True)
        faiss.write_index(self.index, os.path.join(out_dir, INDEX_FILE))
        payload = {
            "config": self.config.to_dict(),
            "entries": [self.entries[c].to_dict() for c in self.codes],
        }
        with open(os.path.join(out_dir, CATALOG_FILE), "w") as f:
            json.dump(payload, f)

    @classmethod
    def load(cls, in_dir: str, embedder: Optional[Embedder] = None) -> "CatalogVectorStore":
        with open(os.path.join(in_dir, CATALOG_FILE)) as f:
            payload = json.load(f)
        store = cls(VectorStoreConfig(**payload["config"]), embedder=embedder)
        loaded = [MasterCatalogEntry(**e) for e in payload["entries"]]
        store.codes = [e.code for e in loaded]
        store.entries = {e.code: e for e in loaded}
        store.index = faiss.read_index(os.path.join(in_dir, INDEX_FILE))
        if store.index.ntotal != len(store.codes):
            raise ValueError(f"{in_dir}: index holds {store.index.ntotal} vectors for {len(store.codes)} entries")
        return store

    def __len__(self) -> int:
        return len(self.codes)

    def exists(self, code: str) -> bool:
        return code in self.entries

    def get_entry(self, code: str) -> Optional[MasterCatalogEntry]:
        return self.entries.get(code)

    def search(self, text: str, top_k: int = 50) -> List[Tuple[str, float]]:
        """Best matching catalog codes for `text`, highest similarity first."""
        if self.index is None:
            raise RuntimeError("Index not built or loaded.")
        k = min(top_k, len(self.codes))
        if k <= 0:
            return []
        scores, rows = self.index.search(self._encode([text]), k)
        return [(self.codes[r], float(s)) for r, s in zip(rows[0].tolist(), scores[0].tolist()) if r >= 0]

    def sample_for(self, records: Sequence[CourseRecord], size: int) -> List[MasterCatalogEntry]:
        """
        Pick the catalog entries most relevant to a batch of records.

        Every record queries the index; a code's score is its best score
        across queries, and the top `size` codes are returned, best first.
        """
        if not records or size <= 0:
            return []
        best: Dict[str, float] = {}
        for record in records:
            for code, score in self.search(record_query_text(record), top_k=size):
                best[code] = max(score, best.get(code, score))
        ranked = sorted(best.items(), key=lambda kv: kv[1], reverse=True)
        return [self.entries[code] for code, _ in ranked[:size]]
