"""LLM-assisted course catalog extraction and master-catalog mapping.

Modules:
- schemas: dataclass models and run configuration
- chunker: split document text into ordered chunks
- llm_client: async OpenAI client for one credential
- resilient_caller: timeouts, retries and response parsing
- normalizer: canonical course records, compound splitting, dedup
- deterministic: exact and prefix code matching
- prompt_builder: construct constrained JSON prompts
- vector_store: build/load/search the catalog with embeddings
- semantic_matcher: model-suggested mappings for leftover courses
- validator: accept or reject mapping suggestions
- record_store: SQL storage for catalog and extractions
- persister: write mapping fields back per record
- summary: per-run counters
- pipeline: extraction and refinement entry points
- cli: command line
"""

__all__ = [
    "schemas",
    "chunker",
    "llm_client",
    "resilient_caller",
    "normalizer",
    "deterministic",
    "prompt_builder",
    "vector_store",
    "semantic_matcher",
    "validator",
    "record_store",
    "persister",
    "summary",
    "pipeline",
    "cli",
]
