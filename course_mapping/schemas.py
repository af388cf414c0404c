from __future__ import annotations

import os
from dataclasses import dataclass, field, asdict
from typing import List, Literal, Optional, Dict, Any


FormatTag = Literal["plain", "tabular-pipe-delimited", "code-list"]
CallMode = Literal["extract", "map"]
MappingStatus = Literal["unmapped", "mapped", "flagged_for_review"]
MatchMethod = Literal["CODE_MATCH", "CODE_TRIM_MATCH", "SEMANTIC_MATCH"]

MATCH_METHODS = ("CODE_MATCH", "CODE_TRIM_MATCH", "SEMANTIC_MATCH")

UNCATEGORIZED = "Uncategorized"
PLACEHOLDER = "-"


@dataclass(frozen=True)
class RawChunk:
    index: int
    start: int
    end: int
    format_tag: FormatTag
    estimated_tokens: int
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CourseRecord:
    name: str
    category: str = UNCATEGORIZED
    code: str = ""
    grade_level: str = PLACEHOLDER
    length: str = PLACEHOLDER
    prerequisite: str = PLACEHOLDER
    credit: str = PLACEHOLDER
    details: str = PLACEHOLDER
    description: str = ""
    source_file: str = ""

    def identity(self) -> tuple:
        """Key used to address this record inside its extraction."""
        return (self.category, self.name, self.code, self.grade_level)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MasterCatalogEntry:
    code: str
    name: str
    title: str = ""
    category: str = ""
    program_area: str = ""
    grade_level: str = ""
    duration: str = ""
    credit: str = ""

    def as_search_text(self) -> str:
        parts: List[str] = [self.code, self.name]
        if self.title and self.title != self.name:
            parts.append(self.title)
        if self.category:
            parts.append(self.category)
        if self.program_area:
            parts.append(self.program_area)
        return " | ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MappingCandidate:
    """Unvalidated mapping suggestion.

    Fields keep whatever the producer returned (the semantic matcher copies the
    model output, apart from the match method it stamps itself), so nothing
    here is trusted until it passes the validator.
    """
    source_name: Any
    mapped_code: Any
    confidence: Any
    match_method: Any
    reasoning: Any = ""
    source_code: Any = None
    source_id: Any = None
    alternative_codes: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MappingResult:
    record: CourseRecord
    status: MappingStatus = "unmapped"
    mapped_code: Optional[str] = None
    mapped_category: Optional[str] = None
    mapped_program_area: Optional[str] = None
    match_method: Optional[MatchMethod] = None
    confidence: Optional[int] = None
    reasoning: str = ""
    alternative_codes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SecondaryMapping:
    """AI-first suggestion kept next to the primary mapping, never in its place."""
    record: CourseRecord
    suggested_code: Optional[str] = None
    suggested_name: Optional[str] = None
    confidence: Optional[int] = None
    reasoning: str = ""
    alternative_codes: List[str] = field(default_factory=list)
    model: str = ""
    run_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RemapStats:
    total_courses: int = 0
    suggestions: int = 0
    no_suggestion: int = 0
    high_confidence: int = 0
    low_confidence: int = 0
    api_calls: int = 0
    estimated_tokens: int = 0
    validation_errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CodeLookup:
    found: List[MasterCatalogEntry] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UsageCounters:
    calls_attempted: int = 0
    calls_succeeded: int = 0
    estimated_prompt_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MappingSessionStats:
    total_processed: int = 0
    code_matches: int = 0
    trim_matches: int = 0
    semantic_matches: int = 0
    newly_mapped: int = 0
    still_unmapped: int = 0
    flagged_for_review: int = 0
    # Report-only context; the counters above are the source of truth
    api_calls: int = 0
    estimated_tokens: int = 0
    validation_errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Credential:
    """One usable inference credential handed over by key selection."""
    key_id: str
    api_key: str = field(repr=False, default="")

    def to_dict(self) -> Dict[str, Any]:
        return {"key_id": self.key_id}


@dataclass
class ProgressEvent:
    status: Literal["processing", "chunk_complete", "chunk_error", "cancelled"]
    total: int
    current: int
    message: str
    records_found: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExtractionSummary:
    extraction_id: str
    filename: str
    total_courses: int
    is_refined: bool
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VectorStoreConfig:
    backend: Literal["faiss"] = "faiss"
    embedding: Literal["local"] = "local"
    local_model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    normalize_embeddings: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    return float(val) if val not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    return int(val) if val not in (None, "") else default


@dataclass
class PipelineConfig:
    """Tunables for extraction and mapping runs."""
    # External calls
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    call_timeout_s: float = 25.0
    max_attempts: int = 3
    backoff_initial_s: float = 1.0
    backoff_max_s: float = 10.0
    default_rate_limit_wait_s: float = 60.0
    inter_chunk_delay_s: float = 1.0
    # Chunking
    max_chunk_tokens: int = 100_000
    dense_chunk_max_chars: int = 400_000
    min_chunk_chars: int = 100
    # Mapping
    confidence_threshold: int = 75
    code_prefix_length: int = 7
    semantic_batch_size: int = 25
    catalog_sample_size: int = 200
    schema_enum_max_codes: int = 250
    # Anomaly scan
    anomaly_high: int = 98
    anomaly_low: int = 20
    anomaly_fraction: float = 0.5

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        from dotenv import load_dotenv

        load_dotenv()
        base = cls()
        return cls(
            model=os.getenv("COURSE_MAPPING_MODEL", base.model),
            temperature=_env_float("COURSE_MAPPING_TEMPERATURE", base.temperature),
            call_timeout_s=_env_float("COURSE_MAPPING_CALL_TIMEOUT_S", base.call_timeout_s),
            max_attempts=_env_int("COURSE_MAPPING_MAX_ATTEMPTS", base.max_attempts),
            backoff_initial_s=_env_float("COURSE_MAPPING_BACKOFF_INITIAL_S", base.backoff_initial_s),
            backoff_max_s=_env_float("COURSE_MAPPING_BACKOFF_MAX_S", base.backoff_max_s),
            default_rate_limit_wait_s=_env_float(
                "COURSE_MAPPING_RATE_LIMIT_WAIT_S", base.default_rate_limit_wait_s
            ),
            inter_chunk_delay_s=_env_float("COURSE_MAPPING_INTER_CHUNK_DELAY_S", base.inter_chunk_delay_s),
            max_chunk_tokens=_env_int("COURSE_MAPPING_MAX_CHUNK_TOKENS", base.max_chunk_tokens),
            dense_chunk_max_chars=_env_int("COURSE_MAPPING_DENSE_CHUNK_MAX_CHARS", base.dense_chunk_max_chars),
            min_chunk_chars=_env_int("COURSE_MAPPING_MIN_CHUNK_CHARS", base.min_chunk_chars),
            confidence_threshold=_env_int("COURSE_MAPPING_CONFIDENCE_THRESHOLD", base.confidence_threshold),
            code_prefix_length=_env_int("COURSE_MAPPING_CODE_PREFIX_LENGTH", base.code_prefix_length),
            semantic_batch_size=_env_int("COURSE_MAPPING_SEMANTIC_BATCH_SIZE", base.semantic_batch_size),
            catalog_sample_size=_env_int("COURSE_MAPPING_CATALOG_SAMPLE_SIZE", base.catalog_sample_size),
            schema_enum_max_codes=_env_int("COURSE_MAPPING_SCHEMA_ENUM_MAX_CODES", base.schema_enum_max_codes),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
