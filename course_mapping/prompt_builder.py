from __future__ import annotations

import json
from typing import Dict, List, Optional, Sequence, Tuple

from .schemas import CourseRecord, MasterCatalogEntry, PipelineConfig, RawChunk


EXTRACTION_FIELDS = (
    "Category",
    "CourseName",
    "CourseCode",
    "GradeLevel",
    "Length",
    "Prerequisite",
    "Credit",
    "Details",
    "CourseDescription",
)

_FORMAT_HINTS = {
    "plain": "The text is loosely structured prose; courses may be described in paragraphs.",
    "tabular-pipe-delimited": (
        "The text is a pipe-delimited table. Use the header row to decide which column holds"
        " which field; every data row is one course."
    ),
    "code-list": (
        "The text is a course-code listing. Headings (often in capitals or ending with '*')"
        " are categories; lines with 7-digit codes are courses."
    ),
}


def build_extraction_messages(chunk: RawChunk, filename: Optional[str] = None) -> List[Dict]:
    system = (
        "You extract course records from school course catalogs."
        " Return ONLY a JSON object of the form {\"courses\": [...]}; no markdown or extra text."
        f"\nEach course object has the fields: {', '.join(EXTRACTION_FIELDS)}."
        " Use null for missing fields. Copy course codes exactly as printed; never invent a code."
        " A heading that groups several courses is their Category, not a course."
    )
    user = (
        f"Source file: {filename or 'unknown'}\n"
        f"Format: {_FORMAT_HINTS[chunk.format_tag]}\n\n"
        f"Document:\n{chunk.text}"
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def build_mapping_schema(valid_codes: Sequence[str]) -> Dict:
    # Only mapped_code carries the enum; provider limits count enum values across
    # the whole schema. The validator re-checks every code, alternatives included.
    code_enum = list(valid_codes)
    return {
        "name": "course_mapping_response",
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "mappings": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "source_id": {"type": "integer"},
                            "source_name": {"type": "string"},
                            "mapped_code": {
                                "anyOf": [
                                    {"type": "string", "enum": code_enum},
                                    {"type": "null"},
                                ]
                            },
                            "confidence": {"type": "integer"},
                            "match_method": {"type": "string", "enum": ["SEMANTIC_MATCH"]},
                            "reasoning": {"type": "string"},
                            "alternative_codes": {
                                "type": "array",
                                "items": {"type": "string"},
                            },
                        },
                        "required": [
                            "source_id",
                            "source_name",
                            "mapped_code",
                            "confidence",
                            "match_method",
                            "reasoning",
                            "alternative_codes",
                        ],
                    },
                }
            },
            "required": ["mappings"],
        },
        "strict": True,
    }


MAPPING_SYSTEM_PROMPT = (
    "You are a precise course mapping specialist with access to an institutional master course catalog."
    " Your task is to map extracted courses to official course codes from VALID_CODES only."
    " Never invent or alter codes."
    "\n\nConfidence rules (integer 0-100):"
    "\n- 90-100: certain; the course clearly is this catalog course."
    "\n- 75-89: very likely, minor uncertainty; it will be flagged for review."
    "\n- 50-74: possible match with significant uncertainty; it must be reviewed."
    "\n- below 50: do not map; set mapped_code to null."
    "\n\nMatching hints:"
    "\n1) Ignore formatting, spacing and minor typos in names."
    "\n2) Use descriptions, grade level and category to separate similar courses (e.g. honors vs regular)."
    "\n3) If several catalog courses fit equally, choose the most likely one and list the others in alternative_codes."
    "\n\nReturn ONLY a JSON object {\"mappings\": [...]} with one entry per input course, each with:"
    " source_id (the id given for the course), source_name (the course name exactly as given),"
    " mapped_code (a code from VALID_CODES or null), confidence, match_method (\"SEMANTIC_MATCH\"),"
    " reasoning (1-2 sentences), alternative_codes (codes from VALID_CODES, may be empty)."
)


def _format_catalog(entries: Sequence[MasterCatalogEntry]) -> str:
    lines: List[str] = []
    for e in entries:
        title = f" ({e.title})" if e.title and e.title != e.name else ""
        extra = ", ".join(x for x in (e.category, e.program_area, e.grade_level) if x)
        lines.append(f"- {e.code}: {e.name}{title}{f' [{extra}]' if extra else ''}")
    return "\n".join(lines) if lines else "(none)"


def _format_courses(batch: Sequence[Tuple[int, CourseRecord]]) -> str:
    rows = []
    for source_id, r in batch:
        rows.append(
            {
                "id": source_id,
                "name": r.name,
                "code": r.code or None,
                "category": r.category,
                "grade_level": r.grade_level,
                "description": (r.description or "")[:600] or None,
            }
        )
    return json.dumps(rows, indent=2, ensure_ascii=False)


def build_mapping_messages(
    batch: Sequence[Tuple[int, CourseRecord]],
    sample: Sequence[MasterCatalogEntry],
    valid_codes: Sequence[str],
    config: Optional[PipelineConfig] = None,
) -> Tuple[List[Dict], Optional[Dict]]:
    config = config or PipelineConfig()
    schema = build_mapping_schema(valid_codes) if len(valid_codes) <= config.schema_enum_max_codes else None

    user = (
        f"MASTER CATALOG SAMPLE ({len(sample)} of {len(valid_codes)} courses):\n{_format_catalog(sample)}\n\n"
        f"VALID_CODES (you may ONLY use these):\n{json.dumps(list(valid_codes))}\n\n"
        f"COURSES TO MAP ({len(batch)}):\n{_format_courses(batch)}\n\n"
        "Map each course to exactly one code from VALID_CODES, or null."
    )
    messages = [
        {"role": "system", "content": MAPPING_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]
    return messages, schema
