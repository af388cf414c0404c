from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .schemas import CourseRecord, PLACEHOLDER, UNCATEGORIZED

# Ordered aliases per canonical field; first usable value wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "category": ("category", "Category", "CategoryName", "subject", "Subject", "Department", "department"),
    "name": ("name", "CourseName", "title", "courseName", "course_name", "Name", "Title"),
    "code": ("code", "CourseCode", "course_id", "courseCode", "course_code", "Code", "ID", "id"),
    "grade_level": ("grade_level", "GradeLevel", "grade", "Grade", "level", "gradeLevel"),
    "length": ("length", "Length", "duration", "Duration", "semester", "Semester", "term", "Term"),
    "prerequisite": ("prerequisite", "Prerequisite", "prereq", "Prereq", "prerequisites", "Prerequisites"),
    "credit": ("credit", "credits", "Credit", "Credits", "units", "Units"),
    "details": ("details", "Details", "additional_info", "AdditionalInfo"),
    "description": ("description", "CourseDescription", "Description", "desc", "overview", "Overview"),
    "source_file": ("source_file", "SourceFile", "sourceFile"),
}

FIELD_DEFAULTS: Dict[str, str] = {
    "category": UNCATEGORIZED,
    "name": "",
    "code": "",
    "grade_level": PLACEHOLDER,
    "length": PLACEHOLDER,
    "prerequisite": PLACEHOLDER,
    "credit": PLACEHOLDER,
    "details": PLACEHOLDER,
    "description": "",
    "source_file": "",
}

PLACEHOLDER_VALUES = {"-", "null", "none", "n/a"}

# "English 1-4", "Math 101 – 102"
COMPOUND_NAME_RE = re.compile(r"^(.+?)\s*(\d+)\s*[-–—]\s*(\d+)$")
MAX_COMPOUND_SPAN = 10

_WS_RE = re.compile(r"\s+")


def _usable(val: Any) -> Optional[str]:
    if isinstance(val, bool) or val is None:
        return None
    if isinstance(val, (int, float)):
        val = str(val)
    if not isinstance(val, str):
        return None
    s = val.strip()
    if not s or s.lower() in PLACEHOLDER_VALUES:
        return None
    return s


def first_value(raw: Mapping[str, Any], aliases: Sequence[str], fallback: str = "") -> str:
    for key in aliases:
        val = _usable(raw.get(key))
        if val is not None:
            return val
    return fallback


def normalize_record(raw: Mapping[str, Any] | CourseRecord, source_file: Optional[str] = None) -> CourseRecord:
    if isinstance(raw, CourseRecord):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        raw = {}
    values = {f: first_value(raw, aliases, FIELD_DEFAULTS[f]) for f, aliases in FIELD_ALIASES.items()}
    if source_file and not values["source_file"]:
        values["source_file"] = source_file
    return CourseRecord(**values)


def split_compound(record: CourseRecord) -> List[CourseRecord]:
    """Expand 'English 1-4' into English 1..English 4; wide ranges stay whole."""
    m = COMPOUND_NAME_RE.match(record.name)
    if not m:
        return [record]
    subject, start, end = m.group(1).strip(), int(m.group(2)), int(m.group(3))
    if not subject or end <= start or end - start > MAX_COMPOUND_SPAN:
        return [record]
    return [replace(record, name=f"{subject} {i}") for i in range(start, end + 1)]


def _collapse(s: str) -> str:
    return _WS_RE.sub(" ", s.strip().lower())


def dedup_key(record: CourseRecord) -> Tuple[str, str, str]:
    return (_collapse(record.category), _collapse(record.name), _collapse(record.grade_level))


def deduplicate(records: Iterable[CourseRecord]) -> List[CourseRecord]:
    seen = set()
    out: List[CourseRecord] = []
    for r in records:
        key = dedup_key(r)
        if key in seen:
            continue
        seen.add(key)
        out.append(r)
    return out


def normalize_records(
    raws: Iterable[Mapping[str, Any] | CourseRecord],
    source_file: Optional[str] = None,
) -> List[CourseRecord]:
    cleaned: List[CourseRecord] = []
    for raw in raws:
        record = normalize_record(raw, source_file=source_file)
        if not record.name:
            continue
        cleaned.extend(split_compound(record))
    return deduplicate(cleaned)
