from __future__ import annotations

import hashlib
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import bindparam, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import RecordStoreError
from .schemas import CodeLookup, CourseRecord, ExtractionSummary, MappingResult, MasterCatalogEntry, SecondaryMapping

logger = logging.getLogger(__name__)


# Portable DDL: runs unchanged on PostgreSQL and SQLite
_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS master_courses (
      code VARCHAR(64) PRIMARY KEY,
      position INTEGER NOT NULL,
      name TEXT NOT NULL,
      title TEXT,
      category TEXT,
      program_area TEXT,
      grade_level TEXT,
      duration TEXT,
      credit TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS extractions (
      id VARCHAR(36) PRIMARY KEY,
      filename TEXT NOT NULL,
      file_hash VARCHAR(64),
      created_at VARCHAR(40) NOT NULL,
      updated_at VARCHAR(40) NOT NULL,
      is_refined BOOLEAN NOT NULL DEFAULT FALSE,
      total_courses INTEGER NOT NULL DEFAULT 0,
      secondary_updated_at VARCHAR(40)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS extracted_courses (
      extraction_id VARCHAR(36) NOT NULL REFERENCES extractions(id),
      position INTEGER NOT NULL,
      category TEXT NOT NULL,
      course_name TEXT NOT NULL,
      course_code TEXT NOT NULL,
      grade_level TEXT NOT NULL,
      length TEXT,
      prerequisite TEXT,
      credit TEXT,
      details TEXT,
      description TEXT,
      source_file TEXT,
      mapping_status VARCHAR(32) NOT NULL DEFAULT 'unmapped',
      mapped_code VARCHAR(64),
      mapped_category TEXT,
      mapped_program_area TEXT,
      match_method VARCHAR(32),
      confidence INTEGER,
      reasoning TEXT,
      alternative_codes TEXT,
      secondary_code VARCHAR(64),
      secondary_name TEXT,
      secondary_confidence INTEGER,
      secondary_reasoning TEXT,
      secondary_alternative_codes TEXT,
      secondary_model VARCHAR(64),
      secondary_run_at VARCHAR(40),
      PRIMARY KEY (extraction_id, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_extractions_file_hash ON extractions (file_hash)",
)

_PRISTINE_COLUMNS = (
    "category, course_name, course_code, grade_level, length, prerequisite,"
    " credit, details, description, source_file"
)

_CATALOG_COLUMNS = "code, name, title, category, program_area, grade_level, duration, credit"

# Addresses one stored record; the key never includes mapping columns
_IDENTITY_WHERE = (
    "extraction_id=:extraction_id AND category=:category AND course_name=:course_name"
    " AND course_code=:course_code AND grade_level=:grade_level"
)


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256_text(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _s(val: Any) -> str:
    if val is None:
        return ""
    if isinstance(val, float) and val != val:  # NaN from pandas
        return ""
    return str(val).strip()


def _row_to_record(row) -> CourseRecord:
    return CourseRecord(
        category=row[0],
        name=row[1],
        code=row[2],
        grade_level=row[3],
        length=row[4] or "",
        prerequisite=row[5] or "",
        credit=row[6] or "",
        details=row[7] or "",
        description=row[8] or "",
        source_file=row[9] or "",
    )


def _row_to_entry(row) -> MasterCatalogEntry:
    return MasterCatalogEntry(
        code=row[0],
        name=row[1],
        title=row[2] or "",
        category=row[3] or "",
        program_area=row[4] or "",
        grade_level=row[5] or "",
        duration=row[6] or "",
        credit=row[7] or "",
    )


def _identity_params(extraction_id: str, record: CourseRecord) -> Dict[str, Any]:
    category, name, code, grade_level = record.identity()
    return {
        "extraction_id": extraction_id,
        "category": category,
        "course_name": name,
        "course_code": code,
        "grade_level": grade_level,
    }


class RecordStore:
    """
    Extractions, their course records and the master catalog in one SQL database.

    Pristine extraction columns are written once by save_extraction. Mapping
    columns are written per record by update_course_mappings, never by
    replacing the parent extraction. Suggestion columns (secondary_*) have
    their own update and are independent of both.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "RecordStore":
        url = url or os.getenv("DATABASE_URL")
        if not url:
            raise RecordStoreError("DATABASE_URL is not set. Set it to a SQLAlchemy database URL.")
        return cls(create_engine(url, future=True))

    def init_schema(self) -> None:
        try:
            with self.engine.begin() as conn:
                for stmt in _SCHEMA:
                    conn.execute(text(stmt))
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to create schema: {e}") from e

    # ------------------------ Master catalog ------------------------
    def import_catalog(self, entries: Iterable[MasterCatalogEntry], replace: bool = False) -> int:
        """Insert catalog entries; existing codes are updated in place. Returns rows written."""
        rows: List[Dict[str, Any]] = []
        seen = set()
        for e in entries:
            code = _s(e.code)
            if not code or code in seen:
                continue
            seen.add(code)
            rows.append(
                {
                    "code": code,
                    "name": _s(e.name) or code,
                    "title": _s(e.title),
                    "category": _s(e.category),
                    "program_area": _s(e.program_area),
                    "grade_level": _s(e.grade_level),
                    "duration": _s(e.duration),
                    "credit": _s(e.credit),
                }
            )
        try:
            with self.engine.begin() as conn:
                if replace:
                    conn.execute(text("DELETE FROM master_courses"))
                start = conn.execute(text("SELECT COALESCE(MAX(position), -1) FROM master_courses")).scalar()
                for offset, row in enumerate(rows, start=int(start) + 1):
                    exists = conn.execute(
                        text("SELECT 1 FROM master_courses WHERE code = :code"), {"code": row["code"]}
                    ).fetchone()
                    if exists:
                        conn.execute(
                            text(
                                """
                                UPDATE master_courses
                                SET name=:name, title=:title, category=:category, program_area=:program_area,
                                    grade_level=:grade_level, duration=:duration, credit=:credit
                                WHERE code=:code
                                """
                            ),
                            row,
                        )
                    else:
                        conn.execute(
                            text(
                                """
                                INSERT INTO master_courses (
                                  code, position, name, title, category, program_area, grade_level, duration, credit
                                )
                                VALUES (
                                  :code, :position, :name, :title, :category, :program_area, :grade_level,
                                  :duration, :credit
                                )
                                """
                            ),
                            {**row, "position": offset},
                        )
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to import catalog: {e}") from e
        logger.info("Imported %d master catalog entries", len(rows))
        return len(rows)

    def load_catalog(self) -> List[MasterCatalogEntry]:
        """Snapshot of the whole catalog in import order."""
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    text(f"SELECT {_CATALOG_COLUMNS} FROM master_courses ORDER BY position ASC")
                ).fetchall()
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to load catalog: {e}") from e
        return [_row_to_entry(r) for r in rows]

    def clear_catalog(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(text("DELETE FROM master_courses"))

    def lookup_codes(self, codes: Iterable[str]) -> CodeLookup:
        """Catalog entries for the given codes (trimmed, case-insensitive) plus the codes not found."""
        wanted: List[str] = []
        for c in codes:
            c = _s(c).upper()
            if c and c not in wanted:
                wanted.append(c)
        if not wanted:
            raise ValueError("No course codes to look up")

        stmt = text(
            f"SELECT {_CATALOG_COLUMNS} FROM master_courses WHERE UPPER(code) IN :codes ORDER BY position ASC"
        ).bindparams(bindparam("codes", expanding=True))
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt, {"codes": wanted}).fetchall()
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to look up course codes: {e}") from e
        found = [_row_to_entry(r) for r in rows]
        have = {e.code.upper() for e in found}
        logger.info("Looked up %d course codes, %d found", len(wanted), len(found))
        return CodeLookup(found=found, missing=[c for c in wanted if c not in have])

    # ------------------------ Extractions ------------------------
    def save_extraction(
        self,
        filename: str,
        records: Sequence[CourseRecord],
        file_hash: Optional[str] = None,
    ) -> str:
        extraction_id = str(uuid.uuid4())
        now = _now_utc_iso()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO extractions (id, filename, file_hash, created_at, updated_at, is_refined, total_courses)
                        VALUES (:id, :filename, :file_hash, :now, :now, :is_refined, :total)
                        """
                    ),
                    {
                        "id": extraction_id,
                        "filename": filename,
                        "file_hash": file_hash,
                        "now": now,
                        "is_refined": False,
                        "total": len(records),
                    },
                )
                for position, r in enumerate(records):
                    conn.execute(
                        text(
                            f"""
                            INSERT INTO extracted_courses (extraction_id, position, {_PRISTINE_COLUMNS})
                            VALUES (
                              :extraction_id, :position, :category, :course_name, :course_code, :grade_level,
                              :length, :prerequisite, :credit, :details, :description, :source_file
                            )
                            """
                        ),
                        {
                            "extraction_id": extraction_id,
                            "position": position,
                            "category": r.category,
                            "course_name": r.name,
                            "course_code": r.code,
                            "grade_level": r.grade_level,
                            "length": r.length,
                            "prerequisite": r.prerequisite,
                            "credit": r.credit,
                            "details": r.details,
                            "description": r.description,
                            "source_file": r.source_file or filename,
                        },
                    )
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to save extraction for {filename}: {e}") from e
        logger.info("Saved extraction %s (%s) with %d courses", extraction_id, filename, len(records))
        return extraction_id

    def get_summary(self, extraction_id: str) -> Optional[ExtractionSummary]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id, filename, total_courses, is_refined, created_at
                    FROM extractions WHERE id = :id
                    """
                ),
                {"id": extraction_id},
            ).fetchone()
        if not row:
            return None
        return ExtractionSummary(
            extraction_id=row[0],
            filename=row[1],
            total_courses=int(row[2]),
            is_refined=bool(row[3]),
            created_at=row[4],
        )

    def get_extraction(self, extraction_id: str) -> Optional[List[CourseRecord]]:
        """Pristine course records of an extraction in stored order, or None if unknown."""
        if self.get_summary(extraction_id) is None:
            return None
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_PRISTINE_COLUMNS}
                    FROM extracted_courses
                    WHERE extraction_id = :id
                    ORDER BY position ASC
                    """
                ),
                {"id": extraction_id},
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def get_mappings(self, extraction_id: str) -> List[Dict[str, Any]]:
        """Stored records with their mapping columns, as plain dicts."""
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_PRISTINE_COLUMNS}, mapping_status, mapped_code, mapped_category,
                           mapped_program_area, match_method, confidence, reasoning, alternative_codes
                    FROM extracted_courses
                    WHERE extraction_id = :id
                    ORDER BY position ASC
                    """
                ),
                {"id": extraction_id},
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for r in rows:
            item = _row_to_record(r).to_dict()
            item.update(
                {
                    "status": r[10],
                    "mapped_code": r[11],
                    "mapped_category": r[12],
                    "mapped_program_area": r[13],
                    "match_method": r[14],
                    "confidence": r[15],
                    "reasoning": r[16],
                    "alternative_codes": json.loads(r[17]) if r[17] else [],
                }
            )
            out.append(item)
        return out

    def find_extraction_by_hash(self, file_hash: str) -> Optional[str]:
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT id FROM extractions
                    WHERE file_hash = :h
                    ORDER BY created_at ASC
                    LIMIT 1
                    """
                ),
                {"h": file_hash},
            ).fetchone()
        return str(row[0]) if row else None

    def list_extractions(self) -> List[ExtractionSummary]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT id, filename, total_courses, is_refined, created_at
                    FROM extractions
                    ORDER BY created_at DESC
                    """
                )
            ).fetchall()
        return [
            ExtractionSummary(
                extraction_id=r[0], filename=r[1], total_courses=int(r[2]), is_refined=bool(r[3]), created_at=r[4]
            )
            for r in rows
        ]

    # ------------------------ Mapping updates ------------------------
    def update_course_mappings(self, extraction_id: str, results: Sequence[MappingResult]) -> int:
        """
        Write mapping columns for each result, addressed by the record's identity tuple.

        Returns the number of stored rows updated. Only mapping columns appear
        in the UPDATE.
        """
        updated = 0
        try:
            with self.engine.begin() as conn:
                for res in results:
                    rc = conn.execute(
                        text(
                            f"""
                            UPDATE extracted_courses
                            SET mapping_status=:status,
                                mapped_code=:mapped_code,
                                mapped_category=:mapped_category,
                                mapped_program_area=:mapped_program_area,
                                match_method=:match_method,
                                confidence=:confidence,
                                reasoning=:reasoning,
                                alternative_codes=:alternative_codes
                            WHERE {_IDENTITY_WHERE}
                            """
                        ),
                        {
                            "status": res.status,
                            "mapped_code": res.mapped_code,
                            "mapped_category": res.mapped_category,
                            "mapped_program_area": res.mapped_program_area,
                            "match_method": res.match_method,
                            "confidence": res.confidence,
                            "reasoning": res.reasoning or None,
                            "alternative_codes": json.dumps(res.alternative_codes) if res.alternative_codes else None,
                            **_identity_params(extraction_id, res.record),
                        },
                    ).rowcount
                    if not rc:
                        logger.warning("No stored course matches %r in extraction %s", res.record.name, extraction_id)
                    updated += rc or 0
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to update mappings for extraction {extraction_id}: {e}") from e
        return updated

    def mark_refined(self, extraction_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("UPDATE extractions SET is_refined=:refined, updated_at=:now WHERE id=:id"),
                {"refined": True, "now": _now_utc_iso(), "id": extraction_id},
            )

    # ------------------------ Secondary suggestions ------------------------
    def update_secondary_mappings(self, extraction_id: str, suggestions: Sequence[SecondaryMapping]) -> int:
        """
        Write suggestion columns for each record, addressed like update_course_mappings.

        Primary mapping columns and the refined flag are never touched.
        """
        updated = 0
        try:
            with self.engine.begin() as conn:
                for s in suggestions:
                    rc = conn.execute(
                        text(
                            f"""
                            UPDATE extracted_courses
                            SET secondary_code=:code,
                                secondary_name=:name,
                                secondary_confidence=:confidence,
                                secondary_reasoning=:reasoning,
                                secondary_alternative_codes=:alternative_codes,
                                secondary_model=:model,
                                secondary_run_at=:run_at
                            WHERE {_IDENTITY_WHERE}
                            """
                        ),
                        {
                            "code": s.suggested_code,
                            "name": s.suggested_name,
                            "confidence": s.confidence,
                            "reasoning": s.reasoning or None,
                            "alternative_codes": json.dumps(s.alternative_codes) if s.alternative_codes else None,
                            "model": s.model or None,
                            "run_at": s.run_at,
                            **_identity_params(extraction_id, s.record),
                        },
                    ).rowcount
                    if not rc:
                        logger.warning("No stored course matches %r in extraction %s", s.record.name, extraction_id)
                    updated += rc or 0
                conn.execute(
                    text("UPDATE extractions SET secondary_updated_at=:now WHERE id=:id"),
                    {"now": _now_utc_iso(), "id": extraction_id},
                )
        except SQLAlchemyError as e:
            raise RecordStoreError(f"Failed to store suggestions for extraction {extraction_id}: {e}") from e
        return updated

    def get_secondary_mappings(self, extraction_id: str) -> List[SecondaryMapping]:
        """One entry per stored record in order; records never remapped have no suggestion."""
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    f"""
                    SELECT {_PRISTINE_COLUMNS}, secondary_code, secondary_name, secondary_confidence,
                           secondary_reasoning, secondary_alternative_codes, secondary_model, secondary_run_at
                    FROM extracted_courses
                    WHERE extraction_id = :id
                    ORDER BY position ASC
                    """
                ),
                {"id": extraction_id},
            ).fetchall()
        return [
            SecondaryMapping(
                record=_row_to_record(r),
                suggested_code=r[10],
                suggested_name=r[11],
                confidence=r[12],
                reasoning=r[13] or "",
                alternative_codes=json.loads(r[14]) if r[14] else [],
                model=r[15] or "",
                run_at=r[16],
            )
            for r in rows
        ]

    def clear_secondary_mappings(self, extraction_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE extracted_courses
                    SET secondary_code=NULL, secondary_name=NULL, secondary_confidence=NULL,
                        secondary_reasoning=NULL, secondary_alternative_codes=NULL,
                        secondary_model=NULL, secondary_run_at=NULL
                    WHERE extraction_id=:id
                    """
                ),
                {"id": extraction_id},
            )
            conn.execute(
                text("UPDATE extractions SET secondary_updated_at=NULL WHERE id=:id"),
                {"id": extraction_id},
            )
