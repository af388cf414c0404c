from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional, Sequence

import pandas as pd

from .errors import PipelineError
from .llm_client import LlmJSONClient, RateLimitExceeded
from .record_store import RecordStore
from .resilient_caller import RequestLog, ResilientCaller
from .schemas import Credential, MasterCatalogEntry, PipelineConfig, VectorStoreConfig
from .pipeline import extract_and_save, refine_extraction, remap_extraction
from .vector_store import CatalogVectorStore

# Accepted header spellings per catalog field, first match wins
CATALOG_COLUMNS = {
    "code": ["code", "course_code", "CourseCode", "Course Code", "Code"],
    "name": ["name", "course_name", "CourseName", "Course Name", "Name"],
    "title": ["title", "course_title", "Title", "Course Title"],
    "category": ["category", "Category", "department", "Department"],
    "program_area": ["program_area", "ProgramArea", "Program Area"],
    "grade_level": ["grade_level", "GradeLevel", "Grade Level", "level", "Level"],
    "duration": ["duration", "Duration", "length", "Length", "term", "Term"],
    "credit": ["credit", "credits", "Credit", "Credits"],
}


def _pick_column(columns: Sequence[str], candidates: List[str]) -> Optional[str]:
    for cand in candidates:
        if cand in columns:
            return cand
    return None


def load_catalog_csv(path: str) -> List[MasterCatalogEntry]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    cols = {field: _pick_column(list(df.columns), names) for field, names in CATALOG_COLUMNS.items()}
    if cols["code"] is None or cols["name"] is None:
        raise ValueError("Catalog CSV must contain a course code column and a course name column.")

    entries: List[MasterCatalogEntry] = []
    for _, row in df.iterrows():
        values = {field: (str(row[col]).strip() if col else "") for field, col in cols.items()}
        if not values["code"]:
            continue
        entries.append(MasterCatalogEntry(**values))
    return entries


def _credential_from_args(args) -> Optional[Credential]:
    api_key = os.getenv(args.api_key_env)
    if not api_key:
        return None
    return Credential(key_id=args.key_id, api_key=api_key)


def _write_request_log(path: Optional[str], log: RequestLog) -> None:
    if not path:
        return
    with open(path, "w") as f:
        for entry in log.entries():
            f.write(json.dumps(entry.to_dict()) + "\n")
    print(f"Wrote request log to {path}")


def _cmd_init_db(args, config: PipelineConfig) -> int:
    store = RecordStore.from_url(args.database_url)
    store.init_schema()
    print("Schema ready.")
    return 0


def _cmd_import_catalog(args, config: PipelineConfig) -> int:
    store = RecordStore.from_url(args.database_url)
    store.init_schema()
    entries = load_catalog_csv(args.csv)
    n = store.import_catalog(entries, replace=args.replace)
    print(f"Imported {n} catalog entries from {args.csv}")
    return 0


def _cmd_extract(args, config: PipelineConfig) -> int:
    credential = _credential_from_args(args)
    if credential is None:
        print(f"No API key in ${args.api_key_env}", file=sys.stderr)
        return 2
    store = RecordStore.from_url(args.database_url)
    store.init_schema()
    with open(args.text_file, encoding="utf-8") as f:
        text = f.read()
    filename = args.filename or os.path.basename(args.text_file)
    request_log = RequestLog()
    caller = ResilientCaller(LlmJSONClient.for_credential(credential, config), config, request_log=request_log)
    extraction_id = asyncio.run(
        extract_and_save(text, filename, caller, store, config, on_progress=lambda ev: print(ev.message))
    )
    summary = store.get_summary(extraction_id)
    print(json.dumps(summary.to_dict() if summary else {"extraction_id": extraction_id}, indent=2))
    _write_request_log(args.request_log, request_log)
    return 0


def _cmd_refine(args, config: PipelineConfig) -> int:
    store = RecordStore.from_url(args.database_url)
    vector_store = CatalogVectorStore.load(args.index_dir) if args.index_dir else None
    request_log = RequestLog()
    stats = asyncio.run(
        refine_extraction(
            args.extraction_id,
            _credential_from_args(args),
            store,
            config=config,
            request_log=request_log,
            vector_store=vector_store,
        )
    )
    print(json.dumps(stats.to_dict(), indent=2))
    _write_request_log(args.request_log, request_log)
    return 0


def _cmd_remap(args, config: PipelineConfig) -> int:
    store = RecordStore.from_url(args.database_url)
    vector_store = CatalogVectorStore.load(args.index_dir) if args.index_dir else None
    request_log = RequestLog()
    outcome = asyncio.run(
        remap_extraction(
            args.extraction_id,
            _credential_from_args(args),
            store,
            config=config,
            positions=args.positions,
            dry_run=args.dry_run,
            request_log=request_log,
            vector_store=vector_store,
        )
    )
    report = {
        "dry_run": args.dry_run,
        "stats": outcome.stats.to_dict(),
        "suggestions": [
            {
                "name": s.record.name,
                "suggested_code": s.suggested_code,
                "suggested_name": s.suggested_name,
                "confidence": s.confidence,
                "reasoning": s.reasoning,
            }
            for s in outcome.suggestions
        ],
    }
    print(json.dumps(report, indent=2))
    _write_request_log(args.request_log, request_log)
    return 0


def _cmd_lookup(args, config: PipelineConfig) -> int:
    result = RecordStore.from_url(args.database_url).lookup_codes(args.codes)
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _cmd_list(args, config: PipelineConfig) -> int:
    store = RecordStore.from_url(args.database_url)
    for s in store.list_extractions():
        flag = "refined" if s.is_refined else "raw"
        print(f"{s.extraction_id}  {s.filename}  {s.total_courses} courses  {flag}  {s.created_at}")
    return 0


def _cmd_build_index(args, config: PipelineConfig) -> int:
    if args.catalog_csv:
        entries = load_catalog_csv(args.catalog_csv)
    else:
        entries = RecordStore.from_url(args.database_url).load_catalog()
    store = CatalogVectorStore(VectorStoreConfig(local_model_name=args.local_model))
    store.build_from_entries(entries)
    store.save(args.out_dir)
    print(f"Index built over {len(store)} catalog entries and saved to: {args.out_dir}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Course catalog extraction and master-catalog mapping")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL; defaults to $DATABASE_URL")
    parser.add_argument("--api-key-env", default="OPENAI_API_KEY", help="Environment variable holding the API key")
    parser.add_argument("--key-id", default="default", help="Label for the credential in logs and errors")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create tables")
    p.set_defaults(func=_cmd_init_db)

    p = sub.add_parser("import-catalog", help="Load master catalog CSV into the store")
    p.add_argument("--csv", required=True, help="CSV with at least code and name columns")
    p.add_argument("--replace", action="store_true", help="Delete the existing catalog first")
    p.set_defaults(func=_cmd_import_catalog)

    p = sub.add_parser("extract", help="Extract courses from a text file and save them")
    p.add_argument("text_file")
    p.add_argument("--filename", default=None, help="Source file name to record; defaults to the text file name")
    p.add_argument("--request-log", default=None, help="Optional JSONL path for the request log")
    p.set_defaults(func=_cmd_extract)

    p = sub.add_parser("refine", help="Map a saved extraction onto the master catalog")
    p.add_argument("extraction_id")
    p.add_argument("--index-dir", default=None, help="Catalog vector store directory for sampling")
    p.add_argument("--request-log", default=None, help="Optional JSONL path for the request log")
    p.set_defaults(func=_cmd_refine)

    p = sub.add_parser("remap", help="Store AI suggestions beside the primary mapping of a saved extraction")
    p.add_argument("extraction_id")
    p.add_argument("--positions", type=int, nargs="+", default=None, help="Only these stored course positions")
    p.add_argument("--dry-run", action="store_true", help="Print suggestions without saving them")
    p.add_argument("--index-dir", default=None, help="Catalog vector store directory for sampling")
    p.add_argument("--request-log", default=None, help="Optional JSONL path for the request log")
    p.set_defaults(func=_cmd_remap)

    p = sub.add_parser("lookup", help="Look up master catalog entries by code")
    p.add_argument("codes", nargs="+")
    p.set_defaults(func=_cmd_lookup)

    p = sub.add_parser("list", help="List saved extractions")
    p.set_defaults(func=_cmd_list)

    p = sub.add_parser("build-index", help="Build the catalog FAISS vector store")
    p.add_argument("--out-dir", required=True, help="Directory to write the vector store")
    p.add_argument("--catalog-csv", default=None, help="Build from CSV instead of the store")
    p.add_argument("--local-model", default="sentence-transformers/all-MiniLM-L6-v2")
    p.set_defaults(func=_cmd_build_index)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = PipelineConfig.from_env()
    try:
        return args.func(args, config)
    except RateLimitExceeded as e:
        partial = f"; {len(e.partial_records)} courses extracted before the limit" if e.partial_records else ""
        print(f"Rate limited (key {e.key_id}): retry after {e.retry_after:g}s{partial}", file=sys.stderr)
        return 3
    except (PipelineError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
