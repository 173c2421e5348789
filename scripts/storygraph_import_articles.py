#!/usr/bin/env python3
"""Import articles from a JSONL file into the story graph DB.

Each line is an object with at least id, url and title; excerpt, source,
image_url and published_at (ISO 8601) are optional. The import runs as an
ingestion job, so it is logged and never overlaps another ingestion run.

Usage:
    PYTHONPATH=. python scripts/storygraph_import_articles.py articles.jsonl [--db PATH]
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Iterator

STORYGRAPH_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(STORYGRAPH_ROOT))

from storygraph.config import ConfigError, load_settings  # noqa: E402
from storygraph.jobs import PipelineJobs  # noqa: E402
from storygraph.job_guard import JobGuard  # noqa: E402
from storygraph.story_db import StoryGraphDB  # noqa: E402

logger = logging.getLogger(__name__)


def _iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("%s:%d: invalid JSON (%s), skipping", path, lineno, e)
                continue
            if not isinstance(obj, dict):
                logger.warning("%s:%d: not an object, skipping", path, lineno)
                continue
            yield obj


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Import JSONL articles into the story graph DB.")
    parser.add_argument("path", help="JSONL file with one article per line.")
    parser.add_argument("--config", default=None, help="YAML settings file (default: $STORYGRAPH_HOME/storygraph.yaml).")
    parser.add_argument("--db", default=None, help="SQLite db path (overrides settings).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    src = Path(args.path).expanduser()
    if not src.exists():
        logger.error("Input file not found: %s", src)
        return 2
    db_path = Path(args.db).expanduser() if args.db else settings.db_path

    def ingest(db: StoryGraphDB) -> dict[str, Any]:
        return db.upsert_articles(_iter_jsonl(src))

    jobs = PipelineJobs(db_path=db_path, guard=JobGuard(lock_dir=settings.lock_dir))
    result = jobs.run_ingestion(ingest)
    if result is None:
        out = {"ok": False, "skipped": True, "reason": "ingestion job already running"}
        print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
        return 0

    out = {"ok": "error" not in result, "db": str(db_path), "path": str(src), **result}
    print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
    return 0 if out["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
