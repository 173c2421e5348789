#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

STORYGRAPH_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(STORYGRAPH_ROOT))

from storygraph.config import ConfigError, load_settings  # noqa: E402
from storygraph.story_db import StoryGraphDB  # noqa: E402


def _iso(ts: int | None) -> str | None:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=UTC).isoformat(timespec="seconds")


def _job_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": row["id"],
        "job_type": row["job_type"],
        "status": row["status"],
        "message": row.get("message"),
        "items_processed": row.get("items_processed"),
        "stories_created": row.get("stories_created"),
        "cluster_count": row.get("cluster_count"),
        "started_at": _iso(row.get("started_at_ts")),
        "completed_at": _iso(row.get("completed_at_ts")),
    }


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Show story graph DB status: table counts, recent stories and job runs.")
    parser.add_argument("--config", default=None, help="YAML settings file (default: $STORYGRAPH_HOME/storygraph.yaml).")
    parser.add_argument("--db", default=None, help="SQLite db path (overrides settings).")
    parser.add_argument("--window-hours", type=int, default=None, help="Window for the unassigned-article count (default: from settings).")
    parser.add_argument("--stories", type=int, default=5, help="Recent stories to show (default: 5).")
    parser.add_argument("--jobs", type=int, default=10, help="Recent job runs to show (default: 10).")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False), file=sys.stderr)
        return 2

    db_path = Path(args.db).expanduser() if args.db else settings.db_path
    window_h = int(max(1, args.window_hours or settings.window_hours))

    with StoryGraphDB(path=db_path) as db:
        counts = db.table_counts()
        unassigned = db.get_unassigned_articles(window_hours=window_h, limit=settings.max_articles)
        stories = db.list_stories(limit=max(0, args.stories), status=None)
        jobs = db.recent_job_logs(limit=max(0, args.jobs))

    out = {
        "ok": True,
        "db": str(db_path),
        "settings": settings.redacted(),
        "counts": counts,
        "unassigned_articles": {"window_hours": window_h, "count": len(unassigned)},
        "recent_stories": [
            {
                "id": s["id"],
                "slug": s["slug"],
                "title": s["title"],
                "status": s["status"],
                "source_count": s["source_count"],
                "published_at": _iso(s.get("published_at_ts")),
            }
            for s in stories
        ],
        "recent_jobs": [_job_row(r) for r in jobs],
    }
    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
