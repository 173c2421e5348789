#!/usr/bin/env python3
"""Run one clustering pass: group unassigned articles and synthesize stories.

Usage:
    PYTHONPATH=. python scripts/storygraph_cluster.py [--config storygraph.yaml] [--threshold 0.35]
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

STORYGRAPH_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(STORYGRAPH_ROOT))

from storygraph.config import ConfigError, load_settings  # noqa: E402
from storygraph.jobs import PipelineJobs  # noqa: E402

logger = logging.getLogger(__name__)


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Cluster recent unassigned articles into stories.")
    parser.add_argument("--config", default=None, help="YAML settings file (default: $STORYGRAPH_HOME/storygraph.yaml).")
    parser.add_argument("--db", default=None, help="SQLite db path (overrides settings).")
    parser.add_argument("--window-hours", type=int, default=None, help="Article window in hours (default: 48).")
    parser.add_argument("--limit", type=int, default=None, help="Max articles per run (default: 100).")
    parser.add_argument("--threshold", type=float, default=None, help="Similarity threshold (default: 0.35).")
    parser.add_argument("--lock-dir", default=None, help="Directory for cross-process job lock files.")
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

    overrides = {
        "db_path": Path(args.db).expanduser() if args.db else None,
        "window_hours": args.window_hours,
        "max_articles": args.limit,
        "similarity_threshold": args.threshold,
        "lock_dir": Path(args.lock_dir).expanduser() if args.lock_dir else None,
    }
    settings = replace(settings, **{k: v for k, v in overrides.items() if v is not None})
    if not settings.llm_api_key:
        logger.warning("No synthesis API key configured; stories will use the excerpt fallback")

    jobs = PipelineJobs.from_settings(settings)
    result = jobs.run_clustering()
    if result is None:
        out = {"ok": False, "skipped": True, "reason": "clustering job already running"}
        print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
        return 0

    out = {"ok": "error" not in result, "db": str(settings.db_path), **result}
    print(json.dumps(out, ensure_ascii=False, separators=(",", ":")))
    return 0 if out["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
