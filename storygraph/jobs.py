"""Clustering job and the single-flight job runner around it.

``run_clustering_job`` is one pass over the unassigned-article window:
cluster, drop clusters below the minimum size, materialize the rest one by
one. ``PipelineJobs`` is what a periodic or manual trigger calls; it admits at
most one run per job type and mirrors each admitted run into the job log.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

from ._util import as_int
from .config import Settings
from .job_guard import JobGuard
from .story_clustering import DEFAULT_THRESHOLD, MIN_STORY_SIZE, Article, cluster_articles, qualifying_clusters
from .story_db import StoryGraphDB
from .story_synthesis import DEFAULT_SYNTHESIS_TIMEOUT_S, StorySynthesisOrchestrator, Synthesizer
from .synthesis_client import SynthesisClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusteringJobResult:
    articles_processed: int = 0
    stories_created: int = 0
    cluster_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def message(self) -> str:
        return (
            f"Processed {self.articles_processed} articles, "
            f"created {self.stories_created} stories from {self.cluster_count} clusters"
        )


def run_clustering_job(
    db: StoryGraphDB,
    orchestrator: StorySynthesisOrchestrator,
    *,
    window_hours: int = 48,
    limit: int = 100,
    threshold: float = DEFAULT_THRESHOLD,
    min_cluster_size: int = MIN_STORY_SIZE,
    now_ts: int | None = None,
) -> ClusteringJobResult:
    try:
        rows = db.get_unassigned_articles(window_hours=window_hours, limit=limit, now_ts=now_ts)
    except sqlite3.Error as e:
        logger.error("Failed to fetch unassigned articles: %s", e)
        return ClusteringJobResult()

    if len(rows) < 2:
        logger.info("Not enough unassigned articles to cluster (%d)", len(rows))
        return ClusteringJobResult()

    articles = [Article.from_row(r) for r in rows]
    clusters = cluster_articles(articles, threshold=threshold)
    candidates = qualifying_clusters(clusters, min_size=max(MIN_STORY_SIZE, int(min_cluster_size)))
    logger.info(
        "Clustered %d articles into %d clusters (%d with >= %d articles)",
        len(articles),
        len(clusters),
        len(candidates),
        min_cluster_size,
    )

    created = 0
    for cluster in candidates:
        try:
            story_id = orchestrator.materialize(cluster)
        except Exception:
            logger.exception("Failed to create story for cluster %s", cluster.article_ids())
            continue
        if story_id is not None:
            created += 1

    result = ClusteringJobResult(
        articles_processed=len(articles),
        stories_created=created,
        cluster_count=len(candidates),
    )
    logger.info("Clustering complete: %s", result.message())
    return result


IngestFn = Callable[[StoryGraphDB], "dict[str, Any] | None"]


class PipelineJobs:
    """Trigger-facing entry points for the ingestion and clustering jobs.

    Each run opens its own DB connection so triggers may arrive from any
    thread. A trigger that arrives while the same job is running is skipped
    and returns None.
    """

    def __init__(
        self,
        *,
        db_path: Path,
        synthesizer: Synthesizer | None = None,
        guard: JobGuard | None = None,
        window_hours: int = 48,
        max_articles: int = 100,
        similarity_threshold: float = DEFAULT_THRESHOLD,
        min_cluster_size: int = MIN_STORY_SIZE,
        synthesis_timeout_s: float = DEFAULT_SYNTHESIS_TIMEOUT_S,
    ) -> None:
        self._db_path = Path(db_path)
        self._synthesizer = synthesizer
        self.guard = guard or JobGuard()
        self._window_hours = int(window_hours)
        self._max_articles = int(max_articles)
        self._threshold = float(similarity_threshold)
        self._min_cluster_size = int(min_cluster_size)
        self._synthesis_timeout_s = float(synthesis_timeout_s)

    @classmethod
    def from_settings(cls, settings: Settings, *, synthesizer: Synthesizer | None = None) -> "PipelineJobs":
        if synthesizer is None:
            synthesizer = SynthesisClient(
                api_key=settings.llm_api_key,
                model=settings.llm_model,
                base_url=settings.llm_base_url,
            )
        return cls(
            db_path=settings.db_path,
            synthesizer=synthesizer,
            guard=JobGuard(lock_dir=settings.lock_dir),
            window_hours=settings.window_hours,
            max_articles=settings.max_articles,
            similarity_threshold=settings.similarity_threshold,
            min_cluster_size=settings.min_cluster_size,
            synthesis_timeout_s=settings.synthesis_timeout_seconds,
        )

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _run(self, job_type: str, body: Callable[[], dict[str, Any]]) -> dict[str, Any] | None:
        try:
            return self.guard.run(job_type, body)
        except Exception as e:
            logger.exception("%s job failed", job_type)
            return {"error": str(e) or type(e).__name__}

    def run_clustering(self) -> dict[str, Any] | None:
        return self._run("clustering", self._clustering_body)

    def _clustering_body(self) -> dict[str, Any]:
        if self._synthesizer is None:
            raise RuntimeError("clustering needs a synthesizer")
        with StoryGraphDB(path=self._db_path) as db:
            log_id = db.start_job_log(job_type="clustering")
            try:
                orchestrator = StorySynthesisOrchestrator(
                    db=db,
                    synthesizer=self._synthesizer,
                    timeout_s=self._synthesis_timeout_s,
                )
                result = run_clustering_job(
                    db,
                    orchestrator,
                    window_hours=self._window_hours,
                    limit=self._max_articles,
                    threshold=self._threshold,
                    min_cluster_size=self._min_cluster_size,
                )
            except Exception as e:
                db.finish_job_log(log_id, status="failed", message=str(e) or type(e).__name__)
                raise
            db.finish_job_log(
                log_id,
                status="completed",
                message=result.message(),
                items_processed=result.articles_processed,
                stories_created=result.stories_created,
                cluster_count=result.cluster_count,
            )
            return result.to_dict()

    def run_ingestion(self, ingest_fn: IngestFn) -> dict[str, Any] | None:
        """Run the ingestion collaborator *ingest_fn(db)* under the guard."""

        def body() -> dict[str, Any]:
            with StoryGraphDB(path=self._db_path) as db:
                log_id = db.start_job_log(job_type="ingestion")
                try:
                    result = dict(ingest_fn(db) or {})
                except Exception as e:
                    db.finish_job_log(log_id, status="failed", message=str(e) or type(e).__name__)
                    raise
                items = as_int(result.get("items_processed"))
                if items is None:
                    items = as_int(result.get("inserted")) or 0
                db.finish_job_log(
                    log_id,
                    status="completed",
                    message=f"Ingested {items} articles",
                    items_processed=items,
                )
                return result

        return self._run("ingestion", body)

    def status(self) -> dict[str, dict[str, Any]]:
        return self.guard.status()
