from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from ._util import parse_iso_ts, slugify, utc_now_ts

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_DEFAULT_WINDOW_HOURS = 48
_DEFAULT_ARTICLE_LIMIT = 100

ENTITY_TYPES = ("person", "company", "location", "commodity", "sector", "policy", "event")
ENTITY_ROLES = ("primary", "secondary", "mentioned")
STORY_STATUSES = ("draft", "published", "archived")
IMPACT_TYPES = ("positive", "negative", "neutral", "uncertain")
JOB_STATUSES = ("running", "completed", "failed", "skipped")

# (id, name, description)
IMPACT_SECTORS: list[tuple[str, str, str]] = [
    ("economic", "Economic", "Markets, trade, financial impacts"),
    ("geopolitical", "Geopolitical", "International relations, conflicts, alliances"),
    ("political", "Political", "Government, elections, policy"),
    ("social", "Social", "Society, public opinion, demographics"),
    ("technological", "Technological", "Tech industry, innovation, digital"),
    ("supply_chain", "Supply Chain", "Logistics, manufacturing, commodities"),
    ("ecological", "Ecological", "Environment, climate, natural resources"),
]


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def entity_name_key(name: str) -> str:
    """Dedup key for entity names: whitespace-collapsed and casefolded."""
    return " ".join(str(name or "").split()).casefold()


def _clean_text(v: Any, *, max_len: int | None = None) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    if not s:
        return None
    if max_len is not None and len(s) > max_len:
        s = s[:max_len]
    return s


class StoryGraphDB:
    """SQLite-backed article, story and knowledge-graph store."""

    def __init__(self, *, path: Path) -> None:
        self._path = path
        _ensure_parent_dir(path)

        # Autocommit by default; multi-statement writes go through transaction().
        self._conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")

        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        try:
            self._conn.close()
        except sqlite3.Error:
            pass

    def __enter__(self) -> "StoryGraphDB":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed writes atomically. Nested calls join the outer transaction."""
        if self._conn.in_transaction:
            yield
            return
        self._conn.execute("BEGIN IMMEDIATE;")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK;")
            raise
        else:
            self._conn.execute("COMMIT;")

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              k TEXT PRIMARY KEY,
              v TEXT NOT NULL
            );
            """
        )
        schema = self.get_meta_int("schema_version")

        if schema is None:
            self._create_all_tables_v1(cur)
            self._seed_impact_sectors(cur)
            self.set_meta("schema_version", str(SCHEMA_VERSION))
            return

        if schema == SCHEMA_VERSION:
            # Reference rows should exist regardless of how the DB was created.
            self._seed_impact_sectors(cur)
            return

        raise RuntimeError(f"Unsupported story graph schema_version={schema}, expected={SCHEMA_VERSION}")

    def _create_all_tables_v1(self, cur: sqlite3.Cursor) -> None:
        # articles (written by the ingestion collaborator)
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS articles (
              id TEXT PRIMARY KEY,
              url TEXT NOT NULL UNIQUE,
              title TEXT NOT NULL,
              excerpt TEXT,
              source TEXT,
              image_url TEXT,
              published_at TEXT,
              published_at_ts INTEGER,
              processed INTEGER NOT NULL DEFAULT 0,
              ingested_at_ts INTEGER NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at_ts);")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stories (
              id INTEGER PRIMARY KEY,
              title TEXT NOT NULL,
              slug TEXT UNIQUE,
              summary TEXT,
              synthesis_json TEXT,
              hero_image_url TEXT,
              status TEXT NOT NULL DEFAULT 'draft'
                CHECK (status IN ('draft', 'published', 'archived')),
              source_count INTEGER NOT NULL DEFAULT 0,
              view_count INTEGER NOT NULL DEFAULT 0,
              published_at_ts INTEGER,
              created_at_ts INTEGER NOT NULL,
              updated_at_ts INTEGER NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stories_published ON stories(status, published_at_ts);")

        # article_id is UNIQUE: an article belongs to at most one story.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS story_articles (
              story_id INTEGER NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
              article_id TEXT NOT NULL UNIQUE REFERENCES articles(id) ON DELETE CASCADE,
              relevance_score REAL NOT NULL DEFAULT 1.0,
              added_at_ts INTEGER NOT NULL,
              PRIMARY KEY (story_id, article_id)
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
              id INTEGER PRIMARY KEY,
              name TEXT NOT NULL,
              name_key TEXT NOT NULL,
              type TEXT NOT NULL
                CHECK (type IN ('person', 'company', 'location', 'commodity', 'sector', 'policy', 'event')),
              created_at_ts INTEGER NOT NULL,
              UNIQUE (name_key, type)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_name_key ON entities(name_key);")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS story_entities (
              id INTEGER PRIMARY KEY,
              story_id INTEGER NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
              entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
              role TEXT NOT NULL DEFAULT 'mentioned'
                CHECK (role IN ('primary', 'secondary', 'mentioned')),
              context TEXT,
              created_at_ts INTEGER NOT NULL,
              UNIQUE (story_id, entity_id)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_story_entities_entity ON story_entities(entity_id);")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entity_connections (
              id INTEGER PRIMARY KEY,
              source_entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
              target_entity_id INTEGER NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
              relationship_type TEXT NOT NULL,
              relationship_label TEXT,
              strength REAL NOT NULL DEFAULT 0.5 CHECK (strength >= 0 AND strength <= 1),
              evidence TEXT,
              story_id INTEGER REFERENCES stories(id) ON DELETE SET NULL,
              created_at_ts INTEGER NOT NULL,
              updated_at_ts INTEGER NOT NULL,
              UNIQUE (source_entity_id, target_entity_id, relationship_type)
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_entity_connections_target ON entity_connections(target_entity_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_entity_connections_story ON entity_connections(story_id);")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS impact_sectors (
              id TEXT PRIMARY KEY,
              name TEXT NOT NULL,
              description TEXT
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS story_impacts (
              id INTEGER PRIMARY KEY,
              story_id INTEGER NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
              sector_id TEXT NOT NULL REFERENCES impact_sectors(id) ON DELETE CASCADE,
              impact_type TEXT CHECK (impact_type IN ('positive', 'negative', 'neutral', 'uncertain')),
              severity INTEGER CHECK (severity >= 1 AND severity <= 5),
              prediction TEXT,
              confidence REAL CHECK (confidence >= 0 AND confidence <= 1),
              created_at_ts INTEGER NOT NULL,
              UNIQUE (story_id, sector_id)
            );
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS job_logs (
              id INTEGER PRIMARY KEY,
              job_type TEXT NOT NULL,
              status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('running', 'completed', 'failed', 'skipped')),
              message TEXT,
              items_processed INTEGER NOT NULL DEFAULT 0,
              stories_created INTEGER NOT NULL DEFAULT 0,
              cluster_count INTEGER NOT NULL DEFAULT 0,
              started_at_ts INTEGER NOT NULL,
              completed_at_ts INTEGER
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_type_started ON job_logs(job_type, started_at_ts);")

    def _seed_impact_sectors(self, cur: sqlite3.Cursor) -> None:
        for sector_id, name, description in IMPACT_SECTORS:
            cur.execute(
                "INSERT INTO impact_sectors(id, name, description) VALUES(?, ?, ?) ON CONFLICT(id) DO NOTHING",
                (sector_id, name, description),
            )

    # ------------------------------------------------------------------
    # Meta helpers
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT v FROM meta WHERE k = ?", (key,)).fetchone()
        return str(row["v"]) if row else None

    def get_meta_int(self, key: str) -> int | None:
        v = self.get_meta(key)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute("INSERT INTO meta(k, v) VALUES(?, ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v", (key, value))

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    def upsert_articles(self, articles: Iterable[dict[str, Any]], *, now_ts: int | None = None) -> dict[str, int]:
        """Insert new articles keyed by id.

        A stored article is never rewritten: a known id counts as ``existing``
        and keeps its original fields. Rows colliding on url are skipped.
        """
        now_ts = utc_now_ts() if now_ts is None else int(now_ts)
        inserted = 0
        existing = 0
        skipped = 0

        cur = self._conn.cursor()
        for it in articles:
            article_id = _clean_text(it.get("id"))
            url = _clean_text(it.get("url"))
            title = _clean_text(it.get("title"))
            if not article_id or not url or not title:
                skipped += 1
                continue
            published_at = _clean_text(it.get("published_at"))
            values = (
                url,
                title,
                _clean_text(it.get("excerpt")) or "",
                _clean_text(it.get("source")) or "Unknown",
                _clean_text(it.get("image_url")),
                published_at,
                parse_iso_ts(published_at),
            )
            try:
                cur.execute(
                    """
                    INSERT INTO articles(
                      url, title, excerpt, source, image_url, published_at, published_at_ts,
                      id, ingested_at_ts
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (*values, article_id, now_ts),
                )
            except sqlite3.IntegrityError as e:
                logger.warning("Skipped article id=%s url=%s: %s", article_id, url, e)
                skipped += 1
                continue
            if cur.rowcount == 0:
                existing += 1
            else:
                inserted += 1

        return {"inserted": inserted, "existing": existing, "skipped": skipped}

    def get_article(self, article_id: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM articles WHERE id = ?", (str(article_id),)).fetchone()
        return dict(row) if row else None

    def get_unassigned_articles(
        self,
        *,
        window_hours: int = _DEFAULT_WINDOW_HOURS,
        limit: int = _DEFAULT_ARTICLE_LIMIT,
        now_ts: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return recent articles with no story link, newest first, capped at *limit*."""
        now = utc_now_ts() if now_ts is None else int(now_ts)
        cutoff = now - int(window_hours) * 3600
        rows = self._conn.execute(
            """
            SELECT a.id, a.title, a.excerpt, a.url, a.source, a.published_at, a.image_url
            FROM articles a
            WHERE a.published_at_ts >= ?
              AND NOT EXISTS (SELECT 1 FROM story_articles sa WHERE sa.article_id = a.id)
            ORDER BY a.published_at_ts DESC, a.id ASC
            LIMIT ?
            """,
            (cutoff, int(limit)),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def create_story(
        self,
        *,
        title: str,
        summary: str | None,
        sections: list[dict[str, Any]],
        hero_image_url: str | None = None,
        status: str = "published",
        published_at_ts: int | None = None,
    ) -> int:
        if status not in STORY_STATUSES:
            raise ValueError(f"invalid story status: {status!r}")
        now = utc_now_ts()
        title_s = _clean_text(title)
        if not title_s:
            raise ValueError("story title must be a non-empty str")
        cur = self._conn.cursor()
        cur.execute(
            """
            INSERT INTO stories(
              title, summary, synthesis_json, hero_image_url, status,
              published_at_ts, created_at_ts, updated_at_ts
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                title_s,
                _clean_text(summary),
                json.dumps(sections, ensure_ascii=False),
                _clean_text(hero_image_url),
                status,
                (int(published_at_ts) if published_at_ts is not None else now),
                now,
                now,
            ),
        )
        story_id = int(cur.lastrowid)
        cur.execute("UPDATE stories SET slug = ? WHERE id = ?", (f"{slugify(title_s)}-{story_id}", story_id))
        return story_id

    def get_story(self, story_id: int) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM stories WHERE id = ?", (int(story_id),)).fetchone()
        if not row:
            return None
        out = dict(row)
        raw = out.pop("synthesis_json", None)
        out["sections"] = json.loads(raw) if raw else []
        return out

    def list_stories(self, *, limit: int = 20, status: str | None = "published") -> list[dict[str, Any]]:
        if status is None:
            rows = self._conn.execute(
                "SELECT id, title, slug, summary, hero_image_url, status, source_count, published_at_ts "
                "FROM stories ORDER BY published_at_ts DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT id, title, slug, summary, hero_image_url, status, source_count, published_at_ts "
                "FROM stories WHERE status = ? ORDER BY published_at_ts DESC, id DESC LIMIT ?",
                (status, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    def link_article_to_story(self, *, story_id: int, article_id: str, relevance_score: float) -> bool:
        """Link an article to a story and bump the story's source_count.

        Returns False when this exact link already exists. Linking an article
        that already belongs to a different story raises sqlite3.IntegrityError.
        """
        now = utc_now_ts()
        cur = self._conn.cursor()
        cur.execute(
            """
            INSERT INTO story_articles(story_id, article_id, relevance_score, added_at_ts)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(story_id, article_id) DO NOTHING
            """,
            (int(story_id), str(article_id), float(relevance_score), now),
        )
        if cur.rowcount <= 0:
            return False
        cur.execute(
            "UPDATE stories SET source_count = source_count + 1, updated_at_ts = ? WHERE id = ?",
            (now, int(story_id)),
        )
        return True

    def story_articles(self, story_id: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT a.id, a.title, a.url, a.source, a.image_url, sa.relevance_score
            FROM story_articles sa
            JOIN articles a ON a.id = sa.article_id
            WHERE sa.story_id = ?
            ORDER BY a.published_at_ts DESC, a.id ASC
            """,
            (int(story_id),),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def find_entity(self, *, name: str, entity_type: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT id, name, type FROM entities WHERE name_key = ? AND type = ?",
            (entity_name_key(name), entity_type),
        ).fetchone()
        return dict(row) if row else None

    def find_entities_by_name(self, name: str) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT id, name, type FROM entities WHERE name_key = ? ORDER BY id ASC",
            (entity_name_key(name),),
        ).fetchall()
        return [dict(r) for r in rows]

    def create_entity(self, *, name: str, entity_type: str) -> int:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"invalid entity type: {entity_type!r}")
        clean = " ".join(str(name or "").split())
        if not clean:
            raise ValueError("entity name must be a non-empty str")
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO entities(name, name_key, type, created_at_ts) VALUES(?, ?, ?, ?)",
            (clean, entity_name_key(clean), entity_type, utc_now_ts()),
        )
        return int(cur.lastrowid)

    def get_entity(self, entity_id: int) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT id, name, type, created_at_ts FROM entities WHERE id = ?", (int(entity_id),)).fetchone()
        return dict(row) if row else None

    def upsert_story_entity(self, *, story_id: int, entity_id: int, role: str, context: str | None) -> None:
        if role not in ENTITY_ROLES:
            role = "mentioned"
        self._conn.execute(
            """
            INSERT INTO story_entities(story_id, entity_id, role, context, created_at_ts)
            VALUES(?, ?, ?, ?, ?)
            ON CONFLICT(story_id, entity_id) DO UPDATE SET
              role=excluded.role,
              context=excluded.context
            """,
            (int(story_id), int(entity_id), role, _clean_text(context, max_len=1000), utc_now_ts()),
        )

    def story_entities(self, story_id: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT e.id, e.name, e.type, se.role, se.context
            FROM story_entities se
            JOIN entities e ON e.id = se.entity_id
            WHERE se.story_id = ?
            ORDER BY se.id ASC
            """,
            (int(story_id),),
        ).fetchall()
        return [dict(r) for r in rows]

    def entity_story_ids(self, entity_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT story_id FROM story_entities WHERE entity_id = ? ORDER BY story_id ASC",
            (int(entity_id),),
        ).fetchall()
        return [int(r["story_id"]) for r in rows]

    # ------------------------------------------------------------------
    # Entity connections
    # ------------------------------------------------------------------

    def upsert_entity_connection(
        self,
        *,
        source_entity_id: int,
        target_entity_id: int,
        relationship_type: str,
        relationship_label: str | None,
        strength: float,
        evidence: str | None,
        story_id: int | None,
    ) -> int:
        """Insert or overwrite the edge for (source, target, relationship_type)."""
        now = utc_now_ts()
        cur = self._conn.cursor()
        cur.execute(
            """
            INSERT INTO entity_connections(
              source_entity_id, target_entity_id, relationship_type,
              relationship_label, strength, evidence, story_id,
              created_at_ts, updated_at_ts
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_entity_id, target_entity_id, relationship_type) DO UPDATE SET
              relationship_label=excluded.relationship_label,
              strength=excluded.strength,
              evidence=excluded.evidence,
              story_id=excluded.story_id,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                int(source_entity_id),
                int(target_entity_id),
                relationship_type,
                _clean_text(relationship_label),
                float(strength),
                _clean_text(evidence, max_len=2000),
                (int(story_id) if story_id is not None else None),
                now,
                now,
            ),
        )
        row = cur.execute(
            """
            SELECT id FROM entity_connections
            WHERE source_entity_id = ? AND target_entity_id = ? AND relationship_type = ?
            """,
            (int(source_entity_id), int(target_entity_id), relationship_type),
        ).fetchone()
        return int(row["id"])

    def entity_connections(self, *, entity_id: int | None = None) -> list[dict[str, Any]]:
        sql = (
            "SELECT id, source_entity_id, target_entity_id, relationship_type, relationship_label, "
            "strength, evidence, story_id, created_at_ts, updated_at_ts FROM entity_connections"
        )
        params: tuple[Any, ...] = ()
        if entity_id is not None:
            sql += " WHERE source_entity_id = ? OR target_entity_id = ?"
            params = (int(entity_id), int(entity_id))
        rows = self._conn.execute(sql + " ORDER BY id ASC", params).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Impacts
    # ------------------------------------------------------------------

    def impact_sector_ids(self) -> set[str]:
        rows = self._conn.execute("SELECT id FROM impact_sectors").fetchall()
        return {str(r["id"]) for r in rows}

    def upsert_story_impact(
        self,
        *,
        story_id: int,
        sector_id: str,
        impact_type: str,
        severity: int,
        prediction: str | None,
        confidence: float,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO story_impacts(story_id, sector_id, impact_type, severity, prediction, confidence, created_at_ts)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(story_id, sector_id) DO UPDATE SET
              impact_type=excluded.impact_type,
              severity=excluded.severity,
              prediction=excluded.prediction,
              confidence=excluded.confidence
            """,
            (
                int(story_id),
                sector_id,
                impact_type,
                int(severity),
                _clean_text(prediction, max_len=2000),
                float(confidence),
                utc_now_ts(),
            ),
        )

    def story_impacts(self, story_id: int) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT sector_id, impact_type, severity, prediction, confidence
            FROM story_impacts WHERE story_id = ? ORDER BY id ASC
            """,
            (int(story_id),),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Job log
    # ------------------------------------------------------------------

    def start_job_log(self, *, job_type: str, now_ts: int | None = None) -> int:
        now = utc_now_ts() if now_ts is None else int(now_ts)
        cur = self._conn.cursor()
        cur.execute(
            "INSERT INTO job_logs(job_type, status, started_at_ts) VALUES(?, 'running', ?)",
            (str(job_type), now),
        )
        return int(cur.lastrowid)

    def finish_job_log(
        self,
        log_id: int,
        *,
        status: str,
        message: str | None = None,
        items_processed: int = 0,
        stories_created: int = 0,
        cluster_count: int = 0,
        now_ts: int | None = None,
    ) -> None:
        if status not in JOB_STATUSES:
            raise ValueError(f"invalid job status: {status!r}")
        now = utc_now_ts() if now_ts is None else int(now_ts)
        self._conn.execute(
            """
            UPDATE job_logs SET
              status = ?,
              message = ?,
              items_processed = ?,
              stories_created = ?,
              cluster_count = ?,
              completed_at_ts = ?
            WHERE id = ?
            """,
            (
                status,
                _clean_text(message, max_len=500),
                int(items_processed),
                int(stories_created),
                int(cluster_count),
                now,
                int(log_id),
            ),
        )

    def recent_job_logs(self, *, limit: int = 20, job_type: str | None = None) -> list[dict[str, Any]]:
        if job_type is None:
            rows = self._conn.execute(
                "SELECT * FROM job_logs ORDER BY started_at_ts DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM job_logs WHERE job_type = ? ORDER BY started_at_ts DESC, id DESC LIMIT ?",
                (str(job_type), int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def table_counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for table in (
            "articles",
            "stories",
            "story_articles",
            "entities",
            "story_entities",
            "entity_connections",
            "story_impacts",
            "job_logs",
        ):
            row = self._conn.execute(f"SELECT COUNT(1) AS n FROM {table}").fetchone()
            out[table] = int(row["n"]) if row else 0
        return out
