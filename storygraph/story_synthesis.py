"""Turn a qualifying cluster into a persisted story.

The synthesis collaborator's reply is untrusted: it is normalised, checked
against ``schemas/synthesis_v1.schema.json`` and, on any failure (error,
timeout, malformed payload), replaced by a degraded synthesis built from the
article excerpts so a qualifying cluster always yields a story.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, Sequence

import jsonschema

from ._util import ValidationResult, as_float, as_int, clamp, is_non_empty_str, utc_now_ts
from .entity_graph import ConnectionMerger, EntityResolver, normalize_entity_type
from .story_clustering import MIN_STORY_SIZE, Article, Cluster
from .story_db import ENTITY_ROLES, StoryGraphDB

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "synthesis_v1.schema.json"

DEFAULT_SYNTHESIS_TIMEOUT_S = 90.0

_SCHEMA: dict[str, Any] | None = None


def _load_schema() -> dict[str, Any]:
    global _SCHEMA
    if _SCHEMA is None:
        _SCHEMA = json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
    return _SCHEMA


class SynthesisValidationError(ValueError):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors[:5]) or "invalid synthesis payload")
        self.errors = errors


class Synthesizer(Protocol):
    def synthesize(self, articles: Sequence[dict[str, Any]]) -> dict[str, Any]: ...


@dataclass(frozen=True)
class SynthesisResult:
    title: str
    summary: str
    sections: list[dict[str, Any]]
    entities: list[dict[str, Any]] = field(default_factory=list)
    connections: list[dict[str, Any]] = field(default_factory=list)
    impacts: list[dict[str, Any]] = field(default_factory=list)
    degraded: bool = False


# ---------------------------------------------------------------------------
# Payload normalisation + validation
# ---------------------------------------------------------------------------

def _citation_ref(citation: dict[str, Any], articles: Sequence[Article]) -> str:
    ref = citation.get("article_ref") or citation.get("article_id")
    known = {a.id for a in articles}
    if isinstance(ref, (str, int)) and str(ref) in known:
        return str(ref)
    idx = as_int(citation.get("article_index"))
    if idx is not None and 0 <= idx < len(articles):
        return articles[idx].id
    return articles[0].id


def normalize_synthesis_payload(raw: Any, articles: Sequence[Article]) -> Any:
    """Coerce the loosely-typed collaborator reply toward the schema.

    Only cosmetic repairs happen here (defaults, citation mapping, type
    aliases). Items whose entity type or impact sector cannot be mapped are
    dropped. Anything structurally wrong is left for schema validation.
    """
    if not isinstance(raw, dict) or not articles:
        return raw
    obj = copy.deepcopy(raw)

    for key in ("entities", "connections", "impacts"):
        if obj.get(key) is None:
            obj[key] = []
    if obj.get("summary") is None:
        obj["summary"] = ""
    if isinstance(obj.get("title"), str):
        obj["title"] = obj["title"].strip()

    sections = obj.get("sections")
    if isinstance(sections, list):
        for section in sections:
            if not isinstance(section, dict):
                continue
            citations = section.get("citations")
            if citations is None:
                section["citations"] = citations = []
            if not isinstance(citations, list):
                continue
            for c in citations:
                if not isinstance(c, dict):
                    continue
                c["article_ref"] = _citation_ref(c, articles)
                c.pop("article_index", None)
                c.pop("article_id", None)
                if c.get("source") is None:
                    c["source"] = ""

    entities = obj.get("entities")
    if isinstance(entities, list):
        kept: list[Any] = []
        for e in entities:
            if not isinstance(e, dict):
                kept.append(e)
                continue
            et = normalize_entity_type(e.get("type"))
            if et is None:
                logger.warning("Dropping entity %r with unknown type %r", e.get("name"), e.get("type"))
                continue
            e["type"] = et
            if isinstance(e.get("name"), str):
                e["name"] = " ".join(e["name"].split())
            if e.get("role") not in ENTITY_ROLES:
                e["role"] = "mentioned"
            kept.append(e)
        obj["entities"] = kept

    connections = obj.get("connections")
    if isinstance(connections, list):
        for c in connections:
            if not isinstance(c, dict):
                continue
            s = as_float(c.get("strength"))
            if c.get("strength") is None:
                c["strength"] = 0.5
            elif s is not None:
                c["strength"] = clamp(s, 0.0, 1.0)

    impacts = obj.get("impacts")
    if isinstance(impacts, list):
        kept_impacts: list[Any] = []
        sectors = set(_load_schema()["properties"]["impacts"]["items"]["properties"]["sector"]["enum"])
        for imp in impacts:
            if not isinstance(imp, dict):
                kept_impacts.append(imp)
                continue
            sector = imp.get("sector")
            if isinstance(sector, str):
                sector = sector.strip().lower().replace(" ", "_").replace("-", "_")
            if sector not in sectors:
                logger.warning("Dropping impact with unknown sector %r", imp.get("sector"))
                continue
            imp["sector"] = sector
            if isinstance(imp.get("type"), str):
                imp["type"] = imp["type"].strip().lower()
            sev = as_int(imp.get("severity"))
            if sev is not None:
                imp["severity"] = sev
            conf = as_float(imp.get("confidence"))
            if conf is not None:
                imp["confidence"] = conf
            kept_impacts.append(imp)
        obj["impacts"] = kept_impacts

    return obj


def validate_synthesis(payload: Any) -> ValidationResult:
    validator = jsonschema.Draft7Validator(_load_schema())
    errors = []
    for err in sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path]):
        loc = "/".join(str(p) for p in err.absolute_path) or "<root>"
        errors.append(f"{loc}: {err.message}")
    return ValidationResult(ok=not errors, errors=errors)


def parse_synthesis(raw: Any, articles: Sequence[Article]) -> SynthesisResult:
    """Normalise and validate *raw*; raise SynthesisValidationError on failure."""
    payload = normalize_synthesis_payload(raw, articles)
    res = validate_synthesis(payload)
    if not res.ok:
        raise SynthesisValidationError(res.errors)
    return SynthesisResult(
        title=payload["title"],
        summary=payload["summary"],
        sections=[
            {
                "title": s["title"],
                "content": s["content"],
                "citations": [{"source": c["source"], "article_ref": c["article_ref"]} for c in s["citations"]],
            }
            for s in payload["sections"]
        ],
        entities=list(payload["entities"]),
        connections=list(payload["connections"]),
        impacts=list(payload["impacts"]),
    )


def fallback_synthesis(articles: Sequence[Article]) -> SynthesisResult:
    """Degraded synthesis: one section quoting every excerpt with its source."""
    if not articles:
        raise ValueError("fallback synthesis needs at least one article")
    first = articles[0]
    content = " ".join(f"{a.excerpt} [{a.source}]" for a in articles)
    return SynthesisResult(
        title=first.title,
        summary=first.excerpt,
        sections=[
            {
                "title": "Summary",
                "content": content,
                "citations": [{"source": a.source, "article_ref": a.id} for a in articles],
            }
        ],
        degraded=True,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class StorySynthesisOrchestrator:
    def __init__(
        self,
        *,
        db: StoryGraphDB,
        synthesizer: Synthesizer,
        timeout_s: float = DEFAULT_SYNTHESIS_TIMEOUT_S,
    ) -> None:
        self._db = db
        self._synthesizer = synthesizer
        self._timeout_s = float(timeout_s)
        self.resolver = EntityResolver(db)
        self.merger = ConnectionMerger(db)

    def _call_collaborator(self, request: list[dict[str, Any]]) -> Any:
        """Run the collaborator on a daemon thread and wait at most ``timeout_s``.

        A call still blocked at the deadline is abandoned; its thread never
        delays interpreter exit.
        """
        future: Future[Any] = Future()

        def call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._synthesizer.synthesize(request))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=call, name="synthesis", daemon=True).start()
        return future.result(timeout=self._timeout_s)

    def synthesize(self, articles: Sequence[Article]) -> SynthesisResult:
        """Call the collaborator under a deadline; never raises for collaborator faults."""
        request = [a.to_request() for a in articles]
        try:
            raw = self._call_collaborator(request)
            return parse_synthesis(raw, articles)
        except TimeoutError:
            logger.warning("Synthesis timed out after %.0fs for %d articles; using fallback", self._timeout_s, len(articles))
        except SynthesisValidationError as e:
            logger.warning("Synthesis payload rejected (%s); using fallback", e)
        except Exception as e:
            logger.warning("Synthesis failed (%s: %s); using fallback", type(e).__name__, e)
        return fallback_synthesis(articles)

    def materialize(self, cluster: Cluster) -> int | None:
        """Persist a story for *cluster*; None when the cluster is too small.

        All writes for one story share a transaction: a persistence error
        leaves no partial story and the articles stay unassigned.
        """
        articles = list(cluster.articles)
        if len(articles) < MIN_STORY_SIZE:
            return None

        logger.info("Synthesizing %d articles...", len(articles))
        result = self.synthesize(articles)
        hero_image = next((a.image_url for a in articles if a.image_url), None)

        with self._db.transaction():
            story_id = self._db.create_story(
                title=result.title,
                summary=result.summary,
                sections=result.sections,
                hero_image_url=hero_image,
                status="published",
                published_at_ts=utc_now_ts(),
            )
            for a in articles:
                self._db.link_article_to_story(story_id=story_id, article_id=a.id, relevance_score=cluster.similarity)

            linked_entities = self._merge_entities(story_id, result.entities)
            linked_connections = self._merge_connections(story_id, result.connections)
            recorded_impacts = self._record_impacts(story_id, result.impacts)

        logger.info(
            "Created story %d: %r (sources=%d entities=%d connections=%d impacts=%d%s)",
            story_id,
            result.title,
            len(articles),
            linked_entities,
            linked_connections,
            recorded_impacts,
            " degraded" if result.degraded else "",
        )
        return story_id

    def _merge_entities(self, story_id: int, entities: list[dict[str, Any]]) -> int:
        n = 0
        for e in entities:
            try:
                entity_id = self.resolver.resolve(e["name"], e["type"])
            except ValueError as err:
                logger.warning("Skipping entity %r: %s", e.get("name"), err)
                continue
            self.resolver.link_to_story(story_id, entity_id, e.get("role") or "mentioned", e.get("context"))
            n += 1
        return n

    def _merge_connections(self, story_id: int, connections: list[dict[str, Any]]) -> int:
        n = 0
        for c in connections:
            conn_id = self.merger.merge(
                c["source"],
                c["target"],
                c["relationship"],
                strength=c.get("strength"),
                evidence=c.get("evidence"),
                story_id=story_id,
            )
            if conn_id is not None:
                n += 1
        return n

    def _record_impacts(self, story_id: int, impacts: list[dict[str, Any]]) -> int:
        known = self._db.impact_sector_ids()
        sectors: set[str] = set()
        for imp in impacts:
            if imp["sector"] not in known:
                logger.warning("Skipping impact for unknown sector %r", imp["sector"])
                continue
            self._db.upsert_story_impact(
                story_id=story_id,
                sector_id=imp["sector"],
                impact_type=imp["type"],
                severity=imp["severity"],
                prediction=imp.get("prediction") if is_non_empty_str(imp.get("prediction")) else None,
                confidence=imp["confidence"],
            )
            sectors.add(imp["sector"])
        return len(sectors)
