"""Knowledge-graph merging: entity dedup and relationship upserts.

Entities are deduplicated on (casefolded name, type). Connection endpoints are
looked up by name only and never create entities; when a name matches several
typed entities, the ones already linked to the asserting story win, then the
oldest.
"""

from __future__ import annotations

import logging
import re
import sqlite3

from ._util import as_float, clamp, is_non_empty_str
from .story_db import ENTITY_ROLES, ENTITY_TYPES, StoryGraphDB, entity_name_key

logger = logging.getLogger(__name__)

_ENTITY_TYPE_ALIASES = {
    "organization": "company",
    "organisation": "company",
    "org": "company",
    "corporation": "company",
    "business": "company",
    "country": "location",
    "city": "location",
    "place": "location",
    "region": "location",
    "people": "person",
    "industry": "sector",
    "law": "policy",
    "regulation": "policy",
}

_REL_TYPE_RE = re.compile(r"[^a-z0-9]+")

_DEFAULT_STRENGTH = 0.5


def normalize_entity_type(raw: str | None) -> str | None:
    """Map a free-form entity type onto the canonical set, or None."""
    if not isinstance(raw, str):
        return None
    low = raw.strip().lower()
    if low in ENTITY_TYPES:
        return low
    return _ENTITY_TYPE_ALIASES.get(low)


def normalize_relationship_type(raw: str | None) -> str | None:
    if not isinstance(raw, str):
        return None
    s = _REL_TYPE_RE.sub("_", raw.strip().lower()).strip("_")
    return s or None


def relationship_label(relationship_type: str) -> str:
    return relationship_type.replace("_", " ")


class EntityResolver:
    def __init__(self, db: StoryGraphDB) -> None:
        self._db = db

    def find(self, name: str, entity_type: str | None = None) -> int | None:
        if not is_non_empty_str(name):
            return None
        if entity_type is not None:
            row = self._db.find_entity(name=name, entity_type=entity_type)
            return int(row["id"]) if row else None
        rows = self._db.find_entities_by_name(name)
        return int(rows[0]["id"]) if rows else None

    def resolve(self, name: str, entity_type: str) -> int:
        """Return the id for (name, type), creating the entity when missing."""
        canonical_type = normalize_entity_type(entity_type)
        if canonical_type is None:
            raise ValueError(f"unknown entity type: {entity_type!r}")
        if not is_non_empty_str(name):
            raise ValueError("entity name must be a non-empty str")

        existing = self._db.find_entity(name=name, entity_type=canonical_type)
        if existing:
            return int(existing["id"])
        try:
            entity_id = self._db.create_entity(name=name, entity_type=canonical_type)
        except sqlite3.IntegrityError:
            # Another writer created it between lookup and insert.
            existing = self._db.find_entity(name=name, entity_type=canonical_type)
            if not existing:
                raise
            return int(existing["id"])
        logger.debug("Created entity id=%d name=%r type=%s", entity_id, name, canonical_type)
        return entity_id

    def link_to_story(self, story_id: int, entity_id: int, role: str, context: str | None) -> None:
        r = role if role in ENTITY_ROLES else "mentioned"
        self._db.upsert_story_entity(story_id=story_id, entity_id=entity_id, role=r, context=context)


class ConnectionMerger:
    def __init__(self, db: StoryGraphDB) -> None:
        self._db = db

    def _resolve_endpoint(self, name: str, story_id: int | None) -> int | None:
        candidates = self._db.find_entities_by_name(name)
        if not candidates:
            return None
        if len(candidates) == 1:
            return int(candidates[0]["id"])
        if story_id is not None:
            linked = {
                int(e["id"])
                for e in self._db.story_entities(story_id)
                if entity_name_key(e["name"]) == entity_name_key(name)
            }
            in_story = [int(c["id"]) for c in candidates if int(c["id"]) in linked]
            if in_story:
                return min(in_story)
        return min(int(c["id"]) for c in candidates)

    def merge(
        self,
        source_name: str,
        target_name: str,
        relationship_type: str,
        *,
        label: str | None = None,
        strength: float | None = None,
        evidence: str | None = None,
        story_id: int | None = None,
    ) -> int | None:
        """Upsert the edge between two existing entities.

        Returns the connection id, or None when the connection was skipped.
        Repeated merges of the same triple overwrite label, strength, evidence
        and story_id with the latest values.
        """
        rel = normalize_relationship_type(relationship_type)
        if rel is None:
            logger.warning("Skipping connection %r -> %r: empty relationship type", source_name, target_name)
            return None
        if not is_non_empty_str(source_name) or not is_non_empty_str(target_name):
            logger.warning("Skipping %s connection with empty endpoint name", rel)
            return None

        source_id = self._resolve_endpoint(source_name, story_id)
        target_id = self._resolve_endpoint(target_name, story_id)
        if source_id is None or target_id is None:
            logger.warning(
                "Skipping connection %r -[%s]-> %r: unresolved endpoint (source=%s target=%s)",
                source_name, rel, target_name, source_id, target_id,
            )
            return None

        s = as_float(strength)
        s = _DEFAULT_STRENGTH if s is None else clamp(s, 0.0, 1.0)

        return self._db.upsert_entity_connection(
            source_entity_id=source_id,
            target_entity_id=target_id,
            relationship_type=rel,
            relationship_label=(label.strip() if is_non_empty_str(label) else relationship_label(rel)),
            strength=s,
            evidence=evidence,
            story_id=story_id,
        )
