"""Greedy lexical clustering of recent articles into event clusters.

Articles are visited newest first. Each unassigned article seeds a cluster and
pulls in every later unassigned article whose average similarity to the
current members reaches the threshold. The result is deterministic for a given
input order and threshold.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from ._util import parse_iso_time
from .text_similarity import article_tokens, similarity

DEFAULT_THRESHOLD = 0.35
MIN_STORY_SIZE = 2


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    excerpt: str
    url: str
    source: str
    published_at: str
    image_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Article":
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            excerpt=str(row.get("excerpt") or ""),
            url=str(row.get("url") or ""),
            source=str(row.get("source") or "Unknown"),
            published_at=str(row.get("published_at") or ""),
            image_url=(str(row["image_url"]) if row.get("image_url") else None),
        )

    def published_ts(self) -> float:
        return parse_iso_time(self.published_at) or 0.0

    def to_request(self) -> dict[str, Any]:
        """Shape sent to the synthesis collaborator."""
        return {
            "id": self.id,
            "title": self.title,
            "excerpt": self.excerpt,
            "url": self.url,
            "source": self.source,
            "published_at": self.published_at,
        }


@dataclass
class Cluster:
    articles: list[Article]
    similarity: float = 1.0
    tokens: list[list[str]] = field(default_factory=list, repr=False)

    def __len__(self) -> int:
        return len(self.articles)

    @property
    def qualifies(self) -> bool:
        return len(self.articles) >= MIN_STORY_SIZE

    def article_ids(self) -> list[str]:
        return [a.id for a in self.articles]


def cluster_articles(articles: Iterable[Article], *, threshold: float = DEFAULT_THRESHOLD) -> list[Cluster]:
    """Partition *articles* into similarity clusters.

    Every article lands in exactly one cluster. Singleton clusters are
    returned too; callers drop them before promoting clusters to stories.
    """
    docs = list(articles)
    if not docs:
        return []

    # Stable sort keeps input order for equal timestamps.
    docs.sort(key=lambda a: a.published_ts(), reverse=True)
    tokens = [article_tokens(a) for a in docs]

    assigned: set[int] = set()
    clusters: list[Cluster] = []

    for i in range(len(docs)):
        if i in assigned:
            continue
        assigned.add(i)
        members = [i]
        score = 1.0

        for j in range(len(docs)):
            if j in assigned:
                continue
            total = 0.0
            for m in members:
                total += similarity(tokens[m], tokens[j])
            avg = total / len(members)
            if avg >= threshold:
                members.append(j)
                assigned.add(j)
                score = min(score, avg)

        clusters.append(
            Cluster(
                articles=[docs[m] for m in members],
                similarity=score,
                tokens=[tokens[m] for m in members],
            )
        )

    return clusters


def qualifying_clusters(clusters: Iterable[Cluster], *, min_size: int = MIN_STORY_SIZE) -> list[Cluster]:
    return [c for c in clusters if len(c.articles) >= min_size]
