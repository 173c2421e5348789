from __future__ import annotations

import math
import re
from typing import Any, Iterable, Mapping


_NON_WORD_RE = re.compile(r"[^\w\s]")

# Fixed list: glue words plus common news boilerplate.
_STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "must", "shall", "can", "need",
    "its", "it", "this", "that", "these", "those", "he", "she", "they",
    "we", "you", "i", "his", "her", "their", "our", "your", "my", "as",
    "said", "says", "according", "also", "just", "about", "after", "before",
    "new", "first", "last", "year", "years", "day", "days", "time", "more",
    "some", "any", "all", "most", "other", "into", "over", "such", "no",
    "not", "only", "than", "then", "now", "out", "up", "down", "so", "if",
})

_MIN_TOKEN_LEN = 3


def is_stopword(tok: str) -> bool:
    return tok in _STOPWORDS


def tokenize(text: str | None) -> list[str]:
    """Return the significant tokens of *text* in order (duplicates kept)."""
    s = _NON_WORD_RE.sub(" ", (text or "").lower())
    return [t for t in s.split() if len(t) >= _MIN_TOKEN_LEN and t not in _STOPWORDS]


def article_text(article: Mapping[str, Any] | Any) -> str:
    if isinstance(article, Mapping):
        title = article.get("title")
        excerpt = article.get("excerpt")
    else:
        title = getattr(article, "title", None)
        excerpt = getattr(article, "excerpt", None)
    return f"{title or ''} {excerpt or ''}"


def article_tokens(article: Mapping[str, Any] | Any) -> list[str]:
    return tokenize(article_text(article))


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    sa = set(a)
    sb = set(b)
    union = sa | sb
    if not union:
        return 0.0
    return float(len(sa & sb)) / float(len(union))


def _term_freq(tokens: Iterable[str]) -> dict[str, int]:
    freq: dict[str, int] = {}
    for t in tokens:
        freq[t] = freq.get(t, 0) + 1
    return freq


def cosine(a: Iterable[str], b: Iterable[str]) -> float:
    fa = _term_freq(a)
    fb = _term_freq(b)
    mag_a = math.sqrt(sum(v * v for v in fa.values()))
    mag_b = math.sqrt(sum(v * v for v in fb.values()))
    if mag_a == 0 or mag_b == 0:
        return 0.0
    dot = sum(v * fb.get(t, 0) for t, v in fa.items())
    # Float noise can push identical vectors a hair above 1.0.
    return float(min(1.0, dot / (mag_a * mag_b)))


def similarity(a: list[str], b: list[str]) -> float:
    """Combined lexical similarity: mean of set Jaccard and term-frequency cosine."""
    return (jaccard(a, b) + cosine(a, b)) / 2.0


def article_similarity(a: Mapping[str, Any] | Any, b: Mapping[str, Any] | Any) -> float:
    return similarity(article_tokens(a), article_tokens(b))
