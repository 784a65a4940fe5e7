"""
Search ranking.

Combines three signals into one score per hit:

    score = text_relevance + recency_bonus + tag_bonus

- text_relevance: negated FTS5 bm25 (bm25 is lower-is-better)
- recency_bonus:  1 / (1 + age_hours), age clamped at zero
- tag_bonus:      0.5 per query term equal (case-insensitively) to a tag

Hits are ordered by descending score, ties by descending updated_at.
"""

from datetime import datetime
from typing import Iterable, Optional

from .types import Document, SearchHit, utc_now

TAG_MATCH_BONUS = 0.5

# FTS5 query operators are syntax, not terms
_FTS_OPERATORS = frozenset({"AND", "OR", "NOT", "NEAR"})
_STRIP_CHARS = "\"()*^+"


def query_terms(text: str) -> list[str]:
    """Split query text into casefolded terms, dropping FTS operators."""
    terms: list[str] = []
    for raw in text.split():
        if raw in _FTS_OPERATORS:
            continue
        term = raw.strip(_STRIP_CHARS)
        # Column filters like "title:rust" contribute only the term
        if ":" in term:
            term = term.rsplit(":", 1)[1]
        if term:
            terms.append(term.casefold())
    return terms


def text_relevance(bm25_rank: float) -> float:
    """Higher is better; bm25 reports better matches as more negative."""
    return -bm25_rank


def recency_bonus(updated_at: datetime, now: Optional[datetime] = None) -> float:
    """1 / (1 + age_hours), in (0, 1]. Future timestamps count as age zero."""
    now = now or utc_now()
    age_hours = max(0.0, (now - updated_at).total_seconds() / 3600.0)
    return 1.0 / (1.0 + age_hours)


def tag_bonus(terms: Iterable[str], tags: Iterable[str]) -> float:
    """TAG_MATCH_BONUS for each query term matching a tag, repeats included."""
    folded_tags = {t.casefold() for t in tags}
    return TAG_MATCH_BONUS * sum(1 for t in terms if t.casefold() in folded_tags)


def score_document(
    document: Document,
    bm25_rank: float,
    terms: list[str],
    now: Optional[datetime] = None,
) -> float:
    return (
        text_relevance(bm25_rank)
        + recency_bonus(document.updated_at, now)
        + tag_bonus(terms, document.tags)
    )


def rank_hits(
    candidates: Iterable[tuple[Document, float]],
    text: str,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> list[SearchHit]:
    """
    Score and order full-text matches.

    Args:
        candidates: (document, bm25 rank) pairs from the full-text index
        text: The query text, used to extract terms for the tag bonus
        now: Reference time for recency (defaults to the current time)
        limit: Truncate to this many hits (None for all)

    Returns:
        SearchHits, best first
    """
    now = now or utc_now()
    terms = query_terms(text)
    hits = [
        SearchHit(document=doc, score=score_document(doc, rank, terms, now))
        for doc, rank in candidates
    ]
    hits.sort(key=lambda h: (h.score, h.document.updated_at), reverse=True)
    if limit is not None:
        hits = hits[:limit]
    return hits
