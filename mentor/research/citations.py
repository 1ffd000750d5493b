# mentor/research/citations.py
#
# Citation ranking. Primary sources (government, education, official press,
# journals, ...) are listed first; order inside each group is preserved.

from __future__ import annotations

from typing import Callable, Iterable, List

from mentor.research.models import Citation

PRIMARY_SOURCE_MARKERS = (
    "gov", "edu", "org",
    "press", "official", "pdf",
    "research", "journal", "paper",
)

CitationPolicy = Callable[[str], bool]


def is_primary_source(url: str) -> bool:
    """Substring match on the URL; deliberately loose."""
    url = url or ""
    return any(marker in url for marker in PRIMARY_SOURCE_MARKERS)


def rank_citations(citations: Iterable[Citation], policy: CitationPolicy = is_primary_source) -> List[Citation]:
    # sorted() is stable, so each group keeps its original order
    return sorted(citations, key=lambda c: 0 if policy(c.url) else 1)
