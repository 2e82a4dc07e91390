"""Text search used to suggest counterparts for unmatched items."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import linear_kernel

from .models import Item, MatchResult
from .normalize import normalize_text

logger = logging.getLogger(__name__)


@dataclass
class Suggestion:
    """A candidate the reviewer may want to pair with an unmatched item."""

    item_id: str
    description: str
    score: float

    def to_dict(self) -> Dict[str, object]:
        return {"item_id": self.item_id, "description": self.description, "score": self.score}


class SuggestionProvider(ABC):
    """Abstract base class that all suggestion providers must implement."""

    def __init__(self) -> None:
        self._is_indexed = False

    @property
    def is_indexed(self) -> bool:
        return self._is_indexed

    @abstractmethod
    def index(self, items: Sequence[Item]) -> None:
        """Build the internal index from the candidate items."""

    @abstractmethod
    def search(self, query: str, top_k: int = 3) -> List[Suggestion]:
        """Return the most relevant candidates for ``query``."""


class TfidfSuggestionProvider(SuggestionProvider):
    """Local TF-IDF search over candidate descriptions."""

    def __init__(self) -> None:
        super().__init__()
        self._vectorizer = TfidfVectorizer(stop_words="english")
        self._matrix = None
        self._frame = pd.DataFrame(columns=["item_id", "description"])

    def index(self, items: Sequence[Item]) -> None:
        frame = pd.DataFrame(
            {
                "item_id": [item.id for item in items],
                "description": [item.description for item in items],
            }
        )
        logger.debug("Indexing %d candidate items using TF-IDF", len(frame))
        corpus = frame["description"].fillna("").map(normalize_text).tolist()
        self._matrix = self._vectorizer.fit_transform(corpus)
        self._frame = frame
        self._is_indexed = True

    def search(self, query: str, top_k: int = 3) -> List[Suggestion]:
        if not self.is_indexed or self._matrix is None:
            raise RuntimeError("Suggestion provider has not been indexed yet")

        if not query.strip():
            return []

        query_vector = self._vectorizer.transform([normalize_text(query)])
        scores = linear_kernel(query_vector, self._matrix).flatten()
        best_indices = np.argsort(scores)[::-1]

        results: List[Suggestion] = []
        for index in best_indices[:top_k]:
            score = float(scores[index])
            if score <= 0:
                continue
            row = self._frame.iloc[index]
            results.append(
                Suggestion(item_id=str(row["item_id"]), description=str(row["description"]), score=round(score, 4))
            )
        return results


def create_suggestion_provider(provider_name: Optional[str]) -> Optional[SuggestionProvider]:
    """Instantiate a provider by name; ``none`` disables suggestions."""

    provider_name = (provider_name or "tfidf").lower()
    if provider_name in {"none", "off", "disabled"}:
        return None
    if provider_name in {"tfidf", "local", "fallback"}:
        return TfidfSuggestionProvider()

    logger.warning(
        "Unknown suggestion provider '%s'; falling back to TF-IDF implementation",
        provider_name,
    )
    return TfidfSuggestionProvider()


def suggest_for_unmatched(
    matches: Sequence[MatchResult],
    candidates: Sequence[Item],
    provider: Optional[SuggestionProvider] = None,
    top_k: int = 3,
) -> Dict[str, List[Suggestion]]:
    """Suggestions keyed by the id of every unmatched source item."""

    unmatched = [match.source for match in matches if not match.is_matched]
    if not unmatched or not candidates or top_k <= 0:
        return {}

    provider = provider or TfidfSuggestionProvider()
    try:
        provider.index(candidates)
    except ValueError:
        # an empty vocabulary, e.g. every description is a stop word
        logger.warning("Could not index %d candidates for suggestions", len(candidates))
        return {}

    suggestions: Dict[str, List[Suggestion]] = {}
    for source in unmatched:
        hits = provider.search(source.description or "", top_k=top_k)
        if hits:
            suggestions[source.id] = hits
    return suggestions


__all__ = [
    "Suggestion",
    "SuggestionProvider",
    "TfidfSuggestionProvider",
    "create_suggestion_provider",
    "suggest_for_unmatched",
]
