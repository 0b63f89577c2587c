"""
Context Retrieval
Ranks a business's templates, knowledge sections and FAQs against a query.
"""
import asyncio
import datetime as dt
import math
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Protocol, Sequence, runtime_checkable

from loguru import logger

from src.config import get_settings
from src.core.exceptions import RetrievalError
from src.models.base import utc_now
from src.models.context import ContentCandidate, ContextSource, OriginType, SearchMetadata, SearchResult
from src.services.confidence_scorer import extract_keywords


class ContentStore(ABC):
    """Where business content lives. Implementations must be safe for concurrent reads."""

    @abstractmethod
    async def list_candidates(self, business_id: str, language: str) -> list[ContentCandidate]:
        """All searchable content for the business in the given language."""

    @abstractmethod
    async def record_usage(self, business_id: str, source_ids: Sequence[str], used_at: dt.datetime) -> None:
        """Stamp sources as used for an answer."""


@runtime_checkable
class SemanticScorer(Protocol):
    """Externally computed semantic similarity (embeddings live elsewhere)."""

    async def score(self, query: str, candidates: Sequence[ContentCandidate]) -> dict[str, float]:
        ...


class InMemoryContentStore(ContentStore):
    """Content held in process memory. Single-instance deployments and tests."""

    def __init__(self, candidates: Optional[dict[str, list[ContentCandidate]]] = None):
        self._content: dict[str, list[ContentCandidate]] = {
            business_id: list(items) for business_id, items in (candidates or {}).items()
        }
        self._lock = asyncio.Lock()

    def add(self, business_id: str, candidate: ContentCandidate) -> None:
        self._content.setdefault(business_id, []).append(candidate)

    async def list_candidates(self, business_id: str, language: str) -> list[ContentCandidate]:
        async with self._lock:
            return [
                candidate.model_copy()
                for candidate in self._content.get(business_id, [])
                if candidate.language == language
            ]

    async def record_usage(self, business_id: str, source_ids: Sequence[str], used_at: dt.datetime) -> None:
        wanted = set(source_ids)
        async with self._lock:
            for candidate in self._content.get(business_id, []):
                if candidate.id in wanted:
                    candidate.last_used_at = used_at
                    candidate.hit_count += 1


def lexical_score(query: str, candidate: ContentCandidate) -> float:
    """
    Share of query keywords present in the title or the content (best of the two).
    A query appearing verbatim in the content scores 1.0.
    """
    normalized_query = " ".join(query.lower().split())
    if normalized_query and normalized_query in " ".join(candidate.content.lower().split()):
        return 1.0

    query_keywords = extract_keywords(query)
    if not query_keywords:
        return 0.0

    title_keywords = extract_keywords(candidate.title or candidate.section_name)
    content_keywords = extract_keywords(candidate.content)
    return max(
        len(query_keywords & title_keywords) / len(query_keywords),
        len(query_keywords & content_keywords) / len(query_keywords),
    )


def _ranking_key(source: ContextSource) -> tuple:
    last_used = source.metadata.last_used_at
    recency = -last_used.timestamp() if last_used else float("inf")
    return (-source.similarity_score, source.origin_type.preference, recency)


class ContextRetriever:
    """
    Lexical and semantic fusion over a business's content.

    Ranking: similarity desc, then template > context > faq, then most
    recently used. Filtering by threshold happens before ranking and the
    result list never exceeds `retrieval_max_results`.
    """

    def __init__(
        self,
        store: ContentStore,
        semantic_scorer: Optional[SemanticScorer] = None,
        semantic_weight: Optional[float] = None,
        max_results: Optional[int] = None,
    ):
        settings = get_settings()
        self.store = store
        self.semantic_scorer = semantic_scorer
        self.semantic_weight = settings.retrieval_semantic_weight if semantic_weight is None else semantic_weight
        self.max_results = max_results or settings.retrieval_max_results

    async def search(
        self,
        query: str,
        business_id: str,
        language: str = "en",
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SearchResult:
        """
        Raises:
            RetrievalError: the content store or semantic scorer failed
        """
        settings = get_settings()
        limit = max(0, min(settings.retrieval_default_limit if limit is None else limit, self.max_results))
        threshold = settings.retrieval_default_threshold if threshold is None else threshold

        if not query or not query.strip():
            return SearchResult.empty(query or "", language, threshold, limit)

        try:
            candidates = await self.store.list_candidates(business_id, language)
            semantic = await self._semantic_scores(query, candidates)
        except RetrievalError:
            raise
        except Exception as e:
            raise RetrievalError(f"Content search failed for business {business_id}: {e}") from e

        scored = []
        for candidate in candidates:
            semantic_value = semantic.get(candidate.id, candidate.semantic_score)
            if semantic_value is not None and not math.isfinite(semantic_value):
                semantic_value = None
            if semantic_value is not None:
                semantic_value = max(0.0, min(1.0, semantic_value))
            similarity = self._fuse(lexical_score(query, candidate), semantic_value)
            if similarity >= threshold:
                scored.append(ContextSource.from_candidate(candidate, similarity, semantic_value))

        per_origin = {origin: 0 for origin in OriginType}
        for source in scored:
            per_origin[source.origin_type] += 1

        ranked = sorted(scored, key=_ranking_key)[:limit]

        logger.debug(
            f"🔎 Search '{query[:40]}' business={business_id}: "
            f"{len(scored)} above {threshold:.2f}, returning {len(ranked)}"
        )

        return SearchResult(
            results=ranked,
            metadata=SearchMetadata(
                query=query,
                language=language,
                threshold=threshold,
                limit=limit,
                total_results=len(scored),
                per_origin_counts=per_origin,
            ),
        )

    async def record_usage(self, business_id: str, sources: Iterable[ContextSource]) -> None:
        """Mark sources as used. Failures are logged and dropped."""
        source_ids = [source.id for source in sources]
        if not source_ids:
            return
        try:
            await self.store.record_usage(business_id, source_ids, utc_now())
        except Exception as e:
            logger.warning(f"Could not record usage for {len(source_ids)} sources: {e}")

    async def _semantic_scores(self, query: str, candidates: Sequence[ContentCandidate]) -> dict[str, float]:
        if self.semantic_scorer is None or not candidates:
            return {}
        return await self.semantic_scorer.score(query, candidates)

    def _fuse(self, lexical: float, semantic: Optional[float]) -> float:
        if semantic is None:
            return max(0.0, min(1.0, lexical))
        fused = (1 - self.semantic_weight) * lexical + self.semantic_weight * semantic
        return max(0.0, min(1.0, fused))
