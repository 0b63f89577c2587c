import datetime as dt
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class OriginType(StrEnum):
    """Where a piece of business content came from."""
    TEMPLATE = "template"  # Curated canned answer
    CONTEXT = "context"    # Free-form business knowledge section
    FAQ = "faq"            # Question/answer pair

    @property
    def preference(self) -> int:
        """Tie-break rank: lower wins."""
        return _ORIGIN_PREFERENCE[self]


_ORIGIN_PREFERENCE = {OriginType.TEMPLATE: 0, OriginType.CONTEXT: 1, OriginType.FAQ: 2}


class ContentCandidate(BaseModel):
    """A raw row from the content store, before scoring."""
    id: str
    origin_type: OriginType
    section_name: str
    content: str
    title: Optional[str] = None
    language: str = "en"
    semantic_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    last_used_at: Optional[dt.datetime] = None
    hit_count: int = 0


class SourceMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    character_count: int
    word_count: int
    last_used_at: Optional[dt.datetime] = None


class ContextSource(BaseModel):
    """A ranked piece of content offered as grounding for a reply."""
    model_config = ConfigDict(frozen=True)

    id: str
    origin_type: OriginType
    section_name: str
    content: str
    similarity_score: float = Field(ge=0.0, le=1.0)
    semantic_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    metadata: SourceMetadata

    @classmethod
    def from_candidate(
        cls,
        candidate: ContentCandidate,
        similarity: float,
        semantic: Optional[float] = None,
    ) -> "ContextSource":
        return cls(
            id=candidate.id,
            origin_type=candidate.origin_type,
            section_name=candidate.section_name,
            content=candidate.content,
            similarity_score=similarity,
            semantic_score=semantic,
            metadata=SourceMetadata(
                character_count=len(candidate.content),
                word_count=len(candidate.content.split()),
                last_used_at=candidate.last_used_at,
            ),
        )


class SearchMetadata(BaseModel):
    query: str
    language: str
    threshold: float
    limit: int
    total_results: int = 0
    per_origin_counts: dict[OriginType, int] = Field(
        default_factory=lambda: {origin: 0 for origin in OriginType}
    )
    retrieval_failed: bool = False


class SearchResult(BaseModel):
    results: list[ContextSource] = Field(default_factory=list)
    metadata: SearchMetadata

    @computed_field
    @property
    def top_similarity(self) -> float:
        return self.results[0].similarity_score if self.results else 0.0

    @property
    def top_semantic_signal(self) -> float:
        """Semantic score of the best hit, falling back to its fused similarity."""
        if not self.results:
            return 0.0
        top = self.results[0]
        return top.semantic_score if top.semantic_score is not None else top.similarity_score

    @classmethod
    def empty(cls, query: str, language: str, threshold: float, limit: int, failed: bool = False) -> "SearchResult":
        return cls(
            metadata=SearchMetadata(
                query=query,
                language=language,
                threshold=threshold,
                limit=limit,
                retrieval_failed=failed,
            )
        )
