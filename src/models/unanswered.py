import datetime as dt
from enum import StrEnum
from typing import Any, List

from pydantic import Field, field_serializer

from src.models.base import DocumentModel, utc_now


class QuestionStatus(StrEnum):
    PENDING = "pending"
    UNANSWERED = "unanswered"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class QuestionPriority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QuestionType(StrEnum):
    PRICING = "pricing"
    TECHNICAL = "technical"
    LEGAL = "legal"
    SUPPORT = "support"
    GENERAL = "general"


class UnansweredQuestion(DocumentModel):
    """
    A knowledge gap: a question the engine could not answer confidently.

    Keyed by (business_id, question_hash); repeats bump `frequency` and
    extend the score history.
    """
    business_id: str
    question_text: str
    normalized_question: str
    question_hash: str
    frequency: int = Field(1, ge=1)
    confidence_scores: List[float] = Field(default_factory=list)
    average_confidence: float = 0.0
    source_sessions: List[str] = Field(default_factory=list)
    status: QuestionStatus = QuestionStatus.PENDING
    priority: QuestionPriority = QuestionPriority.MEDIUM
    question_type: QuestionType = QuestionType.GENERAL
    language: str = "en"
    first_asked_at: dt.datetime = Field(default_factory=utc_now)
    last_asked_at: dt.datetime = Field(default_factory=utc_now)
    context_sources_searched: List[str] = Field(default_factory=list)
    conversation_context: List[dict[str, Any]] = Field(default_factory=list)

    @field_serializer("first_asked_at", "last_asked_at", when_used="json")
    def serialize_asked(self, value: dt.datetime):
        return value.isoformat()

    def record_repeat(self, confidence_score: float, session_id: str, asked_at: dt.datetime) -> None:
        """Fold one more sighting into this record."""
        self.frequency += 1
        self.confidence_scores.append(confidence_score)
        self.average_confidence = sum(self.confidence_scores) / len(self.confidence_scores)
        if session_id not in self.source_sessions:
            self.source_sessions.append(session_id)
        self.last_asked_at = asked_at
        self.updated_at = asked_at
