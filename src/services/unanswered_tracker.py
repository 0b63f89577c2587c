"""
Unanswered-Question Tracking
Aggregates low-confidence questions per business so the knowledge base can
be extended where customers actually get stuck.
"""
import asyncio
import datetime as dt
import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from loguru import logger

from src.core.exceptions import PersistenceError
from src.models.base import utc_now
from src.models.context import ContextSource
from src.models.unanswered import QuestionPriority, QuestionStatus, QuestionType, UnansweredQuestion
from src.utils.metrics import metrics
from src.utils.observability import log_business_event


_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

_TYPE_PATTERNS: list[tuple[QuestionType, re.Pattern]] = [
    (QuestionType.PRICING, re.compile(r"\b(price|pricing|cost|costs|fee|fees|quote|precio|costo)\b")),
    (QuestionType.LEGAL, re.compile(r"\b(legal|contract|terms|privacy|compliance|gdpr|liability)\b")),
    (QuestionType.TECHNICAL, re.compile(r"\b(api|integration|integrate|technical|setup|install|configure|sso)\b")),
    (QuestionType.SUPPORT, re.compile(r"\b(help|support|problem|issue|broken|error|refund)\b")),
]

_HIGH_PRIORITY_TYPES = {QuestionType.PRICING, QuestionType.LEGAL, QuestionType.TECHNICAL}


def normalize_question(question: Any) -> str:
    """
    Lowercase, drop punctuation, collapse whitespace, trim.

    Idempotent: normalize_question(normalize_question(q)) == normalize_question(q).
    """
    if not isinstance(question, str):
        return ""
    without_punctuation = _PUNCTUATION.sub("", question.lower())
    return _WHITESPACE.sub(" ", without_punctuation).strip()


def question_hash(normalized_question: str) -> str:
    return hashlib.sha256(normalized_question.encode("utf-8")).hexdigest()


def classify_question(normalized_question: str) -> tuple[QuestionType, QuestionPriority]:
    """Rough topic and triage priority for the review queue."""
    for question_type, pattern in _TYPE_PATTERNS:
        if pattern.search(normalized_question):
            if question_type in _HIGH_PRIORITY_TYPES:
                return question_type, QuestionPriority.HIGH
            return question_type, QuestionPriority.MEDIUM
    return QuestionType.GENERAL, QuestionPriority.LOW


@dataclass
class QuestionSighting:
    """One low-confidence occurrence of a question, ready to be folded in."""
    business_id: str
    question_text: str
    normalized_question: str
    question_hash: str
    session_id: str
    confidence_score: float
    language: str = "en"
    question_type: QuestionType = QuestionType.GENERAL
    priority: QuestionPriority = QuestionPriority.LOW
    context_sources_searched: list[str] = field(default_factory=list)
    conversation_context: list[dict[str, Any]] = field(default_factory=list)
    asked_at: dt.datetime = field(default_factory=utc_now)

    def to_question(self) -> UnansweredQuestion:
        return UnansweredQuestion(
            business_id=self.business_id,
            question_text=self.question_text,
            normalized_question=self.normalized_question,
            question_hash=self.question_hash,
            frequency=1,
            confidence_scores=[self.confidence_score],
            average_confidence=self.confidence_score,
            source_sessions=[self.session_id],
            status=QuestionStatus.PENDING,
            priority=self.priority,
            question_type=self.question_type,
            language=self.language,
            first_asked_at=self.asked_at,
            last_asked_at=self.asked_at,
            context_sources_searched=self.context_sources_searched,
            conversation_context=self.conversation_context,
            created_at=self.asked_at,
            updated_at=self.asked_at,
        )


class QuestionStore(ABC):
    """Persistence for unanswered questions. `upsert` must be atomic per key."""

    @abstractmethod
    async def upsert(self, sighting: QuestionSighting) -> UnansweredQuestion:
        """Create the record or fold the sighting into the existing one."""

    @abstractmethod
    async def get(self, business_id: str, question_hash: str) -> Optional[UnansweredQuestion]:
        ...

    @abstractmethod
    async def list_for_business(
        self,
        business_id: str,
        status: Optional[QuestionStatus] = None,
    ) -> list[UnansweredQuestion]:
        """Most frequent first."""


class InMemoryQuestionStore(QuestionStore):
    """Process-local store; the lock is held only for the dict update."""

    def __init__(self):
        self._questions: dict[tuple[str, str], UnansweredQuestion] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, sighting: QuestionSighting) -> UnansweredQuestion:
        key = (sighting.business_id, sighting.question_hash)
        async with self._lock:
            existing = self._questions.get(key)
            if existing is None:
                existing = sighting.to_question()
                self._questions[key] = existing
            else:
                existing.record_repeat(sighting.confidence_score, sighting.session_id, sighting.asked_at)
            return existing.model_copy(deep=True)

    async def get(self, business_id: str, question_hash: str) -> Optional[UnansweredQuestion]:
        async with self._lock:
            question = self._questions.get((business_id, question_hash))
            return question.model_copy(deep=True) if question else None

    async def list_for_business(
        self,
        business_id: str,
        status: Optional[QuestionStatus] = None,
    ) -> list[UnansweredQuestion]:
        async with self._lock:
            matches = [
                question.model_copy(deep=True)
                for (owner, _), question in self._questions.items()
                if owner == business_id and (status is None or question.status == status)
            ]
        return sorted(matches, key=lambda question: question.frequency, reverse=True)


class UnansweredQuestionTracker:
    """
    Records questions the engine could not answer confidently.

    `record` never raises: a failing store is logged and the reply still goes out.
    """

    def __init__(self, store: QuestionStore):
        self.store = store

    async def record(
        self,
        question: str,
        business_id: str,
        session_id: str,
        confidence_score: float,
        conversation_context: Optional[Sequence[dict[str, Any]]] = None,
        context_sources: Sequence[ContextSource] = (),
        language: str = "en",
    ) -> Optional[UnansweredQuestion]:
        normalized = normalize_question(question)
        if not normalized:
            logger.debug("Skipping unanswered-question tracking for empty question")
            return None

        question_type, priority = classify_question(normalized)
        sighting = QuestionSighting(
            business_id=business_id,
            question_text=question.strip(),
            normalized_question=normalized,
            question_hash=question_hash(normalized),
            session_id=session_id,
            confidence_score=max(0.0, min(1.0, confidence_score)),
            language=language,
            question_type=question_type,
            priority=priority,
            context_sources_searched=[source.id for source in context_sources],
            conversation_context=list(conversation_context or []),
        )

        try:
            record = await self.store.upsert(sighting)
        except Exception as e:
            error = e if isinstance(e, PersistenceError) else PersistenceError(
                f"Could not store unanswered question: {e}",
                {"business_id": business_id, "question_hash": sighting.question_hash},
            )
            logger.bind(**error.details).error(f"❌ {error.message}")
            return None

        metrics.unanswered_recorded.inc()
        log_business_event(
            "unanswered_question",
            business_id,
            question_hash=record.question_hash,
            frequency=record.frequency,
            average_confidence=round(record.average_confidence, 3),
            priority=str(record.priority),
            question_type=str(record.question_type),
        )
        return record

    async def get(self, business_id: str, question: str) -> Optional[UnansweredQuestion]:
        return await self.store.get(business_id, question_hash(normalize_question(question)))

    async def list_for_business(
        self,
        business_id: str,
        status: Optional[QuestionStatus] = None,
    ) -> list[UnansweredQuestion]:
        return await self.store.list_for_business(business_id, status)
