"""
MongoDB-backed unanswered-question store for multi-instance deployments.
"""
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from ..core.exceptions import PersistenceError
from ..models.unanswered import QuestionStatus, UnansweredQuestion
from ..services.unanswered_tracker import QuestionSighting, QuestionStore
from .connection import UNANSWERED_QUESTIONS_COLLECTION


def _literal(value: Any) -> dict:
    # Strings starting with "$" would otherwise be read as field paths
    return {"$literal": value}


def build_upsert_pipeline(sighting: QuestionSighting) -> list[dict]:
    """
    Aggregation-pipeline update that creates or folds in a sighting in one
    server-side operation; `average_confidence` is derived from the stored scores.
    """
    return [
        {"$set": {
            "business_id": _literal(sighting.business_id),
            "question_hash": _literal(sighting.question_hash),
            "normalized_question": _literal(sighting.normalized_question),
            "question_text": {"$ifNull": ["$question_text", _literal(sighting.question_text)]},
            "status": {"$ifNull": ["$status", QuestionStatus.PENDING.value]},
            "priority": {"$ifNull": ["$priority", _literal(sighting.priority.value)]},
            "question_type": {"$ifNull": ["$question_type", _literal(sighting.question_type.value)]},
            "language": {"$ifNull": ["$language", _literal(sighting.language)]},
            "frequency": {"$add": [{"$ifNull": ["$frequency", 0]}, 1]},
            "confidence_scores": {
                "$concatArrays": [{"$ifNull": ["$confidence_scores", []]}, [sighting.confidence_score]]
            },
            "source_sessions": {
                "$cond": [
                    {"$in": [_literal(sighting.session_id), {"$ifNull": ["$source_sessions", []]}]},
                    "$source_sessions",
                    {"$concatArrays": [{"$ifNull": ["$source_sessions", []]}, [_literal(sighting.session_id)]]},
                ]
            },
            "context_sources_searched": {
                "$ifNull": ["$context_sources_searched", _literal(sighting.context_sources_searched)]
            },
            "conversation_context": {
                "$ifNull": ["$conversation_context", _literal(sighting.conversation_context)]
            },
            "first_asked_at": {"$ifNull": ["$first_asked_at", sighting.asked_at]},
            "created_at": {"$ifNull": ["$created_at", sighting.asked_at]},
            "last_asked_at": sighting.asked_at,
            "updated_at": sighting.asked_at,
        }},
        {"$set": {"average_confidence": {"$avg": "$confidence_scores"}}},
    ]


class MongoQuestionStore(QuestionStore):
    """
    Atomic per-key upserts via `find_one_and_update`; the unique
    (business_id, question_hash) index from `create_indexes` backs it.
    """

    def __init__(self, database: AsyncIOMotorDatabase):
        self.collection: AsyncIOMotorCollection = database[UNANSWERED_QUESTIONS_COLLECTION]

    async def upsert(self, sighting: QuestionSighting) -> UnansweredQuestion:
        try:
            document = await self.collection.find_one_and_update(
                {"business_id": sighting.business_id, "question_hash": sighting.question_hash},
                build_upsert_pipeline(sighting),
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except Exception as e:
            raise PersistenceError(
                f"Unanswered question upsert failed: {e}",
                {"business_id": sighting.business_id, "question_hash": sighting.question_hash},
            ) from e
        return UnansweredQuestion.model_validate(document)

    async def get(self, business_id: str, question_hash: str) -> Optional[UnansweredQuestion]:
        document = await self.collection.find_one({"business_id": business_id, "question_hash": question_hash})
        return UnansweredQuestion.model_validate(document) if document else None

    async def list_for_business(
        self,
        business_id: str,
        status: Optional[QuestionStatus] = None,
        limit: int = 100,
    ) -> list[UnansweredQuestion]:
        query: dict[str, Any] = {"business_id": business_id}
        if status is not None:
            query["status"] = status.value
        cursor = self.collection.find(query).sort("frequency", -1).limit(limit)
        return [UnansweredQuestion.model_validate(document) async for document in cursor]

    async def update_status(self, business_id: str, question_hash: str, status: QuestionStatus) -> bool:
        """Move a question through the review workflow. Returns False if it does not exist."""
        result = await self.collection.update_one(
            {"business_id": business_id, "question_hash": question_hash},
            {"$set": {"status": status.value}},
        )
        return result.matched_count > 0
