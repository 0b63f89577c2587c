"""
Repositories Layer
Document-store persistence for state shared across instances.
"""
from .connection import db_manager, get_database, DatabaseManager, UNANSWERED_QUESTIONS_COLLECTION
from .unanswered_questions import MongoQuestionStore, build_upsert_pipeline

__all__ = [
    "db_manager",
    "get_database",
    "DatabaseManager",
    "UNANSWERED_QUESTIONS_COLLECTION",
    "MongoQuestionStore",
    "build_upsert_pipeline",
]
