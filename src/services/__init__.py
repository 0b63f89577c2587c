"""Services package."""
from src.services.confidence_scorer import ConfidenceScorer, extract_keywords
from src.services.context_retriever import (
    ContentStore,
    ContextRetriever,
    InMemoryContentStore,
)
from src.services.conversation_store import ConversationStore, InMemoryConversationStore
from src.services.session_stats import SessionStatsStore
from src.services.unanswered_tracker import (
    InMemoryQuestionStore,
    QuestionStore,
    UnansweredQuestionTracker,
)

__all__ = [
    "ConfidenceScorer",
    "extract_keywords",
    "ContentStore",
    "ContextRetriever",
    "InMemoryContentStore",
    "ConversationStore",
    "InMemoryConversationStore",
    "SessionStatsStore",
    "InMemoryQuestionStore",
    "QuestionStore",
    "UnansweredQuestionTracker",
]
