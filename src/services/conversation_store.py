"""
Conversation and business lookups used by the funnel path.

The engine only reads business profiles and conversation history and writes
back funnel state; the schemas behind them belong to the host application.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger

from src.models.conversation import (
    BusinessProfile,
    ConversationContext,
    ConversationMessage,
    ConversationState,
)


class ConversationStore(ABC):

    @abstractmethod
    async def get_business(self, business_id: str) -> Optional[BusinessProfile]:
        ...

    @abstractmethod
    async def get_context(self, conversation_id: str, business_id: str) -> ConversationContext:
        """Current state and recent history. Unknown conversations start at initial_contact."""

    @abstractmethod
    async def save_state(
        self,
        conversation_id: str,
        state: ConversationState,
        lead_score: int,
        sentiment_score: float,
    ) -> None:
        ...

    @abstractmethod
    async def append_message(self, conversation_id: str, message: ConversationMessage) -> None:
        ...


class InMemoryConversationStore(ConversationStore):

    def __init__(self, businesses: Optional[list[BusinessProfile]] = None):
        self._businesses = {business.id: business for business in businesses or []}
        self._conversations: dict[str, ConversationContext] = {}
        self._lock = asyncio.Lock()

    def add_business(self, business: BusinessProfile) -> None:
        self._businesses[business.id] = business

    async def get_business(self, business_id: str) -> Optional[BusinessProfile]:
        return self._businesses.get(business_id)

    async def get_context(self, conversation_id: str, business_id: str) -> ConversationContext:
        async with self._lock:
            context = self._conversations.get(conversation_id)
            if context is None:
                business = self._businesses.get(business_id) or BusinessProfile(id=business_id)
                context = ConversationContext(conversation_id=conversation_id, business=business)
                self._conversations[conversation_id] = context
                logger.debug(f"New conversation {conversation_id} for business {business_id}")
            return context.model_copy(deep=True)

    async def save_state(
        self,
        conversation_id: str,
        state: ConversationState,
        lead_score: int,
        sentiment_score: float,
    ) -> None:
        async with self._lock:
            context = self._conversations.get(conversation_id)
            if context is None:
                raise KeyError(f"Unknown conversation {conversation_id}")
            context.current_state = state
            context.lead_score = lead_score
            context.sentiment_score = sentiment_score

    async def append_message(self, conversation_id: str, message: ConversationMessage) -> None:
        async with self._lock:
            context = self._conversations.get(conversation_id)
            if context is None:
                raise KeyError(f"Unknown conversation {conversation_id}")
            context.history.append(message)
