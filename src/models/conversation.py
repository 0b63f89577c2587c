import datetime as dt
from enum import StrEnum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.models.base import utc_now


class ConversationState(StrEnum):
    """Sales-funnel position of a conversation. `lost` is terminal."""
    INITIAL_CONTACT = "initial_contact"
    ENGAGED = "engaged"
    INTERESTED = "interested"
    QUALIFIED = "qualified"
    READY_TO_CONVERT = "ready_to_convert"
    OBJECTION = "objection"
    LOST = "lost"


class ConversationMessage(BaseModel):
    role: Literal["customer", "assistant"]
    content: str
    timestamp: dt.datetime = Field(default_factory=utc_now)


class BusinessProfile(BaseModel):
    id: str
    name: str = "Our business"
    industry: str = "general"
    description: str = ""
    confidence_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)


class ConversationContext(BaseModel):
    """Everything the funnel path needs about one conversation."""
    conversation_id: str
    business: BusinessProfile
    current_state: ConversationState = ConversationState.INITIAL_CONTACT
    history: List[ConversationMessage] = Field(default_factory=list)
    lead_score: int = Field(0, ge=0, le=100)
    sentiment_score: float = Field(0.0, ge=-1.0, le=1.0)

    def format_history(self, window: int) -> str:
        """Last `window` messages as `ROLE: content` lines."""
        if not self.history:
            return "No previous messages"
        return "\n".join(
            f"{message.role.upper()}: {message.content}" for message in self.history[-window:]
        )


class StateTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous_state: ConversationState
    new_state: ConversationState
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)
    method: Literal["generative", "rule_based", "terminal"]

    @property
    def changed(self) -> bool:
        return self.previous_state != self.new_state
