from typing import List, Optional

from pydantic import BaseModel, Field

from src.models.analysis import MessageAnalysis
from src.models.context import ContextSource
from src.models.conversation import StateTransition
from src.models.response import GenerationMethod


class LeadUpdate(BaseModel):
    """Funnel side effects of one inbound message."""
    analysis: MessageAnalysis
    transition: StateTransition
    lead_score: int
    requires_human: bool
    persisted: bool = True


class ProcessResult(BaseModel):
    """What `process()` hands back to the transport layer."""
    success: bool
    response: str = ""
    confidence_score: float = 0.0
    is_answered: bool = False
    method: Optional[GenerationMethod] = None
    context_sources: List[ContextSource] = Field(default_factory=list)
    security_flags: List[str] = Field(default_factory=list)
    response_time: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None
    lead: Optional[LeadUpdate] = None


class LeadProcessResult(BaseModel):
    """Outcome of the funnel-only path (sales reply for a direct message)."""
    success: bool
    response: str = ""
    method: GenerationMethod
    rate_limited: bool = False
    security_flags: List[str] = Field(default_factory=list)
    lead: Optional[LeadUpdate] = None
    error: Optional[str] = None


class SessionMessage(BaseModel):
    sequence_number: int
    message_type: str  # "user" or "bot"
    content: str
    confidence_score: Optional[float] = None
    is_answered: Optional[bool] = None
    response_time: Optional[float] = None


class SessionStats(BaseModel):
    session_id: str
    business_id: str
    message_count: int = 0
    answered_count: int = 0
    unanswered_count: int = 0
    average_confidence: float = 0.0
    average_response_time: float = 0.0
    messages: List[SessionMessage] = Field(default_factory=list)
