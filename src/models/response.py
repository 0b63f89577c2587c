from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, Field

from src.models.context import ContextSource


class GenerationMethod(StrEnum):
    """How a reply was produced. Every fallback path has its own value."""
    GREETING = "greeting"
    CONFIDENT = "confident"
    FALLBACK = "fallback"                # Not confident: insufficient-information reply
    STATIC_FALLBACK = "static_fallback"  # Generator unavailable or failed
    RATE_LIMITED = "rate_limited"
    UNSAFE_INPUT = "unsafe_input"


class ResponseMetadata(BaseModel):
    method: GenerationMethod
    strategy: GenerationMethod
    language: str = "en"
    business_id: Optional[str] = None
    context_sources_count: int = 0
    response_length: int = 0
    word_count: int = 0
    requires_escalation: bool = False


class SynthesizedResponse(BaseModel):
    response: str
    response_time: float = Field(description="Wall-clock milliseconds")
    confidence_score: float = Field(ge=0.0, le=1.0)
    is_confident: bool
    context_sources_used: List[ContextSource] = Field(default_factory=list)
    metadata: ResponseMetadata

    @property
    def method(self) -> GenerationMethod:
        return self.metadata.method
