import math
from enum import StrEnum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Intent(StrEnum):
    INITIAL_INQUIRY = "initial_inquiry"
    SHOWING_INTEREST = "showing_interest"
    STRONG_INTEREST = "strong_interest"
    READY_TO_BUY = "ready_to_buy"
    HAS_OBJECTION = "has_objection"
    PRICE_CONCERN = "price_concern"
    COMPETITOR_MENTION = "competitor_mention"
    NOT_INTERESTED = "not_interested"
    REQUEST_INFO = "request_info"
    WANTS_DEMO = "wants_demo"
    WANTS_CALL = "wants_call"
    GREETING = "greeting"
    QUESTION = "question"
    CONTINUATION = "continuation"
    IMAGE_SHARED = "image_shared"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MessageAnalysis(BaseModel):
    """
    Structured reading of one inbound message.

    Produced by the generator (validated) or by keyword rules. Numbers that
    come back out of range are clamped instead of rejected.
    """
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    intent: Intent
    sentiment: float = Field(0.0, description="-1 (very negative) to 1 (very positive)")
    urgency: float = Field(0.0, description="0 (none) to 1 (immediate)")
    lead_score: int = Field(30, description="0-100 likelihood to convert")
    buying_signals: List[str] = Field(default_factory=list)
    objections: List[str] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    requires_human: bool = False
    is_continuation: bool = False
    confidence: float = 0.5
    next_best_action: str = ""
    key_phrases: List[str] = Field(default_factory=list)

    @field_validator("sentiment", mode="after")
    @classmethod
    def clamp_sentiment(cls, value: float) -> float:
        return _clamp(value, -1.0, 1.0)

    @field_validator("urgency", "confidence", mode="after")
    @classmethod
    def clamp_unit(cls, value: float) -> float:
        return _clamp(value, 0.0, 1.0)

    @field_validator("lead_score", mode="before")
    @classmethod
    def clamp_lead_score(cls, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            return int(_clamp(round(value), 0, 100))
        return value
