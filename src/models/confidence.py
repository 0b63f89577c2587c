from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConfidenceWeights(BaseModel):
    """Component weights. Not normalized; the final score is clamped."""
    relevance: float = Field(0.3, ge=0.0)
    completeness: float = Field(0.25, ge=0.0)
    source_quality: float = Field(0.2, ge=0.0)
    semantic_match: float = Field(0.25, ge=0.0)


class ConfidenceBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    relevance: float = Field(ge=0.0, le=1.0)
    completeness: float = Field(ge=0.0, le=1.0)
    source_quality: float = Field(ge=0.0, le=1.0)
    semantic_match: float = Field(ge=0.0, le=1.0)


class BusinessConfig(BaseModel):
    """Per-business scoring overrides."""
    model_config = ConfigDict(populate_by_name=True)

    confidence_threshold: Optional[float] = Field(None, alias="confidenceThreshold", ge=0.0, le=1.0)


class ConfidenceAssessment(BaseModel):
    """How sure we are that the available content answers the question."""
    model_config = ConfigDict(frozen=True)

    confidence_score: float = Field(ge=0.0, le=1.0)
    is_confident: bool
    threshold: float = Field(ge=0.0, le=1.0)
    breakdown: ConfidenceBreakdown
    recommendations: list[str] = Field(default_factory=list)
    weights: ConfidenceWeights = Field(default_factory=ConfidenceWeights)
    context_sources_count: int = 0

    @model_validator(mode="after")
    def check_decision(self) -> "ConfidenceAssessment":
        if self.is_confident != (self.confidence_score >= self.threshold):
            raise ValueError("is_confident must equal confidence_score >= threshold")
        return self
