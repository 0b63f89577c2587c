"""
Confidence Scoring
Decides whether the engine knows enough to answer a question. Pure and
deterministic: same inputs, same assessment.
"""
import math
import re
from typing import Mapping, Optional, Sequence

from loguru import logger

from src.config import get_settings
from src.models.confidence import (
    BusinessConfig,
    ConfidenceAssessment,
    ConfidenceBreakdown,
    ConfidenceWeights,
)
from src.models.context import ContextSource, OriginType


STOP_WORDS = frozenset({
    "about", "after", "again", "also", "been", "before", "being", "below", "between",
    "both", "could", "does", "doing", "down", "during", "each", "from", "further",
    "have", "having", "here", "hers", "herself", "himself", "into", "itself", "just",
    "more", "most", "myself", "once", "only", "other", "ourselves", "over", "same",
    "should", "some", "such", "than", "that", "their", "theirs", "them", "themselves",
    "then", "there", "these", "they", "this", "those", "through", "under", "until",
    "very", "were", "what", "when", "where", "which", "while", "whom", "with",
    "would", "your", "yours", "yourself", "yourselves", "will", "want", "tell",
    "please", "like", "know", "need", "much", "many", "make", "give",
})

MIN_KEYWORD_LENGTH = 4
MIN_INFORMATIVE_WORDS = 12
MIN_SENTENCES = 2
ADEQUATE_SOURCE_CHARACTERS = 200

RECOMMENDATIONS = {
    "relevance": "Add more relevant context that directly addresses the question",
    "completeness": "Provide more detailed and comprehensive responses",
    "source_quality": "Improve the quality and detail of context sources",
    "semantic_match": "Add context that is more semantically similar to common questions",
}

_WORD = re.compile(r"[^\w\s]|_")
_SENTENCE = re.compile(r"[^.!?]+[.!?]+")


def _clamp(value: float) -> float:
    # NaN and infinities carry no signal
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def extract_keywords(text: Optional[str]) -> set[str]:
    """Lowercased content words (no punctuation, stop words or short words), plural `s` folded."""
    if not text:
        return set()
    keywords = set()
    for word in _WORD.sub(" ", text.lower()).split():
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS:
            continue
        if len(word) > MIN_KEYWORD_LENGTH and word.endswith("s") and not word.endswith("ss"):
            word = word[:-1]
        keywords.add(word)
    return keywords


class ConfidenceScorer:
    """
    Weighted blend of four signals:

    - relevance: share of the question's keywords found in the response or sources
    - completeness: length, word count and sentence structure of the response
    - source_quality: similarity and substance of the sources, with a template bonus
    - semantic_match: the caller-provided semantic similarity
    """

    def __init__(
        self,
        weights: Optional[ConfidenceWeights] = None,
        default_threshold: Optional[float] = None,
    ):
        settings = get_settings()
        self.weights = weights or ConfidenceWeights(
            relevance=settings.weight_relevance,
            completeness=settings.weight_completeness,
            source_quality=settings.weight_source_quality,
            semantic_match=settings.weight_semantic_match,
        )
        self.default_threshold = settings.confidence_threshold if default_threshold is None else default_threshold
        self.recommendation_threshold = settings.recommendation_threshold
        self.template_bonus = settings.template_source_bonus

    def score(
        self,
        question: str,
        response: str,
        context_sources: Sequence[ContextSource] = (),
        semantic_score: Optional[float] = None,
        business_config: Optional[BusinessConfig | Mapping] = None,
    ) -> ConfidenceAssessment:
        breakdown = ConfidenceBreakdown(
            relevance=self.relevance(question, response, context_sources),
            completeness=self.completeness(question, response),
            source_quality=self.source_quality(context_sources),
            semantic_match=_clamp(semantic_score or 0.0),
        )

        confidence = _clamp(
            breakdown.relevance * self.weights.relevance
            + breakdown.completeness * self.weights.completeness
            + breakdown.source_quality * self.weights.source_quality
            + breakdown.semantic_match * self.weights.semantic_match
        )
        threshold = self._threshold(business_config)
        is_confident = confidence >= threshold

        assessment = ConfidenceAssessment(
            confidence_score=confidence,
            is_confident=is_confident,
            threshold=threshold,
            breakdown=breakdown,
            recommendations=[] if is_confident else self._recommendations(breakdown),
            weights=self.weights,
            context_sources_count=len(context_sources),
        )

        logger.debug(
            f"Confidence {confidence:.2f} (threshold {threshold:.2f}) "
            f"rel={breakdown.relevance:.2f} comp={breakdown.completeness:.2f} "
            f"src={breakdown.source_quality:.2f} sem={breakdown.semantic_match:.2f}"
        )
        return assessment

    def relevance(self, question: str, response: str, context_sources: Sequence[ContextSource]) -> float:
        if not context_sources:
            return 0.0
        question_keywords = extract_keywords(question)
        evidence = extract_keywords(response)
        for source in context_sources:
            evidence |= extract_keywords(source.content)
        if not question_keywords or not evidence:
            return 0.0
        return len(question_keywords & evidence) / len(question_keywords)

    def completeness(self, question: str, response: str) -> float:
        if not response or not response.strip():
            return 0.0
        text = response.strip()
        target_length = max(50, 2 * len(question or ""))
        length_score = min(1.0, len(text) / target_length)
        word_score = min(1.0, len(text.split()) / MIN_INFORMATIVE_WORDS)
        sentences = len(_SENTENCE.findall(text)) or 1
        structure_score = min(1.0, sentences / MIN_SENTENCES)
        return (length_score + word_score + structure_score) / 3

    def source_quality(self, context_sources: Sequence[ContextSource]) -> float:
        if not context_sources:
            return 0.0
        per_source = [
            (source.similarity_score + min(1.0, source.metadata.character_count / ADEQUATE_SOURCE_CHARACTERS)) / 2
            for source in context_sources
        ]
        quality = sum(per_source) / len(per_source)
        top = max(context_sources, key=lambda source: source.similarity_score)
        if top.origin_type == OriginType.TEMPLATE:
            quality += self.template_bonus
        return _clamp(quality)

    def update_configuration(
        self,
        weights: Optional[ConfidenceWeights | Mapping[str, float]] = None,
        default_threshold: Optional[float] = None,
    ) -> None:
        """Swap weights and/or the default threshold at runtime."""
        if weights is not None:
            merged = {**self.weights.model_dump(), **dict(weights if isinstance(weights, Mapping) else weights.model_dump())}
            self.weights = ConfidenceWeights(**merged)
        if default_threshold is not None:
            if not 0.0 <= default_threshold <= 1.0:
                raise ValueError("default_threshold must be within [0, 1]")
            self.default_threshold = default_threshold
        logger.info(f"Confidence scorer reconfigured: weights={self.weights.model_dump()} threshold={self.default_threshold}")

    def _threshold(self, business_config: Optional[BusinessConfig | Mapping]) -> float:
        if business_config is None:
            return self.default_threshold
        if not isinstance(business_config, BusinessConfig):
            business_config = BusinessConfig.model_validate(business_config)
        if business_config.confidence_threshold is None:
            return self.default_threshold
        return business_config.confidence_threshold

    def _recommendations(self, breakdown: ConfidenceBreakdown) -> list[str]:
        return [
            message
            for component, message in RECOMMENDATIONS.items()
            if getattr(breakdown, component) < self.recommendation_threshold
        ]
