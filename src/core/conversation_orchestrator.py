"""
Conversation Orchestrator
Coordinates the message pipeline.

Knowledge answers:
    inbound text → Guardrail (input) → Rate limit → Retriever → Scorer
                 → Synthesizer → Guardrail (output) → caller
                 (low confidence → Unanswered-Question Tracker)

Funnel tracking (concurrently when a conversation id is known, or alone via
process_lead_message):
    inbound text → Classifier → Lead State Machine → persisted state
"""
import asyncio
import time
from typing import Any, Optional

from loguru import logger

from src.agents.classifier_agent import MessageClassifier
from src.agents.director_agent import LeadStateMachine
from src.agents.executor_agent import ResponseSynthesizer
from src.config import get_settings
from src.core.exceptions import PersistenceError, RetrievalError, UnsafeInputError
from src.models.confidence import BusinessConfig, ConfidenceAssessment
from src.models.context import SearchResult
from src.models.conversation import BusinessProfile, ConversationContext, ConversationMessage
from src.models.pipeline import LeadProcessResult, LeadUpdate, ProcessResult, SessionStats
from src.models.response import GenerationMethod, SynthesizedResponse
from src.services.confidence_scorer import ConfidenceScorer
from src.services.context_retriever import ContextRetriever, InMemoryContentStore
from src.services.conversation_store import ConversationStore, InMemoryConversationStore
from src.services.session_stats import SessionStatsStore
from src.services.unanswered_tracker import InMemoryQuestionStore, UnansweredQuestionTracker
from src.utils.fallback_responses import (
    get_rate_limited_reply,
    get_technical_difficulties_reply,
    get_unsafe_input_reply,
)
from src.utils.metrics import metrics
from src.utils.observability import log_pipeline_step
from src.utils.rate_limiter import InMemoryRateLimiter, RateLimiter
from src.utils.security_guardrail import GuardrailResult, SecurityGuardrail


UNSAFE_INPUT_ERROR = "Input contains potentially harmful content"


class ConversationOrchestrator:
    """
    Single entry point for inbound customer messages.

    Every collaborator is injectable; defaults are the in-memory
    implementations suitable for one process.

    Usage:
        >>> orchestrator = ConversationOrchestrator(retriever=ContextRetriever(store))
        >>> result = await orchestrator.process(
        ...     question="What services do you offer?",
        ...     session_id="sess-1",
        ...     business_id="biz-1",
        ... )
        >>> result.response, result.is_answered
    """

    def __init__(
        self,
        retriever: Optional[ContextRetriever] = None,
        scorer: Optional[ConfidenceScorer] = None,
        synthesizer: Optional[ResponseSynthesizer] = None,
        classifier: Optional[MessageClassifier] = None,
        state_machine: Optional[LeadStateMachine] = None,
        tracker: Optional[UnansweredQuestionTracker] = None,
        conversation_store: Optional[ConversationStore] = None,
        guardrail: Optional[SecurityGuardrail] = None,
        rate_limiter: Optional[RateLimiter] = None,
        session_stats: Optional[SessionStatsStore] = None,
    ):
        self.settings = get_settings()
        self.guardrail = guardrail or SecurityGuardrail()
        self.retriever = retriever or ContextRetriever(InMemoryContentStore())
        self.scorer = scorer or ConfidenceScorer()
        self.synthesizer = synthesizer or ResponseSynthesizer()
        self.classifier = classifier or MessageClassifier(guardrail=self.guardrail)
        self.state_machine = state_machine or LeadStateMachine()
        self.tracker = tracker or UnansweredQuestionTracker(InMemoryQuestionStore())
        self.conversation_store = conversation_store or InMemoryConversationStore()
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self.session_stats = session_stats or SessionStatsStore()

        logger.info("Conversation Orchestrator initialized")

    async def initialize(self) -> None:
        """
        Move unanswered-question tracking onto MongoDB.

        Optional: without it the orchestrator keeps the in-memory store.
        """
        from src.repositories import MongoQuestionStore, db_manager

        await db_manager.connect()
        await db_manager.create_indexes()
        self.tracker = UnansweredQuestionTracker(MongoQuestionStore(db_manager.database))
        logger.info("✅ Unanswered-question tracking backed by MongoDB")

    async def shutdown(self) -> None:
        from src.repositories import db_manager

        await db_manager.disconnect()

    # ------------------------------------------------------------------
    # Knowledge answers
    # ------------------------------------------------------------------

    async def process(
        self,
        question: str,
        session_id: str,
        business_id: str,
        language: str = "en",
        user_context: Optional[dict[str, Any]] = None,
    ) -> ProcessResult:
        """
        Answer one inbound question.

        `user_context` may carry `actor_id` (rate-limit key, defaults to the
        session) and `conversation_id` (enables funnel tracking).
        """
        start = time.perf_counter()
        user_context = user_context or {}
        actor_id = str(user_context.get("actor_id") or session_id)
        conversation_id = user_context.get("conversation_id")

        try:
            guarded = self._guard_input(question, session_id)
        except UnsafeInputError as e:
            return ProcessResult(
                success=False,
                response=get_unsafe_input_reply(language),
                method=GenerationMethod.UNSAFE_INPUT,
                security_flags=[str(flag) for flag in e.flags],
                error=UNSAFE_INPUT_ERROR,
                error_type=type(e).__name__,
                response_time=self._elapsed_ms(start),
            )

        if not guarded.sanitized_text.strip():
            return ProcessResult(success=False, error="Message is empty", error_type="ValueError")

        try:
            result = await self._answer(
                guarded, session_id, business_id, language, actor_id, conversation_id, start
            )
        except Exception as e:
            logger.exception(f"❌ Pipeline failed for session {session_id}: {e}")
            return ProcessResult(
                success=False,
                error=str(e),
                error_type=type(e).__name__,
                security_flags=guarded.flag_ids,
                response_time=self._elapsed_ms(start),
            )

        metrics.messages_total.inc(method=str(result.method))
        metrics.pipeline_duration.observe(result.response_time / 1000, path="answer")
        return result

    async def _answer(
        self,
        guarded: GuardrailResult,
        session_id: str,
        business_id: str,
        language: str,
        actor_id: str,
        conversation_id: Optional[str],
        start: float,
    ) -> ProcessResult:
        question = guarded.sanitized_text
        await self.session_stats.record_user_message(session_id, business_id, question)

        rate = await self.rate_limiter.check_rate_limit(actor_id)
        if not rate.allowed:
            reply = get_rate_limited_reply(language)
            response_time = self._elapsed_ms(start)
            await self.session_stats.record_bot_reply(session_id, business_id, reply, 0.0, False, response_time)
            return ProcessResult(
                success=True,
                response=reply,
                method=GenerationMethod.RATE_LIMITED,
                security_flags=guarded.flag_ids,
                response_time=response_time,
            )

        business = await self._business(business_id)

        if conversation_id and self.settings.enable_lead_tracking:
            knowledge, funnel = await asyncio.gather(
                self._knowledge_reply(question, session_id, business, language),
                self._advance_lead(question, str(conversation_id), business_id),
                return_exceptions=True,
            )
            if isinstance(knowledge, BaseException):
                raise knowledge
            search, assessment, synthesized = knowledge
            if isinstance(funnel, BaseException):
                if isinstance(funnel, asyncio.CancelledError):
                    raise funnel
                logger.opt(exception=funnel).error(f"❌ Funnel update failed for {conversation_id}: {funnel}")
                lead = None
            else:
                lead = funnel[0]
        else:
            search, assessment, synthesized = await self._knowledge_reply(question, session_id, business, language)
            lead = None

        output = self.guardrail.validate_response(synthesized.response, session_id=session_id)
        method = synthesized.method
        is_answered = method in (GenerationMethod.CONFIDENT, GenerationMethod.GREETING)
        response_time = self._elapsed_ms(start)

        await self.session_stats.record_bot_reply(
            session_id, business_id, output.sanitized_text, assessment.confidence_score, is_answered, response_time
        )

        if synthesized.metadata.strategy == GenerationMethod.FALLBACK:
            await self.tracker.record(
                question=question,
                business_id=business_id,
                session_id=session_id,
                confidence_score=assessment.confidence_score,
                conversation_context=await self.session_stats.recent_messages(session_id),
                context_sources=search.results,
                language=language,
            )
        elif method == GenerationMethod.CONFIDENT:
            await self.retriever.record_usage(business_id, synthesized.context_sources_used)

        log_pipeline_step(
            "ConversationOrchestrator",
            session_id,
            "answer",
            duration_ms=response_time,
            method=str(method),
            confidence=round(assessment.confidence_score, 3),
            sources=len(search.results),
        )

        return ProcessResult(
            success=True,
            response=output.sanitized_text,
            confidence_score=assessment.confidence_score,
            is_answered=is_answered,
            method=method,
            context_sources=synthesized.context_sources_used,
            security_flags=guarded.flag_ids + [f"output:{flag}" for flag in output.flag_ids],
            response_time=response_time,
            lead=lead,
        )

    async def _knowledge_reply(
        self,
        question: str,
        session_id: str,
        business: BusinessProfile,
        language: str,
    ) -> tuple[SearchResult, ConfidenceAssessment, SynthesizedResponse]:
        search = await self._search(question, business.id, language)

        # Scored before generation: the retrieved content is the candidate answer
        assessment = self.scorer.score(
            question=question,
            response=" ".join(source.content for source in search.results),
            context_sources=search.results,
            semantic_score=search.top_semantic_signal,
            business_config=BusinessConfig(confidence_threshold=business.confidence_threshold),
        )
        metrics.confidence_score.observe(assessment.confidence_score)
        log_pipeline_step(
            "ConfidenceScorer",
            session_id,
            "score",
            confidence=round(assessment.confidence_score, 3),
            is_confident=assessment.is_confident,
            recommendations=len(assessment.recommendations),
        )

        synthesized = await self.synthesizer.generate(
            question=question,
            context_sources=search.results,
            confidence_score=assessment.confidence_score,
            is_confident=assessment.is_confident,
            business_info=business,
            language=language,
        )
        return search, assessment, synthesized

    async def _search(self, question: str, business_id: str, language: str) -> SearchResult:
        threshold = self.settings.retrieval_default_threshold
        limit = self.settings.retrieval_default_limit
        try:
            return await asyncio.wait_for(
                self.retriever.search(question, business_id, language, limit=limit, threshold=threshold),
                timeout=self.settings.retrieval_timeout_seconds,
            )
        except (RetrievalError, asyncio.TimeoutError) as e:
            metrics.retrieval_failures.inc()
            logger.warning(f"🔎 Retrieval failed for business {business_id}, continuing without context: {e}")
            return SearchResult.empty(question, language, threshold, limit, failed=True)

    # ------------------------------------------------------------------
    # Funnel tracking
    # ------------------------------------------------------------------

    async def process_lead_message(
        self,
        message: str,
        conversation_id: str,
        business_id: str,
        actor_id: Optional[str] = None,
        language: str = "en",
    ) -> LeadProcessResult:
        """Funnel-driven sales reply for a direct-message conversation."""
        start = time.perf_counter()

        try:
            guarded = self._guard_input(message, conversation_id)
        except UnsafeInputError as e:
            return LeadProcessResult(
                success=False,
                response=get_unsafe_input_reply(language),
                method=GenerationMethod.UNSAFE_INPUT,
                security_flags=[str(flag) for flag in e.flags],
                error=UNSAFE_INPUT_ERROR,
            )

        rate = await self.rate_limiter.check_rate_limit(actor_id or conversation_id)
        if not rate.allowed:
            metrics.messages_total.inc(method=str(GenerationMethod.RATE_LIMITED))
            return LeadProcessResult(
                success=True,
                response=get_rate_limited_reply(language),
                method=GenerationMethod.RATE_LIMITED,
                rate_limited=True,
                security_flags=guarded.flag_ids,
            )

        try:
            lead, context = await self._advance_lead(
                guarded.sanitized_text, conversation_id, business_id, track_questions=True, language=language
            )
            reply, method = await self.synthesizer.craft_lead_reply(
                guarded.sanitized_text, lead.analysis, lead.transition.new_state, context, language
            )
        except Exception as e:
            logger.exception(f"❌ Lead pipeline failed for {conversation_id}: {e}")
            return LeadProcessResult(
                success=False,
                response=get_technical_difficulties_reply(language),
                method=GenerationMethod.STATIC_FALLBACK,
                security_flags=guarded.flag_ids,
                error=str(e),
            )

        output = self.guardrail.validate_response(reply, session_id=conversation_id)
        await self._append(conversation_id, ConversationMessage(role="assistant", content=output.sanitized_text))

        metrics.messages_total.inc(method=str(method))
        metrics.pipeline_duration.observe(time.perf_counter() - start, path="lead")
        return LeadProcessResult(
            success=True,
            response=output.sanitized_text,
            method=method,
            security_flags=guarded.flag_ids + [f"output:{flag}" for flag in output.flag_ids],
            lead=lead,
        )

    async def _advance_lead(
        self,
        message: str,
        conversation_id: str,
        business_id: str,
        track_questions: bool = False,
        language: str = "en",
    ) -> tuple[LeadUpdate, ConversationContext]:
        step_start = time.perf_counter()
        context = await self._context(conversation_id, business_id)

        analysis = await self.classifier.analyze(message, context)
        transition = await self.state_machine.next_state(
            context.current_state, analysis, context.history, conversation_id
        )

        persisted = True
        try:
            await self.conversation_store.save_state(
                conversation_id, transition.new_state, analysis.lead_score, analysis.sentiment
            )
        except Exception as e:
            persisted = False
            error = PersistenceError(f"Could not save funnel state: {e}", {"conversation_id": conversation_id})
            logger.bind(**error.details).error(f"❌ {error.message}")
        await self._append(conversation_id, ConversationMessage(role="customer", content=message))

        if track_questions and analysis.requires_human and analysis.questions:
            await self.tracker.record(
                question=analysis.questions[0],
                business_id=business_id,
                session_id=conversation_id,
                confidence_score=analysis.confidence,
                conversation_context=[
                    {"type": m.role, "content": m.content} for m in context.history[-5:]
                ],
                language=language,
            )

        log_pipeline_step(
            "LeadStateMachine",
            conversation_id,
            "advance",
            duration_ms=(time.perf_counter() - step_start) * 1000,
            intent=str(analysis.intent),
            from_state=str(transition.previous_state),
            to_state=str(transition.new_state),
            requires_human=analysis.requires_human,
        )

        lead = LeadUpdate(
            analysis=analysis,
            transition=transition,
            lead_score=analysis.lead_score,
            requires_human=analysis.requires_human,
            persisted=persisted,
        )
        context.current_state = transition.new_state
        return lead, context

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_session_stats(self, session_id: str) -> SessionStats:
        """
        Raises:
            SessionNotFoundError: nothing recorded for the session
        """
        return await self.session_stats.get(session_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _guard_input(self, text: Any, subject_id: str) -> GuardrailResult:
        """
        Raises:
            UnsafeInputError: high-severity match and blocking is enabled
        """
        result = self.guardrail.validate_input(text, session_id=subject_id)
        if not result.is_safe and self.settings.block_unsafe_input:
            metrics.security_blocks.inc()
            metrics.messages_total.inc(method=str(GenerationMethod.UNSAFE_INPUT))
            logger.warning(f"🛡️ Blocked unsafe input for {subject_id}: {result.flag_ids}")
            raise UnsafeInputError(UNSAFE_INPUT_ERROR, result.flags)
        return result

    async def _business(self, business_id: str) -> BusinessProfile:
        try:
            business = await self.conversation_store.get_business(business_id)
        except Exception as e:
            logger.warning(f"Business lookup failed for {business_id}, using defaults: {e}")
            business = None
        return business or BusinessProfile(id=business_id)

    async def _context(self, conversation_id: str, business_id: str) -> ConversationContext:
        try:
            return await self.conversation_store.get_context(conversation_id, business_id)
        except Exception as e:
            logger.warning(f"Conversation lookup failed for {conversation_id}, starting fresh: {e}")
            return ConversationContext(
                conversation_id=conversation_id,
                business=await self._business(business_id),
            )

    async def _append(self, conversation_id: str, message: ConversationMessage) -> None:
        try:
            await self.conversation_store.append_message(conversation_id, message)
        except Exception as e:
            logger.error(f"❌ Could not append {message.role} message to {conversation_id}: {e}")

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000
