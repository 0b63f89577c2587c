"""
Tests for the response synthesizer: strategy selection and degraded paths.
"""
import pytest

from src.agents.executor_agent import ResponseSynthesizer, is_greeting_or_general_interaction
from src.models.analysis import Intent, MessageAnalysis
from src.models.context import ContextSource
from src.models.conversation import ConversationContext, ConversationState
from src.models.response import GenerationMethod
from src.utils.fallback_responses import (
    get_greeting_reply,
    get_insufficient_information_reply,
    get_state_reply,
)
from src.utils.metrics import metrics


@pytest.fixture
def sources(services_candidate, hours_candidate):
    return [
        ContextSource.from_candidate(services_candidate, 1.0),
        ContextSource.from_candidate(hours_candidate, 0.6),
    ]


class TestGreetingDetection:

    @pytest.mark.parametrize("message", [
        "Hello!",
        "hey",
        "Thank you!",
        "Good morning! How are you?",
        "Hola, buenas tardes",
        "Can you help me?",
    ])
    def test_small_talk(self, message):
        assert is_greeting_or_general_interaction(message) is True

    @pytest.mark.parametrize("message", [
        "Hi, what is your pricing?",
        "What services do you offer?",
        "Highway directions please",
        "",
        None,
    ])
    def test_substantive_or_empty(self, message):
        assert is_greeting_or_general_interaction(message) is False


@pytest.mark.asyncio
class TestResponseSynthesizer:

    async def test_low_confidence_uses_insufficient_information_reply(self, make_generator, business):
        generator, backend = make_generator("should not be used")
        synthesizer = ResponseSynthesizer(generator=generator)

        response = await synthesizer.generate(
            question="Do you ship internationally?",
            context_sources=[],
            confidence_score=0.12,
            is_confident=False,
            business_info=business,
        )

        assert response.response == get_insufficient_information_reply("en")
        assert response.method == GenerationMethod.FALLBACK
        assert response.metadata.requires_escalation is True
        assert response.context_sources_used == []
        assert backend.calls == []

    async def test_confident_answer_is_grounded(self, make_generator, business, sources):
        generator, backend = make_generator("We offer web design, SEO and social media marketing.")
        synthesizer = ResponseSynthesizer(generator=generator)

        response = await synthesizer.generate(
            question="What services do you offer?",
            context_sources=sources,
            confidence_score=0.95,
            is_confident=True,
            business_info=business,
        )

        assert response.method == GenerationMethod.CONFIDENT
        assert response.metadata.strategy == GenerationMethod.CONFIDENT
        assert response.context_sources_used == sources
        assert response.metadata.context_sources_count == 2
        assert response.metadata.word_count == len(response.response.split())
        prompt = backend.calls[0]["prompt"]
        assert "Bright Marketing" in prompt
        assert sources[0].content in prompt

    async def test_grounding_sources_are_capped(self, make_generator, sources):
        generator, backend = make_generator("ok then")
        synthesizer = ResponseSynthesizer(generator=generator)
        synthesizer.max_grounding_sources = 1

        response = await synthesizer.generate("What services do you offer?", sources, 0.9, True)

        assert response.context_sources_used == sources[:1]
        assert sources[1].content not in backend.calls[0]["prompt"]

    async def test_generator_failure_uses_state_reply(self, make_generator, sources):
        generator, _ = make_generator(Exception("Authentication failed"))
        synthesizer = ResponseSynthesizer(generator=generator)

        response = await synthesizer.generate(
            "What services do you offer?", sources, 0.9, True, lead_state=ConversationState.QUALIFIED
        )

        assert response.method == GenerationMethod.STATIC_FALLBACK
        assert response.metadata.strategy == GenerationMethod.CONFIDENT
        assert response.response == get_state_reply(ConversationState.QUALIFIED)
        assert response.context_sources_used == []
        assert metrics.fallbacks_total.value(component="synthesizer") == 1

    async def test_greeting_with_generator(self, make_generator):
        generator, backend = make_generator("Hi there! How can we help today?")

        response = await ResponseSynthesizer(generator=generator).generate("Hello!", [], 0.0, False)

        assert response.method == GenerationMethod.GREETING
        assert response.response == "Hi there! How can we help today?"
        assert response.metadata.requires_escalation is False
        assert len(backend.calls) == 1

    async def test_greeting_without_generator(self):
        response = await ResponseSynthesizer().generate("Hola", [], 0.0, False, language="es")

        assert response.method == GenerationMethod.STATIC_FALLBACK
        assert response.response == get_greeting_reply("es")

    async def test_confidence_is_clamped(self, make_generator):
        generator, _ = make_generator("ok then")

        response = await ResponseSynthesizer(generator=generator).generate("Hello!", [], 1.7, True)

        assert response.confidence_score == 1.0


@pytest.mark.asyncio
class TestLeadReply:

    @pytest.fixture
    def context(self, business):
        return ConversationContext(conversation_id="conv-1", business=business)

    async def test_generated_reply(self, make_generator, context):
        generator, backend = make_generator("Great! When would you like to start?")
        analysis = MessageAnalysis(intent=Intent.SHOWING_INTEREST)

        text, method = await ResponseSynthesizer(generator=generator).craft_lead_reply(
            "Tell me more", analysis, ConversationState.INTERESTED, context
        )

        assert text == "Great! When would you like to start?"
        assert method == GenerationMethod.CONFIDENT
        assert "Share relevant value" in backend.calls[0]["prompt"]

    async def test_static_reply_without_generator(self, context):
        analysis = MessageAnalysis(intent=Intent.READY_TO_BUY)

        text, method = await ResponseSynthesizer().craft_lead_reply(
            "I want to buy", analysis, ConversationState.READY_TO_CONVERT, context, language="es"
        )

        assert text == get_state_reply(ConversationState.READY_TO_CONVERT, "es")
        assert method == GenerationMethod.STATIC_FALLBACK
