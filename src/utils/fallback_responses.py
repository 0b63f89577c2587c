"""
Fallback Responses for Generator Degradation

Static replies used when the generator is unavailable, failing, or must not
be called (rate limit, unsafe input, low confidence). English and Spanish.
"""

from src.models.analysis import Intent, MessageAnalysis
from src.models.conversation import ConversationState


_STATE_REPLIES: dict[str, dict[ConversationState, str]] = {
    "en": {
        ConversationState.INITIAL_CONTACT: "Thanks for reaching out! How can I help you today?",
        ConversationState.ENGAGED: "Thanks for your interest! What specific challenges are you looking to solve?",
        ConversationState.INTERESTED: (
            "Great! I'd love to learn more about your needs. "
            "What's your timeline for implementing a solution?"
        ),
        ConversationState.QUALIFIED: (
            "Perfect! Based on what you've shared, I think we can definitely help. "
            "Would you like to schedule a quick 15-minute call to discuss your specific situation?"
        ),
        ConversationState.READY_TO_CONVERT: (
            "Excellent! Let me send you a link to book a convenient time for a demo. "
            "What days work best for you?"
        ),
        ConversationState.OBJECTION: (
            "I understand your concerns. Many of our clients had similar questions initially. "
            "Can I address any specific concerns you have?"
        ),
        ConversationState.LOST: (
            "I understand. If anything changes or you have questions in the future, feel free to reach out!"
        ),
    },
    "es": {
        ConversationState.INITIAL_CONTACT: "¡Gracias por escribirnos! ¿En qué te puedo ayudar hoy?",
        ConversationState.ENGAGED: "¡Gracias por tu interés! ¿Qué retos específicos buscas resolver?",
        ConversationState.INTERESTED: (
            "¡Excelente! Me encantaría conocer mejor tus necesidades. "
            "¿En qué plazo te gustaría implementar una solución?"
        ),
        ConversationState.QUALIFIED: (
            "¡Perfecto! Por lo que nos cuentas, creo que podemos ayudarte. "
            "¿Te gustaría agendar una llamada rápida de 15 minutos para revisar tu caso?"
        ),
        ConversationState.READY_TO_CONVERT: (
            "¡Excelente! Te comparto un enlace para agendar una demo. ¿Qué días te funcionan mejor?"
        ),
        ConversationState.OBJECTION: (
            "Entiendo tus dudas. Muchos de nuestros clientes tenían preguntas similares al inicio. "
            "¿Qué te preocupa en particular?"
        ),
        ConversationState.LOST: (
            "Entiendo. Si algo cambia o tienes preguntas más adelante, ¡aquí estaremos!"
        ),
    },
}

_INSUFFICIENT_INFORMATION = {
    "en": (
        "Thanks for your question! I don't have enough information to answer that accurately right now. "
        "I've passed it along to our team so someone can get back to you with the right details."
    ),
    "es": (
        "¡Gracias por tu pregunta! En este momento no tengo información suficiente para responderla con precisión. "
        "Ya la compartí con nuestro equipo para que te contacten con los detalles correctos."
    ),
}

_RATE_LIMITED = {
    "en": "Thanks for your message! We'll get back to you soon.",
    "es": "¡Gracias por tu mensaje! Te responderemos muy pronto.",
}

_UNSAFE_INPUT = {
    "en": "Sorry, I can't process that message. Could you rephrase your question?",
    "es": "Lo siento, no puedo procesar ese mensaje. ¿Podrías reformular tu pregunta?",
}

_TECHNICAL_DIFFICULTIES = {
    "en": (
        "I'm having some technical difficulties right now. "
        "Please try again in a moment, or our team will follow up with you shortly."
    ),
    "es": (
        "Estoy teniendo dificultades técnicas en este momento. "
        "Intenta de nuevo en un momento o nuestro equipo te contactará pronto."
    ),
}


def _lang(language: str | None) -> str:
    """Collapse a language tag ("es-MX", "spanish") to a supported key."""
    if language and language.lower().startswith(("es", "spa")):
        return "es"
    return "en"


def get_state_reply(state: ConversationState, language: str = "en") -> str:
    """Canned reply appropriate to the conversation's funnel state."""
    return _STATE_REPLIES[_lang(language)][ConversationState(state)]


def get_greeting_reply(language: str = "en") -> str:
    return get_state_reply(ConversationState.INITIAL_CONTACT, language)


def get_insufficient_information_reply(language: str = "en") -> str:
    """Reply for questions the available content cannot answer confidently."""
    return _INSUFFICIENT_INFORMATION[_lang(language)]


def get_rate_limited_reply(language: str = "en") -> str:
    return _RATE_LIMITED[_lang(language)]


def get_unsafe_input_reply(language: str = "en") -> str:
    return _UNSAFE_INPUT[_lang(language)]


def get_technical_difficulties_reply(language: str = "en") -> str:
    return _TECHNICAL_DIFFICULTIES[_lang(language)]


def get_fallback_analysis(is_continuation: bool = False) -> MessageAnalysis:
    """
    Neutral analysis used as the starting point for keyword rules.

    Low lead score and no human flag: nothing here should push the funnel.
    """
    return MessageAnalysis(
        intent=Intent.INITIAL_INQUIRY,
        sentiment=0.0,
        urgency=0.0,
        lead_score=30,
        requires_human=False,
        is_continuation=is_continuation,
        confidence=0.5,
        next_best_action="continue_conversation",
    )
