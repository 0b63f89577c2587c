from typing import Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from src.config import get_settings
from src.core.exceptions import GenerationError
from src.models.analysis import Intent, MessageAnalysis
from src.models.conversation import ConversationMessage, ConversationState, StateTransition
from src.utils.llm_client import GeneratorClient, build_generator, parse_structured_output
from src.utils.metrics import metrics
from src.utils.observability import log_business_event


TRANSITION_INSTRUCTIONS = (
    "You manage the sales-funnel state of a customer conversation. "
    "Given the current state, the latest message analysis and recent history, "
    "decide the next state. Return ONLY a JSON object."
)

STATE_GUIDE = """STATES:
- initial_contact: first touch, nothing known yet
- engaged: customer is talking and responsive
- interested: customer shows explicit interest in the offer
- qualified: need, urgency or budget confirmed
- ready_to_convert: customer wants to buy, book or sign up now
- objection: customer raised a concern or price objection
- lost: customer is clearly not interested

Return JSON: {"new_state": "<state>", "reason": "<one sentence>", "confidence": <0-1>}"""


class TransitionPayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    new_state: str
    reason: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)


def rule_based_transition(current_state: ConversationState, analysis: MessageAnalysis) -> tuple[ConversationState, str]:
    """
    Deterministic transition table, first match wins.

    Also the fallback for every failed or invalid generative decision.
    """
    if analysis.sentiment < -0.5:
        return ConversationState.LOST, "strongly negative sentiment"
    if analysis.intent == Intent.READY_TO_BUY:
        return ConversationState.READY_TO_CONVERT, "explicit buying intent"
    if analysis.intent in (Intent.SHOWING_INTEREST, Intent.STRONG_INTEREST):
        return ConversationState.INTERESTED, "interest expressed"
    if analysis.intent in (Intent.PRICE_CONCERN, Intent.HAS_OBJECTION):
        return ConversationState.OBJECTION, "objection raised"
    if analysis.urgency > 0.7:
        return ConversationState.QUALIFIED, "high urgency"
    if current_state == ConversationState.INITIAL_CONTACT and analysis.intent != Intent.GREETING:
        return ConversationState.INTERESTED, "first substantive message"
    return current_state, "no transition rule matched"


class LeadStateMachine:
    """
    Advances a conversation through the funnel.

    `lost` is terminal and short-circuits everything. Otherwise the generator
    proposes a state, which must be a known state; anything else falls back
    to the rule table.
    """

    def __init__(self, generator: Optional[GeneratorClient] = None):
        settings = get_settings()
        self.generator = generator or build_generator(settings.transition_model)
        self.history_window = settings.history_window_size

    async def next_state(
        self,
        current_state: ConversationState,
        analysis: MessageAnalysis,
        history: Sequence[ConversationMessage] = (),
        conversation_id: str = "unknown",
    ) -> StateTransition:
        current_state = ConversationState(current_state)

        # --- HARD GATE: terminal state ---
        if current_state == ConversationState.LOST:
            return self._finish(conversation_id, StateTransition(
                previous_state=current_state,
                new_state=current_state,
                reason="lost is terminal",
                confidence=1.0,
                method="terminal",
            ))

        transition = await self._generative_transition(current_state, analysis, history)
        if transition is None:
            metrics.fallbacks_total.inc(component="state_machine")
            new_state, reason = rule_based_transition(current_state, analysis)
            transition = StateTransition(
                previous_state=current_state,
                new_state=new_state,
                reason=reason,
                confidence=0.6,
                method="rule_based",
            )

        return self._finish(conversation_id, transition)

    async def _generative_transition(
        self,
        current_state: ConversationState,
        analysis: MessageAnalysis,
        history: Sequence[ConversationMessage],
    ) -> Optional[StateTransition]:
        if not self.generator.available:
            return None

        transcript = "\n".join(
            f"{message.role.upper()}: {message.content}" for message in list(history)[-self.history_window:]
        ) or "No previous messages"

        prompt = f"""
        CURRENT STATE: {current_state}

        LATEST MESSAGE ANALYSIS:
        - Intent: {analysis.intent}
        - Sentiment: {analysis.sentiment}
        - Urgency: {analysis.urgency}
        - Lead score: {analysis.lead_score}
        - Buying signals: {analysis.buying_signals}
        - Objections: {analysis.objections}

        RECENT CONVERSATION:
        {transcript}

        {STATE_GUIDE}
        """

        try:
            raw = await self.generator.complete(
                prompt,
                system_prompt=TRANSITION_INSTRUCTIONS,
                operation="transition",
                max_tokens=get_settings().transition_max_tokens,
                temperature=0.2,
            )
        except GenerationError as e:
            logger.warning(f"Generative transition unavailable: {e.message}")
            return None

        parsed = parse_structured_output(raw, TransitionPayload)
        if not parsed.ok:
            logger.warning(f"Discarding transition output ({parsed.error_code})")
            return None

        try:
            new_state = ConversationState(parsed.value.new_state.strip().lower())
        except ValueError:
            logger.warning(f"Generator proposed unknown state '{parsed.value.new_state}'")
            return None

        return StateTransition(
            previous_state=current_state,
            new_state=new_state,
            reason=parsed.value.reason or "generative decision",
            confidence=parsed.value.confidence,
            method="generative",
        )

    @staticmethod
    def _finish(conversation_id: str, transition: StateTransition) -> StateTransition:
        metrics.state_transitions.inc(state=str(transition.new_state), method=transition.method)
        if transition.changed:
            log_business_event(
                "state_transition",
                conversation_id,
                from_state=str(transition.previous_state),
                to_state=str(transition.new_state),
                method=transition.method,
                reason=transition.reason,
            )
        else:
            logger.debug(f"♟️ {conversation_id} stays in {transition.new_state} ({transition.method})")
        return transition
