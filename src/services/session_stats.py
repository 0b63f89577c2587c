"""
Per-session statistics read model for the knowledge-answer path.
"""
import asyncio
from typing import Optional

from src.core.exceptions import SessionNotFoundError
from src.models.pipeline import SessionMessage, SessionStats


class SessionStatsStore:
    """
    Running counters and message log per session.

    `average_confidence` covers every scored bot reply, answered or not.
    """

    def __init__(self, max_messages: int = 200):
        self.max_messages = max_messages
        self._sessions: dict[str, SessionStats] = {}
        self._confidence_totals: dict[str, float] = {}
        self._response_time_totals: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def record_user_message(self, session_id: str, business_id: str, content: str) -> None:
        async with self._lock:
            stats = self._session(session_id, business_id)
            self._append(stats, SessionMessage(
                sequence_number=stats.message_count + 1,
                message_type="user",
                content=content,
            ))
            stats.message_count += 1

    async def record_bot_reply(
        self,
        session_id: str,
        business_id: str,
        content: str,
        confidence_score: float,
        is_answered: bool,
        response_time: float,
    ) -> None:
        async with self._lock:
            stats = self._session(session_id, business_id)
            self._append(stats, SessionMessage(
                sequence_number=stats.message_count + 1,
                message_type="bot",
                content=content,
                confidence_score=confidence_score,
                is_answered=is_answered,
                response_time=response_time,
            ))
            stats.message_count += 1
            if is_answered:
                stats.answered_count += 1
            else:
                stats.unanswered_count += 1

            replies = stats.answered_count + stats.unanswered_count
            self._confidence_totals[session_id] = self._confidence_totals.get(session_id, 0.0) + confidence_score
            self._response_time_totals[session_id] = self._response_time_totals.get(session_id, 0.0) + response_time
            stats.average_confidence = self._confidence_totals[session_id] / replies
            stats.average_response_time = self._response_time_totals[session_id] / replies

    async def recent_messages(self, session_id: str, limit: int = 5) -> list[dict]:
        """Last few messages as plain dicts (for unanswered-question context)."""
        async with self._lock:
            stats = self._sessions.get(session_id)
            if stats is None:
                return []
            return [
                {"type": message.message_type, "content": message.content}
                for message in stats.messages[-limit:]
            ]

    async def get(self, session_id: str) -> SessionStats:
        """
        Raises:
            SessionNotFoundError: nothing recorded for the session
        """
        async with self._lock:
            stats: Optional[SessionStats] = self._sessions.get(session_id)
            if stats is None:
                raise SessionNotFoundError(session_id)
            return stats.model_copy(deep=True)

    def _session(self, session_id: str, business_id: str) -> SessionStats:
        stats = self._sessions.get(session_id)
        if stats is None:
            stats = SessionStats(session_id=session_id, business_id=business_id)
            self._sessions[session_id] = stats
        return stats

    def _append(self, stats: SessionStats, message: SessionMessage) -> None:
        stats.messages.append(message)
        if len(stats.messages) > self.max_messages:
            del stats.messages[: len(stats.messages) - self.max_messages]
