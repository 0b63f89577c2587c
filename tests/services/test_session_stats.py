import pytest

from src.core.exceptions import SessionNotFoundError
from src.services.session_stats import SessionStatsStore


@pytest.mark.asyncio
class TestSessionStatsStore:

    async def test_counts_and_averages(self):
        store = SessionStatsStore()
        await store.record_user_message("sess-1", "biz-1", "What services do you offer?")
        await store.record_bot_reply("sess-1", "biz-1", "Web design and SEO.", 0.9, True, 100.0)
        await store.record_user_message("sess-1", "biz-1", "Do you ship?")
        await store.record_bot_reply("sess-1", "biz-1", "Let me check with the team.", 0.1, False, 50.0)

        stats = await store.get("sess-1")

        assert stats.business_id == "biz-1"
        assert stats.message_count == 4
        assert stats.answered_count == 1
        assert stats.unanswered_count == 1
        assert stats.average_confidence == pytest.approx(0.5)
        assert stats.average_response_time == pytest.approx(75.0)
        assert [m.sequence_number for m in stats.messages] == [1, 2, 3, 4]
        assert [m.message_type for m in stats.messages] == ["user", "bot", "user", "bot"]

    async def test_unknown_session(self):
        with pytest.raises(SessionNotFoundError) as exc_info:
            await SessionStatsStore().get("missing")

        assert exc_info.value.session_id == "missing"
        assert isinstance(exc_info.value, LookupError)

    async def test_recent_messages(self):
        store = SessionStatsStore()
        for i in range(7):
            await store.record_user_message("sess-1", "biz-1", f"message {i}")

        recent = await store.recent_messages("sess-1", limit=3)

        assert recent == [
            {"type": "user", "content": "message 4"},
            {"type": "user", "content": "message 5"},
            {"type": "user", "content": "message 6"},
        ]
        assert await store.recent_messages("missing") == []

    async def test_message_log_is_bounded(self):
        store = SessionStatsStore(max_messages=3)
        for i in range(5):
            await store.record_user_message("sess-1", "biz-1", f"message {i}")

        stats = await store.get("sess-1")

        assert stats.message_count == 5
        assert [m.content for m in stats.messages] == ["message 2", "message 3", "message 4"]
