import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from paydesk.services import escalation_service
from paydesk.services.escalation_service import EscalationError
from paydesk.services.sendbird_service import DeskTicket


class FakeDesk:
    def __init__(self):
        self.created = 0
        self.status = "OPEN"
        self.fail_create = False
        self.fail_status = False
        self.find_or_create_customer = AsyncMock(return_value="cust-1")
        self.get_online_agents = AsyncMock(return_value=["agent-7"])

    async def create_ticket(self, customer_id, channel_name):
        if self.fail_create:
            raise RuntimeError("desk down")
        self.created += 1
        return DeskTicket(ticket_id=f"T{self.created}", channel_url=f"sendbird_desk_{self.created}")

    async def get_ticket_status(self, ticket_id):
        if self.fail_status:
            raise RuntimeError("timeout")
        return self.status


class FakeMappings:
    """Minimal session: channel_mappings rows live in a list."""

    def __init__(self):
        self.rows = []
        self.fail_commit = False
        self.pending = []

    def add(self, row):
        self.pending.append(row)

    def commit(self):
        if self.fail_commit:
            raise RuntimeError("db down")
        self.rows.extend(self.pending)
        self.pending = []

    def rollback(self):
        self.pending = []

    def delete(self, row):
        self.rows.remove(row)

    def for_channel(self, _db, channel_url):
        matches = [r for r in self.rows if r.original_channel_url == channel_url]
        return matches[-1] if matches else None

    def for_desk(self, _db, desk_channel_url):
        matches = [r for r in self.rows if r.desk_channel_url == desk_channel_url]
        return matches[0] if matches else None


@pytest.fixture
def desk():
    return FakeDesk()


@pytest.fixture
def chat():
    return SimpleNamespace(
        add_members=AsyncMock(return_value={}),
        send_channel_message=AsyncMock(return_value={}),
        get_recent_messages=AsyncMock(return_value=[]),
    )


@pytest.fixture
def db():
    return FakeMappings()


@pytest.fixture
def wired(desk, chat, db):
    with patch.object(escalation_service, "get_desk_service", return_value=desk), patch.object(
        escalation_service, "get_chat_service", return_value=chat
    ), patch.object(escalation_service, "get_mapping_for_channel", side_effect=db.for_channel), patch.object(
        escalation_service, "get_mapping_for_desk_channel", side_effect=db.for_desk
    ), patch.object(
        escalation_service, "notify", new_callable=AsyncMock
    ) as notify, patch.object(
        escalation_service, "alert_error"
    ):
        yield notify


class TestCreateTicket:
    @pytest.mark.asyncio
    async def test_persists_mapping_and_adds_members(self, db, desk, chat, wired):
        ticket = await escalation_service.create_desk_ticket(db, "ch1", "user_1")

        assert ticket.ticket_id == "T1"
        assert db.rows[0].desk_channel_url == "sendbird_desk_1"
        assert db.rows[0].original_channel_url == "ch1"
        assert "sendbird_desk_1" in escalation_service.desk_channels
        chat.add_members.assert_awaited_once_with("sendbird_desk_1", ["user_1", "agent-7"])

    @pytest.mark.asyncio
    async def test_ticket_failure_raises(self, db, desk, wired):
        desk.fail_create = True

        with pytest.raises(EscalationError):
            await escalation_service.create_desk_ticket(db, "ch1", "user_1")
        assert db.rows == []

    @pytest.mark.asyncio
    async def test_mapping_failure_raises(self, db, wired):
        db.fail_commit = True

        with pytest.raises(EscalationError):
            await escalation_service.create_desk_ticket(db, "ch1", "user_1")

    @pytest.mark.asyncio
    async def test_participant_failures_are_non_fatal(self, db, chat, wired):
        chat.add_members.side_effect = RuntimeError("members failed")
        chat.send_channel_message.side_effect = RuntimeError("message failed")

        ticket = await escalation_service.create_desk_ticket(db, "ch1", "user_1")

        assert ticket.ticket_id == "T1"
        assert len(db.rows) == 1


class TestEscalateReentry:
    @pytest.mark.asyncio
    async def test_second_call_does_not_create_second_ticket(self, db, desk, wired):
        first = await escalation_service.escalate(db, "ch1", "user_1")
        second = await escalation_service.escalate(db, "ch1", "user_1")

        assert first.created is True
        assert second.created is False
        assert desk.created == 1
        assert "already open" in wired.call_args[0][1]
        await escalation_service.cancel_all_timers()

    @pytest.mark.asyncio
    async def test_stale_ticket_creates_exactly_one_new_ticket(self, db, desk, wired):
        await escalation_service.escalate(db, "ch1", "user_1")
        desk.status = "INITIALIZED"

        outcome = await escalation_service.escalate(db, "ch1", "user_1")

        assert outcome.created is True
        assert outcome.ticket_id == "T2"
        assert desk.created == 2
        assert [r.ticket_id for r in db.rows] == ["T2"]
        assert "sendbird_desk_1" not in escalation_service.desk_channels
        await escalation_service.cancel_all_timers()

    @pytest.mark.asyncio
    async def test_unverifiable_ticket_counts_as_stale(self, db, desk, wired):
        await escalation_service.escalate(db, "ch1", "user_1")
        desk.fail_status = True

        outcome = await escalation_service.escalate(db, "ch1", "user_1")

        assert outcome.created is True
        assert desk.created == 2
        await escalation_service.cancel_all_timers()

    @pytest.mark.asyncio
    async def test_agent_reply_suppresses_already_open_notice(self, db, chat, wired):
        await escalation_service.escalate(db, "ch1", "user_1")
        wired.reset_mock()
        chat.get_recent_messages.return_value = [{"message": "[Support Agent]: hello"}]

        outcome = await escalation_service.escalate(db, "ch1", "user_1")

        assert outcome.created is False
        wired.assert_not_awaited()
        await escalation_service.cancel_all_timers()


class TestOpenTicket:
    @pytest.mark.asyncio
    async def test_reuses_existing_mapping(self, db, desk, wired):
        first = await escalation_service.open_ticket(db, "ch1", "user_1")
        escalation_service.escalated_channels.clear()

        second = await escalation_service.open_ticket(db, "ch1", "user_1")

        assert first == second == "sendbird_desk_1"
        assert desk.created == 1
        assert escalation_service.is_escalated("ch1")
        await escalation_service.cancel_all_timers()


class TestAgentAwayTimer:
    @pytest.mark.asyncio
    async def test_fires_when_no_agent_replied(self, chat, wired):
        task = escalation_service.schedule_agent_away_fallback("ch1", delay=0.01)
        await task

        wired.assert_awaited_once_with("ch1", escalation_service.MSG_AGENT_AWAY)
        assert not escalation_service.has_pending_timer("ch1")

    @pytest.mark.asyncio
    async def test_skipped_when_agent_replied(self, chat, wired):
        chat.get_recent_messages.return_value = [{"message": "[Support Agent]: on it"}]

        await escalation_service.schedule_agent_away_fallback("ch1", delay=0.01)

        wired.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skipped_when_history_unreadable(self, chat, wired):
        chat.get_recent_messages.side_effect = RuntimeError("api down")

        await escalation_service.schedule_agent_away_fallback("ch1", delay=0.01)

        wired.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_clear_cancels_pending_notice(self, wired):
        task = escalation_service.schedule_agent_away_fallback("ch1", delay=5)

        assert escalation_service.clear_agent_away_timer("ch1") is True
        with pytest.raises(asyncio.CancelledError):
            await task
        wired.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rearming_keeps_a_single_timer(self, wired):
        first = escalation_service.schedule_agent_away_fallback("ch1", delay=5)
        second = escalation_service.schedule_agent_away_fallback("ch1", delay=5)

        await asyncio.sleep(0)
        assert first.cancelled()
        assert escalation_service.has_pending_timer("ch1")
        await escalation_service.cancel_all_timers()
        assert second.cancelled()


class TestForwarding:
    @pytest.mark.asyncio
    async def test_agent_reply_goes_to_customer_and_clears_timer(self, db, wired):
        await escalation_service.open_ticket(db, "ch1", "user_1")
        assert escalation_service.has_pending_timer("ch1")

        forwarded = await escalation_service.forward_agent_reply(db, "sendbird_desk_1", "agent-7", "Hi there")

        assert forwarded is True
        assert not escalation_service.has_pending_timer("ch1")
        wired.assert_awaited_with("ch1", "[Support Agent]: Hi there")

    @pytest.mark.asyncio
    async def test_ticket_owner_messages_are_not_echoed(self, db, wired):
        await escalation_service.open_ticket(db, "ch1", "user_1")
        wired.reset_mock()

        assert await escalation_service.forward_agent_reply(db, "sendbird_desk_1", "user_1", "activation") is False
        wired.assert_not_awaited()
        await escalation_service.cancel_all_timers()

    @pytest.mark.asyncio
    async def test_customer_message_goes_to_desk(self, db, chat, wired):
        await escalation_service.open_ticket(db, "ch1", "user_1")
        chat.send_channel_message.reset_mock()

        assert await escalation_service.forward_customer_message(db, "ch1", "user_1", "any update?") is True
        chat.send_channel_message.assert_awaited_once_with("sendbird_desk_1", "user_1", "any update?")
        await escalation_service.cancel_all_timers()

    @pytest.mark.asyncio
    async def test_customer_message_without_mapping_drops_cache_entry(self, db, wired):
        escalation_service.escalated_channels.add("ch9")

        assert await escalation_service.forward_customer_message(db, "ch9", "user_1", "hello") is False
        assert not escalation_service.is_escalated("ch9")


class TestStartupRestore:
    def test_load_escalated_channels(self):
        db = Mock()
        db.query.return_value.all.return_value = [("ch1", "sendbird_desk_1"), ("ch2", "sendbird_desk_2")]

        assert escalation_service.load_escalated_channels(db) == 2
        assert escalation_service.is_escalated("ch2")
        assert escalation_service.is_desk_channel("sendbird_desk_1")

    def test_desk_prefix_is_recognized_without_cache(self):
        assert escalation_service.is_desk_channel("sendbird_desk_999")
        assert not escalation_service.is_desk_channel("customer_channel")
