"""Tests for support ticket routing and escalation."""

import random
from datetime import timedelta

import pytest

from agentchat.agents.routing_agent import SupportRoutingEngine
from agentchat.models.errors import ConcurrencyConflict, NotFound
from agentchat.models.schemas import (
    AgentRole, ChatType, EscalationType, Priority, SupportTicket,
    TicketCategory, TicketComplexity, TicketStatus, TicketUpdate
)
from agentchat.services import store as tables
from agentchat.services.store import to_row
from tests.conftest import ACTOR, NOW, OTHER_ACTOR, make_agent, make_chat


@pytest.fixture
def engine(store, classifier):
    return SupportRoutingEngine(store, classifier, random.Random(7))


async def make_ticket(store, priority=Priority.URGENT, minutes_old=0,
                      status=TicketStatus.OPEN, agent_id=None,
                      requires_escalation=False, user_id=ACTOR):
    ticket = SupportTicket(
        chat_id="chat", user_id=user_id, title="Checkout broken",
        description="Checkout broken", category=TicketCategory.TECHNICAL,
        priority=priority, status=status, agent_id=agent_id,
        requires_escalation=requires_escalation,
        created_at=NOW - timedelta(minutes=minutes_old))
    await store.insert(tables.SUPPORT_TICKETS, to_row(ticket))
    return ticket


class TestClassifyTicket:
    """Tests for SupportRoutingEngine.classify_ticket."""

    def test_critical_error_is_urgent_technical(self, engine):
        result = engine.classify_ticket(
            "критическая ошибка, система не работает")

        assert result.category == TicketCategory.TECHNICAL
        assert result.priority == Priority.URGENT
        assert result.requires_human_escalation is True

    def test_database_problem_is_complex(self, engine):
        result = engine.classify_ticket("database error during checkout")

        assert result.category == TicketCategory.TECHNICAL
        assert result.complexity == TicketComplexity.COMPLEX
        assert result.estimated_resolution_minutes == 120
        assert result.priority == Priority.URGENT
        assert result.requires_human_escalation is True

    def test_billing_question(self, engine):
        result = engine.classify_ticket("Question about my subscription")

        assert result.category == TicketCategory.BILLING
        assert result.priority == Priority.MEDIUM
        assert result.requires_human_escalation is False

    def test_unmatched_message_uses_default(self, engine):
        result = engine.classify_ticket("Hello, anyone there?")

        assert result.category == TicketCategory.GENERAL
        assert result.complexity == TicketComplexity.MODERATE
        assert result.estimated_resolution_minutes == 30


class TestAutoRoute:
    """Tests for SupportRoutingEngine.auto_route."""

    @pytest.mark.asyncio
    async def test_support_message_opens_ticket_for_least_busy_agent(
            self, store, engine):
        busy = await make_agent(store, "Busy", AgentRole.SUPPORT)
        idle = await make_agent(store, "Idle", AgentRole.SUPPORT)
        await make_ticket(store, agent_id=busy.id)
        chat = await make_chat(store)

        result = await engine.auto_route(
            ACTOR, "The site is not working, checkout fails", chat.id)

        assert result.intent_result.intent == "technical_support"
        assert result.assigned_agent_id == idle.id
        assert result.ticket is not None
        assert result.ticket.agent_id == idle.id
        assert result.ticket.chat_id == chat.id
        stored_chat = await store.get(tables.CHATS, chat.id)
        assert stored_chat["agent_ids"] == [idle.id]
        assert stored_chat["chat_type"] == ChatType.SUPPORT
        assignments = await store.query(tables.AGENT_ASSIGNMENTS,
                                        {"chat_id": chat.id})
        assert [a["agent_id"] for a in assignments] == [idle.id]

    @pytest.mark.asyncio
    async def test_ties_pick_one_of_the_least_busy(self, store, engine):
        first = await make_agent(store, "First", AgentRole.SUPPORT)
        second = await make_agent(store, "Second", AgentRole.SUPPORT)

        agent = await engine.select_agent_by_workload(ACTOR, ["support"])

        assert agent.id in {first.id, second.id}

    @pytest.mark.asyncio
    async def test_foreign_and_inactive_agents_are_skipped(self, store,
                                                           engine):
        await make_agent(store, "Foreign", AgentRole.SUPPORT,
                         user_id=OTHER_ACTOR)
        await make_agent(store, "Off", AgentRole.SUPPORT, is_active=False)

        assert await engine.select_agent_by_workload(ACTOR,
                                                     ["support"]) is None

    @pytest.mark.asyncio
    async def test_ticket_falls_back_to_general_support_pool(self, store,
                                                              engine):
        assistant = await make_agent(store, "Generalist",
                                     AgentRole.ASSISTANT)
        await make_agent(store, "Writer", AgentRole.WRITER)
        chat = await make_chat(store)

        result = await engine.auto_route(ACTOR, "urgent: checkout is down",
                                         chat.id)

        assert result.assigned_agent_id == assistant.id
        assert result.ticket.agent_id == assistant.id

    @pytest.mark.asyncio
    async def test_long_message_title_is_truncated(self, store, engine):
        chat = await make_chat(store)
        message = "urgent: " + "x" * 200

        result = await engine.auto_route(ACTOR, message, chat.id)

        assert result.ticket.title == message[:100] + "..."
        assert result.ticket.description == message

    @pytest.mark.asyncio
    async def test_general_message_opens_no_ticket(self, store, engine):
        chat = await make_chat(store)

        result = await engine.auto_route(ACTOR, "Hello there", chat.id)

        assert result.ticket is None
        assert result.assigned_agent_id is None
        assert await store.query(tables.SUPPORT_TICKETS) == []

    @pytest.mark.asyncio
    async def test_feature_request_carries_auto_response(self, store, engine):
        chat = await make_chat(store)

        result = await engine.auto_route(ACTOR, "feature request: dark mode",
                                         chat.id)

        assert result.auto_response
        assert result.ticket is None

    @pytest.mark.asyncio
    async def test_foreign_chat_is_not_found(self, store, engine):
        chat = await make_chat(store, user_id=OTHER_ACTOR)

        with pytest.raises(NotFound):
            await engine.auto_route(ACTOR, "urgent", chat.id)


class TestEscalation:
    """Tests for ticket escalation."""

    @pytest.mark.asyncio
    async def test_urgent_ticket_escalates_after_thirty_minutes(self, store,
                                                                engine):
        ticket = await make_ticket(store, Priority.URGENT, minutes_old=31)

        record = await engine.check_escalation(ticket, NOW)

        assert record.escalation_type == EscalationType.TIMEOUT
        stored = await store.get(tables.SUPPORT_TICKETS, ticket.id)
        assert stored["escalated_at"] == NOW

    @pytest.mark.asyncio
    async def test_fresh_urgent_ticket_is_not_escalated(self, store, engine):
        ticket = await make_ticket(store, Priority.URGENT, minutes_old=10)

        assert await engine.check_escalation(ticket, NOW) is None

    @pytest.mark.asyncio
    async def test_high_ticket_escalates_after_two_hours(self, store, engine):
        young = await make_ticket(store, Priority.HIGH, minutes_old=119)
        old = await make_ticket(store, Priority.HIGH, minutes_old=121)

        assert await engine.check_escalation(young, NOW) is None
        assert (await engine.check_escalation(old, NOW)).escalation_type == \
            EscalationType.TIMEOUT

    @pytest.mark.asyncio
    async def test_ticket_in_progress_does_not_time_out(self, store, engine):
        ticket = await make_ticket(store, Priority.URGENT, minutes_old=90,
                                   status=TicketStatus.IN_PROGRESS)

        assert await engine.check_escalation(ticket, NOW) is None

    @pytest.mark.asyncio
    async def test_complexity_flag_escalates(self, store, engine):
        ticket = await make_ticket(store, Priority.LOW,
                                   requires_escalation=True)

        record = await engine.check_escalation(ticket, NOW)

        assert record.escalation_type == EscalationType.COMPLEXITY

    @pytest.mark.asyncio
    async def test_ticket_is_escalated_at_most_once(self, store, engine):
        ticket = await make_ticket(store, Priority.URGENT, minutes_old=45)
        await engine.check_escalation(ticket, NOW)

        reloaded = SupportTicket.model_validate(
            await store.get(tables.SUPPORT_TICKETS, ticket.id))
        assert await engine.check_escalation(
            reloaded, NOW + timedelta(hours=1)) is None
        assert len(await engine.escalations_for(ACTOR, ticket.id)) == 1

    @pytest.mark.asyncio
    async def test_stale_ticket_raises_conflict(self, store, engine):
        ticket = await make_ticket(store, Priority.URGENT, minutes_old=45)
        await store.update(tables.SUPPORT_TICKETS, {"id": ticket.id},
                           {"status": TicketStatus.OPEN})

        with pytest.raises(ConcurrencyConflict):
            await engine.check_escalation(ticket, NOW)

        assert await store.query(tables.SUPPORT_ESCALATIONS) == []

    @pytest.mark.asyncio
    async def test_sweep_escalates_due_tickets(self, store, engine):
        due = await make_ticket(store, Priority.URGENT, minutes_old=40)
        await make_ticket(store, Priority.URGENT, minutes_old=5)
        await make_ticket(store, Priority.LOW, minutes_old=500)

        records = await engine.sweep_escalations(NOW)

        assert [r.ticket_id for r in records] == [due.id]
        assert await engine.sweep_escalations(NOW) == []


class TestUpdateTicket:
    """Tests for SupportRoutingEngine.update_ticket."""

    @pytest.mark.asyncio
    async def test_update_applies_changes(self, store, engine):
        agent = await make_agent(store, "Support", AgentRole.SUPPORT)
        ticket = await make_ticket(store, Priority.LOW)

        updated = await engine.update_ticket(
            ACTOR, ticket.id,
            TicketUpdate(status=TicketStatus.IN_PROGRESS, agent_id=agent.id),
            NOW)

        assert updated.status == TicketStatus.IN_PROGRESS
        assert updated.agent_id == agent.id
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_flagging_escalation_escalates_immediately(self, store,
                                                             engine):
        ticket = await make_ticket(store, Priority.LOW)

        updated = await engine.update_ticket(
            ACTOR, ticket.id, TicketUpdate(requires_escalation=True), NOW)

        assert updated.escalated_at == NOW
        assert updated.escalation_reason

    @pytest.mark.asyncio
    async def test_foreign_agent_cannot_be_assigned(self, store, engine):
        foreign = await make_agent(store, "Foreign", AgentRole.SUPPORT,
                                   user_id=OTHER_ACTOR)
        ticket = await make_ticket(store, Priority.LOW)

        with pytest.raises(NotFound):
            await engine.update_ticket(ACTOR, ticket.id,
                                       TicketUpdate(agent_id=foreign.id), NOW)

    @pytest.mark.asyncio
    async def test_other_actor_cannot_update(self, store, engine):
        ticket = await make_ticket(store, Priority.LOW)

        with pytest.raises(NotFound):
            await engine.update_ticket(OTHER_ACTOR, ticket.id,
                                       TicketUpdate(status=TicketStatus.CLOSED),
                                       NOW)

    @pytest.mark.asyncio
    async def test_dashboard_counts(self, store, engine):
        await make_ticket(store, Priority.URGENT)
        await make_ticket(store, Priority.LOW, status=TicketStatus.RESOLVED)
        await make_ticket(store, Priority.LOW, user_id=OTHER_ACTOR)

        dashboard = await engine.support_dashboard(ACTOR)

        assert dashboard["total_tickets"] == 2
        assert dashboard["open_tickets"] == 1
        assert dashboard["resolved_tickets"] == 1
        assert dashboard["urgent_tickets"] == 1

    @pytest.mark.asyncio
    async def test_agent_performance_summary(self, store, engine):
        busy = await make_agent(store, "Busy", AgentRole.SUPPORT)
        idle = await make_agent(store, "Idle", AgentRole.SUPPORT)
        await make_agent(store, "Off", AgentRole.SUPPORT, is_active=False)
        await make_agent(store, "Foreign", AgentRole.SUPPORT,
                         user_id=OTHER_ACTOR)
        late = await make_ticket(store, Priority.URGENT, minutes_old=45,
                                 agent_id=busy.id)
        await make_ticket(store, Priority.LOW, status=TicketStatus.RESOLVED,
                          agent_id=busy.id)
        await engine.check_escalation(late, NOW)

        summary = {row["agent_id"]: row
                   for row in await engine.agent_performance(ACTOR)}

        assert set(summary) == {busy.id, idle.id}
        assert summary[busy.id]["total_tickets"] == 2
        assert summary[busy.id]["open_tickets"] == 1
        assert summary[busy.id]["resolved_tickets"] == 1
        assert summary[busy.id]["escalations"] == 1
        assert summary[idle.id]["total_tickets"] == 0
        assert summary[idle.id]["escalations"] == 0
        assert summary[idle.id]["avg_estimated_resolution_minutes"] == 0.0
