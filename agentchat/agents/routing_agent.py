from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta
import logging
import random

from agentchat.agents.classifier_agent import ClassifierAgent, \
    classifier_agent
from agentchat.models.errors import ConcurrencyConflict, NotFound, \
    PersistenceError
from agentchat.models.schemas import (
    Agent, AgentAssignment, AutoRouteResult, Chat, ChatType, EscalationRecord,
    EscalationType, Priority, SupportTicket, TicketClassification,
    TicketStatus, TicketUpdate, utc_now
)
from agentchat.rules.loader import find_keywords
from agentchat.services import store as tables
from agentchat.services.store import Store, data_store, load_owned, to_row
from config.settings import settings

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100
WORKLOAD_STATUSES = [TicketStatus.OPEN, TicketStatus.IN_PROGRESS]


class SupportRoutingEngine:
    """Agent responsible for support tickets, assignment and escalation"""

    def __init__(self, store: Optional[Store] = None,
                 classifier: Optional[ClassifierAgent] = None,
                 rng: Optional[random.Random] = None):
        self.name = "Support Routing Engine"
        self.store = store or data_store
        self.classifier = classifier or classifier_agent
        self.rng = rng or random.Random()

    def classify_ticket(self, message: str) -> TicketClassification:
        """
        Classify a support message into category, priority and complexity
        """
        text = (message or "").lower()
        ticket_rules = self.classifier.rules.ticket
        default = ticket_rules.default

        classification = TicketClassification(
            category=default.category,
            priority=default.priority,
            complexity=default.complexity,
            estimated_resolution_minutes=default.estimated_minutes,
            requires_human_escalation=False
        )

        for rule in ticket_rules.rules:
            if not rule.matches(text):
                continue
            outcome = next((tier for tier in rule.tiers if tier.matches(text)),
                           rule)
            classification = TicketClassification(
                category=rule.category,
                priority=outcome.priority,
                complexity=outcome.complexity,
                estimated_resolution_minutes=outcome.estimated_minutes,
                requires_human_escalation=outcome.requires_escalation
            )
            break

        # Rule: high priority or urgency markers always escalate
        if classification.priority == Priority.HIGH or \
                find_keywords(text, ticket_rules.urgent_keywords):
            classification.priority = Priority.URGENT
            classification.requires_human_escalation = True

        return classification

    async def auto_route(self, actor_id: str, message: str,
                         chat_id: str) -> AutoRouteResult:
        """
        Classify a message, open a ticket if needed and assign an agent
        """
        chat = await load_owned(self.store, tables.CHATS, chat_id, actor_id,
                                Chat)
        intent = self.classifier.classify(message)
        classification = self.classify_ticket(message)

        needs_ticket = "support" in intent.intent or \
            classification.requires_human_escalation

        agent = None
        if intent.suggested_agent_role:
            agent = await self.select_agent_by_workload(
                actor_id, [intent.suggested_agent_role.value])
        if agent is None and needs_ticket:
            agent = await self.select_agent_by_workload(
                actor_id, settings.SUPPORT_AGENT_ROLES)
        if agent:
            intent.suggested_agent_id = agent.id

        ticket = None
        if needs_ticket:
            ticket = await self._create_ticket(chat, message, intent,
                                               classification)

        if agent:
            await self._assign_agent(chat, agent, intent.reasoning)

        logger.info("Routed message in chat %s: intent=%s ticket=%s agent=%s",
                    chat_id, intent.intent, ticket.id if ticket else None,
                    agent.id if agent else None)
        return AutoRouteResult(
            intent_result=intent,
            ticket_classification=classification,
            auto_response=intent.auto_response,
            ticket=ticket,
            assigned_agent_id=agent.id if agent else None
        )

    async def select_agent_by_workload(self, actor_id: str,
                                       roles: List[str]) -> Optional[Agent]:
        """
        Pick the active agent with the fewest open tickets.

        Ties are broken randomly so load spreads across equal agents.
        """
        rows = await self.store.query(tables.AGENTS,
                                      {"user_id": actor_id, "is_active": True})
        candidates = [Agent.model_validate(row) for row in rows]
        candidates = [agent for agent in candidates
                      if agent.role.value in roles]
        if not candidates:
            return None

        workloads = {}
        for agent in candidates:
            workloads[agent.id] = await self.open_ticket_count(agent.id)

        lowest = min(workloads.values())
        least_busy = [agent for agent in candidates
                      if workloads[agent.id] == lowest]
        least_busy.sort(key=lambda agent: agent.id)
        return self.rng.choice(least_busy)

    async def open_ticket_count(self, agent_id: str) -> int:
        count = 0
        for status in WORKLOAD_STATUSES:
            rows = await self.store.query(tables.SUPPORT_TICKETS,
                                          {"agent_id": agent_id,
                                           "status": status})
            count += len(rows)
        return count

    async def list_tickets(self, actor_id: str,
                           status: Optional[TicketStatus] = None
                           ) -> List[SupportTicket]:
        filters: Dict[str, Any] = {"user_id": actor_id}
        if status:
            filters["status"] = status
        rows = await self.store.query(tables.SUPPORT_TICKETS, filters,
                                      order_by="created_at", descending=True)
        return [SupportTicket.model_validate(row) for row in rows]

    async def update_ticket(self, actor_id: str, ticket_id: str,
                            patch: TicketUpdate,
                            now: Optional[datetime] = None) -> SupportTicket:
        """
        Apply a ticket update, then run the escalation check on the result
        """
        now = now or utc_now()
        ticket = await load_owned(self.store, tables.SUPPORT_TICKETS,
                                  ticket_id, actor_id, SupportTicket)
        changes = patch.model_dump(exclude_none=True)
        if "agent_id" in changes:
            await load_owned(self.store, tables.AGENTS, changes["agent_id"],
                             actor_id, Agent)
        changes["updated_at"] = now

        rows = await self.store.update(tables.SUPPORT_TICKETS,
                                       {"id": ticket.id}, changes,
                                       expected_version=ticket.version)
        if not rows:
            raise NotFound(f"Ticket {ticket_id} not found")
        updated = SupportTicket.model_validate(rows[0])

        escalation = await self.check_escalation(updated, now)
        if escalation:
            return await load_owned(self.store, tables.SUPPORT_TICKETS,
                                    ticket_id, actor_id, SupportTicket)
        return updated

    def escalation_trigger(self, ticket: SupportTicket, now: datetime):
        """
        Return (type, reason) when the ticket needs escalating, else None
        """
        if ticket.escalated_at is not None:
            return None

        trigger = None
        age = now - ticket.created_at
        if ticket.status == TicketStatus.OPEN:
            if ticket.priority == Priority.URGENT and age > timedelta(
                    minutes=settings.URGENT_ESCALATION_MINUTES):
                trigger = (EscalationType.TIMEOUT,
                           f"Urgent ticket not addressed within "
                           f"{settings.URGENT_ESCALATION_MINUTES} minutes")
            elif ticket.priority == Priority.HIGH and age > timedelta(
                    minutes=settings.HIGH_ESCALATION_MINUTES):
                trigger = (EscalationType.TIMEOUT,
                           f"High priority ticket not addressed within "
                           f"{settings.HIGH_ESCALATION_MINUTES // 60} hours")

        if ticket.requires_escalation:
            trigger = (EscalationType.COMPLEXITY,
                       "Ticket marked for escalation due to complexity")
        return trigger

    async def check_escalation(self, ticket: SupportTicket,
                               now: Optional[datetime] = None
                               ) -> Optional[EscalationRecord]:
        """
        Escalate the ticket if a trigger fires; never escalates twice
        """
        now = now or utc_now()
        trigger = self.escalation_trigger(ticket, now)
        if trigger is None:
            return None

        escalation_type, reason = trigger
        rows = await self.store.update(
            tables.SUPPORT_TICKETS, {"id": ticket.id},
            {"escalated_at": now, "escalation_reason": reason,
             "updated_at": now},
            expected_version=ticket.version)
        if not rows:
            raise NotFound(f"Ticket {ticket.id} not found")

        record = EscalationRecord(
            ticket_id=ticket.id,
            from_agent_id=ticket.agent_id,
            escalation_type=escalation_type,
            reason=reason,
            created_at=now
        )
        await self.store.insert(tables.SUPPORT_ESCALATIONS, to_row(record))
        logger.warning("Escalated ticket %s: %s", ticket.id, reason)
        return record

    async def sweep_escalations(self, now: Optional[datetime] = None
                                ) -> List[EscalationRecord]:
        """
        Escalate every ticket whose trigger fired since it was last touched
        """
        now = now or utc_now()
        rows = await self.store.query(tables.SUPPORT_TICKETS,
                                      {"escalated_at": None})
        escalations = []
        for row in rows:
            ticket = SupportTicket.model_validate(row)
            try:
                record = await self.check_escalation(ticket, now)
            except ConcurrencyConflict as e:
                logger.info("Skipping ticket %s changed during sweep: %s",
                            ticket.id, e)
                continue
            if record:
                escalations.append(record)

        logger.info("Escalation sweep escalated %d of %d tickets",
                    len(escalations), len(rows))
        return escalations

    async def escalations_for(self, actor_id: str, ticket_id: str
                              ) -> List[EscalationRecord]:
        await load_owned(self.store, tables.SUPPORT_TICKETS, ticket_id,
                         actor_id, SupportTicket)
        rows = await self.store.query(tables.SUPPORT_ESCALATIONS,
                                      {"ticket_id": ticket_id},
                                      order_by="created_at")
        return [EscalationRecord.model_validate(row) for row in rows]

    async def support_dashboard(self, actor_id: str) -> Dict[str, Any]:
        """
        Ticket counts by status, priority and agent for one user
        """
        tickets = await self.list_tickets(actor_id)
        by_status: Dict[str, int] = {}
        by_priority: Dict[str, int] = {}
        by_agent: Dict[str, int] = {}
        for ticket in tickets:
            by_status[ticket.status.value] = \
                by_status.get(ticket.status.value, 0) + 1
            by_priority[ticket.priority.value] = \
                by_priority.get(ticket.priority.value, 0) + 1
            if ticket.agent_id:
                by_agent[ticket.agent_id] = by_agent.get(ticket.agent_id,
                                                         0) + 1

        estimates = [ticket.estimated_resolution_time for ticket in tickets]
        return {
            "total_tickets": len(tickets),
            "open_tickets": by_status.get(TicketStatus.OPEN.value, 0),
            "resolved_tickets": by_status.get(TicketStatus.RESOLVED.value, 0),
            "urgent_tickets": by_priority.get(Priority.URGENT.value, 0),
            "escalated_tickets": sum(1 for ticket in tickets
                                     if ticket.escalated_at is not None),
            "avg_estimated_resolution_minutes": round(
                sum(estimates) / len(estimates), 1) if estimates else 0.0,
            "by_status": by_status,
            "by_priority": by_priority,
            "by_agent": by_agent
        }

    async def agent_performance(self, actor_id: str) -> List[Dict[str, Any]]:
        """
        Per active agent: tickets held, resolved tickets and escalations
        raised on them
        """
        rows = await self.store.query(tables.AGENTS,
                                      {"user_id": actor_id, "is_active": True},
                                      order_by="created_at")
        summary = []
        for agent in (Agent.model_validate(row) for row in rows):
            tickets = [SupportTicket.model_validate(row) for row in
                       await self.store.query(tables.SUPPORT_TICKETS,
                                              {"agent_id": agent.id})]
            escalations = await self.store.query(tables.SUPPORT_ESCALATIONS,
                                                 {"from_agent_id": agent.id})
            estimates = [ticket.estimated_resolution_time
                         for ticket in tickets]
            summary.append({
                "agent_id": agent.id,
                "agent_name": agent.name,
                "role": agent.role.value,
                "total_tickets": len(tickets),
                "open_tickets": sum(1 for ticket in tickets
                                    if ticket.status in WORKLOAD_STATUSES),
                "resolved_tickets": sum(
                    1 for ticket in tickets
                    if ticket.status == TicketStatus.RESOLVED),
                "escalations": len(escalations),
                "avg_estimated_resolution_minutes": round(
                    sum(estimates) / len(estimates), 1) if estimates else 0.0
            })
        return summary

    async def _create_ticket(self, chat: Chat, message: str, intent,
                             classification: TicketClassification
                             ) -> SupportTicket:
        title = message[:TITLE_LENGTH]
        if len(message) > TITLE_LENGTH:
            title += "..."
        estimate = classification.estimated_resolution_minutes

        ticket = SupportTicket(
            chat_id=chat.id,
            user_id=chat.user_id,
            title=title,
            description=message,
            category=classification.category,
            priority=classification.priority,
            agent_id=intent.suggested_agent_id,
            complexity=classification.complexity,
            estimated_resolution_time=estimate,
            requires_escalation=classification.requires_human_escalation,
            metadata={
                "intent": intent.intent,
                "confidence": intent.confidence
            }
        )
        await self.store.insert(tables.SUPPORT_TICKETS, to_row(ticket))
        return ticket

    async def _assign_agent(self, chat: Chat, agent: Agent, reason: str):
        await self.store.update(
            tables.CHATS, {"id": chat.id},
            {"agent_ids": [agent.id], "chat_type": ChatType.SUPPORT,
             "updated_at": utc_now()},
            expected_version=chat.version)

        assignment = AgentAssignment(chat_id=chat.id, agent_id=agent.id,
                                     assignment_reason=reason)
        try:
            await self.store.insert(tables.AGENT_ASSIGNMENTS,
                                    to_row(assignment))
        except PersistenceError as e:
            logger.warning("Could not log assignment of %s to chat %s: %s",
                           agent.id, chat.id, e)


# Global support routing engine instance
routing_agent = SupportRoutingEngine()
