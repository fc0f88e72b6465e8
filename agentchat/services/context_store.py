from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from agentchat.models.errors import ConcurrencyConflict, PersistenceError
from agentchat.models.schemas import (
    ContextSwitchRecord, ContextSwitchResult, ContextType,
    ConversationContext, utc_now
)
from agentchat.services import store as tables
from agentchat.services.store import Store, data_store, to_row

logger = logging.getLogger(__name__)


class ContextStateStore:
    """
    Per-chat timeline of context sessions.

    At most one session per chat is open (no ``session_end``); opening a
    new one closes the previous one at the same instant, so sessions never
    overlap.
    """

    def __init__(self, store: Optional[Store] = None):
        self.store = store or data_store

    async def get_current(self, chat_id: str
                          ) -> Optional[ConversationContext]:
        rows = await self.store.query(
            tables.CONVERSATION_CONTEXTS,
            {"chat_id": chat_id, "session_end": None},
            order_by="last_switch_time", descending=True, limit=1)
        return ConversationContext.model_validate(rows[0]) if rows else None

    async def switch(self, chat_id: str, result: ContextSwitchResult,
                     now: Optional[datetime] = None) -> ConversationContext:
        """
        Close the active session and open one for ``result.new_context``.

        The close is version-checked, so two switches racing on one chat
        surface ConcurrencyConflict instead of leaving two open sessions.
        """
        now = now or utc_now()
        current = await self.get_current(chat_id)

        if current:
            closed = await self.store.update(
                tables.CONVERSATION_CONTEXTS, {"id": current.id},
                {"session_end": now}, expected_version=current.version)
            if not closed:
                raise ConcurrencyConflict(
                    f"Context session {current.id} disappeared during switch",
                    {"chat_id": chat_id})

        session = ConversationContext(
            chat_id=chat_id,
            current_context=result.new_context,
            active_documents=result.suggested_documents,
            relevant_history=result.relevant_history,
            assigned_agent_id=result.suggested_agent,
            context_score=result.confidence,
            last_switch_time=now,
            reasoning=result.reasoning
        )
        await self.store.insert(tables.CONVERSATION_CONTEXTS, to_row(session))

        record = ContextSwitchRecord(
            chat_id=chat_id,
            from_context=current.current_context if current
            else ContextType.GENERAL,
            to_context=result.new_context,
            trigger_message=result.reasoning,
            confidence=result.confidence,
            metadata={
                "suggested_documents": result.suggested_documents,
                "suggested_agent": result.suggested_agent,
                "previous_session_id": current.id if current else None
            },
            created_at=now
        )
        try:
            await self.store.insert(tables.CONTEXT_SWITCHES, to_row(record))
        except PersistenceError as e:
            logger.warning("Could not log context switch for chat %s: %s",
                           chat_id, e)

        logger.info("Chat %s switched context %s -> %s (%.2f)", chat_id,
                    record.from_context.value, result.new_context.value,
                    result.confidence)
        return session

    async def history(self, chat_id: str) -> List[ConversationContext]:
        """Session timeline of a chat, oldest first"""
        rows = await self.store.query(tables.CONVERSATION_CONTEXTS,
                                      {"chat_id": chat_id},
                                      order_by="last_switch_time")
        return [ConversationContext.model_validate(row) for row in rows]

    async def switch_log(self, chat_id: str) -> List[ContextSwitchRecord]:
        rows = await self.store.query(tables.CONTEXT_SWITCHES,
                                      {"chat_id": chat_id},
                                      order_by="created_at")
        return [ContextSwitchRecord.model_validate(row) for row in rows]

    async def switch_analytics(self, chat_ids: List[str]) -> Dict[str, Any]:
        """
        Switch patterns and session durations over a set of chats.

        Returns switch counts with average confidence per
        ``from -> to`` pair, and per context type the number of closed
        sessions with their average duration in minutes.
        """
        pairs: Dict[str, Dict[str, Any]] = {}
        durations: Dict[str, List[float]] = {}

        for chat_id in chat_ids:
            for record in await self.switch_log(chat_id):
                key = f"{record.from_context.value}->{record.to_context.value}"
                entry = pairs.setdefault(key, {"count": 0, "confidence": 0.0})
                entry["count"] += 1
                entry["confidence"] += record.confidence

            for session in await self.history(chat_id):
                if session.session_end is None or \
                        session.last_switch_time is None:
                    continue
                minutes = (session.session_end -
                           session.last_switch_time).total_seconds() / 60
                durations.setdefault(session.current_context.value,
                                     []).append(minutes)

        return {
            "switches": {
                key: {
                    "switch_count": entry["count"],
                    "avg_confidence": round(
                        entry["confidence"] / entry["count"], 3)
                }
                for key, entry in pairs.items()
            },
            "sessions": {
                context: {
                    "total_sessions": len(values),
                    "avg_duration_minutes": round(
                        sum(values) / len(values), 2)
                }
                for context, values in durations.items()
            }
        }
