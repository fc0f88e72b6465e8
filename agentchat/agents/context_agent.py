from typing import List, Optional
from datetime import datetime, timedelta
import logging

from agentchat.agents.classifier_agent import ClassifierAgent, \
    classifier_agent
from agentchat.models.schemas import (
    Agent, Chat, ContextSwitchResult, ContextType, ConversationContext,
    Document, MessageRef, utc_now
)
from agentchat.rules.loader import find_keywords
from agentchat.services import store as tables
from agentchat.services.context_store import ContextStateStore
from agentchat.services.store import Store, data_store, load_owned
from config.settings import settings

logger = logging.getLogger(__name__)

STAY_SCORE = 0.7
SWITCH_BELOW = 0.6
COOLDOWN_BONUS = 0.2


class ContextAnalyzer:
    """Agent responsible for deciding which context a chat should be in"""

    def __init__(self, store: Optional[Store] = None,
                 classifier: Optional[ClassifierAgent] = None,
                 context_store: Optional[ContextStateStore] = None,
                 recent_documents_limit: Optional[int] = None):
        self.name = "Context Analyzer"
        self.store = store or data_store
        self.classifier = classifier or classifier_agent
        self.context_store = context_store or ContextStateStore(self.store)
        self.recent_documents_limit = recent_documents_limit \
            or settings.RECENT_DOCUMENTS_LIMIT

    async def analyze(self, actor_id: str, message: str, chat_id: str,
                      current_context: Optional[ConversationContext] = None,
                      now: Optional[datetime] = None) -> ContextSwitchResult:
        """
        Decide whether the chat should switch context for this message.

        Keyword families are tried in order (document, history,
        agent/technical) and the first one that produces a target wins;
        otherwise the current context is scored for effectiveness.
        """
        now = now or utc_now()
        chat = await load_owned(self.store, tables.CHATS, chat_id, actor_id,
                                Chat)
        rules = self.classifier.rules.context
        text = (message or "").lower()
        current_type = current_context.current_context if current_context \
            else ContextType.GENERAL

        # Rule 1: document references
        matched = find_keywords(text, rules.document_keywords)
        if matched:
            documents = await self._documents_for(actor_id, chat)
            return self._target(
                current_type, ContextType.RAG, 0.85,
                f"Document reference detected: {', '.join(matched)}",
                suggested_documents=documents)

        # Rule 2: references to earlier conversation
        matched = find_keywords(text, rules.history_keywords)
        if matched:
            history = await self.find_relevant_history(chat_id, message)
            return self._target(
                current_type, ContextType.HISTORY, 0.80,
                f"History reference detected: {', '.join(matched)}",
                relevant_history=history)

        # Rule 3: specialist tasks go to a matching agent
        if find_keywords(text, rules.agent_task_keywords) or \
                find_keywords(text, rules.technical_keywords):
            intent = self.classifier.classify(message)
            agent = await self._agent_for_role(actor_id, intent)
            if agent:
                if current_type == ContextType.AGENT and current_context \
                        and current_context.assigned_agent_id == agent.id:
                    return self._stay(current_context,
                                      f"Already working with {agent.name}")
                return ContextSwitchResult(
                    should_switch=True,
                    new_context=ContextType.AGENT,
                    confidence=intent.confidence,
                    reasoning=f"Specialist task ({intent.intent}) for "
                              f"{agent.name}",
                    suggested_agent=agent.id
                )

        # Rule 4: current context effectiveness
        if current_context:
            decayed = self._effectiveness(current_context, text, now)
            if decayed:
                return decayed

        return self._stay(current_context, "Current context remains effective")

    async def execute_switch(self, actor_id: str, chat_id: str,
                             result: ContextSwitchResult,
                             now: Optional[datetime] = None
                             ) -> ConversationContext:
        """
        Open a new context session for the chat.

        The suggested agent and documents must belong to the caller.
        """
        await load_owned(self.store, tables.CHATS, chat_id, actor_id, Chat)
        if result.suggested_agent:
            await load_owned(self.store, tables.AGENTS,
                             result.suggested_agent, actor_id, Agent)
        for document_id in result.suggested_documents:
            await load_owned(self.store, tables.DOCUMENTS, document_id,
                             actor_id, Document)
        return await self.context_store.switch(chat_id, result, now)

    async def find_relevant_history(self, chat_id: str,
                                    message: str) -> List[MessageRef]:
        """
        Score recent chat messages by the share of key terms they contain
        """
        terms = self.key_terms(message)
        if not terms:
            return []

        rows = await self.store.query(tables.MESSAGES, {"chat_id": chat_id},
                                      order_by="created_at", descending=True,
                                      limit=settings.HISTORY_SCAN_LIMIT)
        scored = []
        for row in rows:
            content = row.get("content", "")
            lowered = content.lower()
            relevance = sum(1 for term in terms if term in lowered) / len(terms)
            if relevance > settings.HISTORY_MIN_RELEVANCE:
                scored.append(MessageRef(message_id=row["id"],
                                         content=content,
                                         relevance_score=relevance))

        scored.sort(key=lambda ref: ref.relevance_score, reverse=True)
        return scored[:settings.HISTORY_RESULTS_LIMIT]

    def key_terms(self, message: str) -> List[str]:
        stop_words = set(self.classifier.rules.context.stop_words)
        terms = [word for word in (message or "").lower().split()
                 if len(word) >= 3 and word not in stop_words]
        return terms[:settings.HISTORY_KEY_TERMS]

    async def _documents_for(self, actor_id: str, chat: Chat) -> List[str]:
        if chat.document_ids:
            return list(chat.document_ids)
        rows = await self.store.query(tables.DOCUMENTS, {"user_id": actor_id},
                                      order_by="created_at", descending=True,
                                      limit=self.recent_documents_limit)
        return [row["id"] for row in rows]

    async def _agent_for_role(self, actor_id: str, intent) -> Optional[Agent]:
        if not intent.suggested_agent_role:
            return None
        rows = await self.store.query(
            tables.AGENTS,
            {"user_id": actor_id, "role": intent.suggested_agent_role,
             "is_active": True},
            order_by="created_at", limit=1)
        return Agent.model_validate(rows[0]) if rows else None

    def _effectiveness(self, current_context: ConversationContext, text: str,
                       now: datetime) -> Optional[ContextSwitchResult]:
        rules = self.classifier.rules.context
        score = STAY_SCORE
        suggestion = None

        if current_context.current_context == ContextType.RAG and \
                not find_keywords(text, rules.rag_retention_keywords) and \
                not current_context.active_documents:
            score, suggestion = 0.4, (ContextType.GENERAL, 0.7)
        elif current_context.current_context == ContextType.HISTORY and \
                not find_keywords(text, rules.history_retention_keywords):
            score, suggestion = 0.5, (ContextType.GENERAL, 0.6)

        cooldown = timedelta(minutes=settings.SWITCH_COOLDOWN_MINUTES)
        last_switch = current_context.last_switch_time
        if last_switch is not None and now - last_switch < cooldown:
            score += COOLDOWN_BONUS

        if suggestion and score < SWITCH_BELOW:
            new_context, confidence = suggestion
            return ContextSwitchResult(
                should_switch=True,
                new_context=new_context,
                confidence=confidence,
                reasoning=f"{current_context.current_context.value} context "
                          f"no longer effective (score {score:.2f})"
            )
        return None

    def _target(self, current_type: ContextType, target: ContextType,
                confidence: float, reasoning: str,
                **suggestions) -> ContextSwitchResult:
        return ContextSwitchResult(
            should_switch=current_type != target,
            new_context=target,
            confidence=confidence,
            reasoning=reasoning if current_type != target
            else f"Already in {target.value} context. {reasoning}",
            **suggestions
        )

    def _stay(self, current_context: Optional[ConversationContext],
              reasoning: str) -> ContextSwitchResult:
        if current_context is None:
            return ContextSwitchResult(should_switch=False,
                                       new_context=ContextType.GENERAL,
                                       confidence=0.5, reasoning=reasoning)
        return ContextSwitchResult(
            should_switch=False,
            new_context=current_context.current_context,
            confidence=current_context.context_score,
            reasoning=reasoning,
            suggested_documents=current_context.active_documents,
            suggested_agent=current_context.assigned_agent_id
        )


# Global context analyzer instance
context_agent = ContextAnalyzer()
