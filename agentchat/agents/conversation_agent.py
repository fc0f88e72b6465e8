from typing import Dict, Any, List, Optional
import logging

from agentchat.agents.response_generator import (
    ResponseGenerator, create_response_generator
)
from agentchat.models.errors import (
    InvalidInput, InvalidStateTransition, NotActive, NotFound,
    PersistenceError
)
from agentchat.models.schemas import (
    Agent, Chat, ChatType, ConversationEndResult, ConversationStartResult,
    ConversationStatus, ConversationTurn, ConversationTurnResult, Message,
    MultiAgentConversationState, SenderRole, utc_now
)
from agentchat.services import store as tables
from agentchat.services.store import Store, data_store, load_owned, to_row
from config.settings import settings

logger = logging.getLogger(__name__)

AGENT_MESSAGE_CONFIDENCE = 0.95

# Allowed status transitions; completed and cancelled are terminal
TRANSITIONS = {
    ConversationStatus.ACTIVE: {ConversationStatus.PAUSED,
                                ConversationStatus.COMPLETED,
                                ConversationStatus.CANCELLED},
    ConversationStatus.PAUSED: {ConversationStatus.ACTIVE,
                                ConversationStatus.COMPLETED,
                                ConversationStatus.CANCELLED},
    ConversationStatus.COMPLETED: set(),
    ConversationStatus.CANCELLED: set(),
}


class MultiAgentConversationEngine:
    """Agent responsible for bounded round-robin dialogues between agents"""

    def __init__(self, store: Optional[Store] = None,
                 generator: Optional[ResponseGenerator] = None):
        self.name = "Multi-Agent Conversation Engine"
        self.store = store or data_store
        self.generator = generator or create_response_generator()

    async def start(self, actor_id: str, chat_id: str, agent_ids: List[str],
                    topic: str, max_turns: Optional[int] = None
                    ) -> ConversationStartResult:
        """
        Start a conversation between at least two agents.

        The first agent's opening is generated before anything is stored,
        so a failed generation leaves no conversation behind.

        ``next_agent`` in the result names the second agent as the upcoming
        voice, while the stored state is still at turn 0; the first
        continue_turn therefore lets the opening agent speak again, and
        get_status reports that agent as next.
        """
        max_turns = settings.DEFAULT_MAX_TURNS if max_turns is None \
            else max_turns
        if len(agent_ids) < 2:
            raise InvalidInput("At least 2 agents are required")
        if max_turns <= 0:
            raise InvalidInput("max_turns must be positive")
        if not topic or not topic.strip():
            raise InvalidInput("topic must not be empty")

        chat = await load_owned(self.store, tables.CHATS, chat_id, actor_id,
                                Chat)
        agents = [await load_owned(self.store, tables.AGENTS, agent_id,
                                   actor_id, Agent)
                  for agent_id in agent_ids]

        opening = await self.generator.generate(agents[0], topic, [], 0)

        state = MultiAgentConversationState(
            chat_id=chat_id,
            user_id=actor_id,
            agent_ids=agent_ids,
            max_turns=max_turns,
            topic=topic,
            messages=[ConversationTurn(agent_id=agents[0].id,
                                       content=opening, turn=0)]
        )
        await self.store.insert(tables.AGENT_CONVERSATIONS, to_row(state))
        await self.store.update(
            tables.CHATS, {"id": chat.id},
            {"chat_type": ChatType.MULTI_AGENT, "updated_at": utc_now()},
            expected_version=chat.version)
        await self._persist_message(state, agents[0].id, opening, 0)

        logger.info("Started conversation %s in chat %s with %d agents",
                    state.id, chat_id, len(agent_ids))
        return ConversationStartResult(
            conversation_id=state.id,
            first_message=opening,
            next_agent=agent_ids[1],
            turn=1
        )

    async def continue_turn(self, actor_id: str, conversation_id: str
                            ) -> ConversationTurnResult:
        """
        Let the next agent in rotation speak.

        State is written with a version check after generation succeeds;
        a failed generation changes nothing. If the transcript message
        cannot be stored the state write is rolled back.
        """
        state = await self._load(actor_id, conversation_id)
        if state.status != ConversationStatus.ACTIVE or \
                state.current_turn >= state.max_turns:
            raise NotActive(
                f"Conversation {conversation_id} is {state.status.value} "
                f"at turn {state.current_turn}/{state.max_turns}")

        speaker_id = state.next_agent_id
        agent = await load_owned(self.store, tables.AGENTS, speaker_id,
                                 actor_id, Agent)
        context = [turn.content for turn in state.messages]
        context = context[-settings.CONVERSATION_CONTEXT_TURNS:]

        content = await self.generator.generate(agent, state.topic, context,
                                                state.current_turn)

        new_turn = state.current_turn + 1
        should_continue = new_turn < state.max_turns
        messages = state.messages + [
            ConversationTurn(agent_id=speaker_id, content=content,
                             turn=new_turn)
        ]
        row = await self._write(state, {
            "current_turn": new_turn,
            "status": ConversationStatus.ACTIVE if should_continue
            else ConversationStatus.COMPLETED,
            "messages": [turn.model_dump() for turn in messages],
            "updated_at": utc_now()
        })
        try:
            await self._persist_message(state, speaker_id, content, new_turn)
        except PersistenceError:
            logger.warning("Could not store turn %d of conversation %s, "
                           "rolling back", new_turn, state.id)
            await self.store.update(
                tables.AGENT_CONVERSATIONS, {"id": state.id},
                {"current_turn": state.current_turn,
                 "status": state.status,
                 "messages": [turn.model_dump() for turn in state.messages],
                 "updated_at": state.updated_at},
                expected_version=row["version"])
            raise

        next_agent = state.agent_ids[new_turn % len(state.agent_ids)] \
            if should_continue else None
        return ConversationTurnResult(
            agent_message=content,
            agent_id=speaker_id,
            next_agent=next_agent,
            turn=new_turn,
            should_continue=should_continue
        )

    async def end(self, actor_id: str, conversation_id: str
                  ) -> ConversationEndResult:
        """
        Complete the conversation and post its summary once
        """
        state = await self._load(actor_id, conversation_id)
        if state.status == ConversationStatus.CANCELLED:
            raise InvalidStateTransition(
                f"Conversation {conversation_id} was cancelled")

        summary = state.summary
        if summary is None:
            summary = (f'Agent conversation finished. Discussed '
                       f'{len(state.messages)} messages on topic '
                       f'"{state.topic}".')
            await self._write(state, {
                "status": ConversationStatus.COMPLETED,
                "summary": summary,
                "updated_at": utc_now()
            })
            await self.store.insert(tables.MESSAGES, to_row(Message(
                chat_id=state.chat_id,
                sender_role=SenderRole.SYSTEM,
                content=summary,
                intent="conversation_summary",
                confidence=1.0,
                meta={"conversation_id": state.id, "type": "summary"}
            )))
            logger.info("Conversation %s ended after %d turns", state.id,
                        state.current_turn)

        return ConversationEndResult(
            summary=summary,
            total_turns=state.current_turn,
            total_messages=len(state.messages)
        )

    async def get_status(self, actor_id: str, conversation_id: str
                         ) -> Dict[str, Any]:
        state = await self._load(actor_id, conversation_id)
        can_continue = state.status == ConversationStatus.ACTIVE and \
            state.current_turn < state.max_turns
        return {
            "conversation_id": state.id,
            "chat_id": state.chat_id,
            "status": state.status.value,
            "topic": state.topic,
            "agent_ids": state.agent_ids,
            "current_turn": state.current_turn,
            "max_turns": state.max_turns,
            "next_agent": state.next_agent_id if can_continue else None,
            "messages": [turn.model_dump(mode="json")
                         for turn in state.messages],
            "summary": state.summary
        }

    async def pause(self, actor_id: str, conversation_id: str
                    ) -> MultiAgentConversationState:
        return await self._transition(actor_id, conversation_id,
                                      ConversationStatus.PAUSED)

    async def resume(self, actor_id: str, conversation_id: str
                     ) -> MultiAgentConversationState:
        return await self._transition(actor_id, conversation_id,
                                      ConversationStatus.ACTIVE)

    async def cancel(self, actor_id: str, conversation_id: str
                     ) -> MultiAgentConversationState:
        return await self._transition(actor_id, conversation_id,
                                      ConversationStatus.CANCELLED)

    async def get_active_for_chat(self, actor_id: str, chat_id: str
                                  ) -> Optional[MultiAgentConversationState]:
        await load_owned(self.store, tables.CHATS, chat_id, actor_id, Chat)
        rows = await self.store.query(
            tables.AGENT_CONVERSATIONS,
            {"chat_id": chat_id, "status": ConversationStatus.ACTIVE},
            order_by="created_at", descending=True, limit=1)
        return MultiAgentConversationState.model_validate(rows[0]) \
            if rows else None

    async def _transition(self, actor_id: str, conversation_id: str,
                          target: ConversationStatus
                          ) -> MultiAgentConversationState:
        state = await self._load(actor_id, conversation_id)
        if target not in TRANSITIONS[state.status]:
            raise InvalidStateTransition(
                f"Cannot move conversation from {state.status.value} "
                f"to {target.value}")
        row = await self._write(state, {"status": target,
                                        "updated_at": utc_now()})
        logger.info("Conversation %s is now %s", state.id, target.value)
        return MultiAgentConversationState.model_validate(row)

    async def _load(self, actor_id: str, conversation_id: str
                    ) -> MultiAgentConversationState:
        return await load_owned(self.store, tables.AGENT_CONVERSATIONS,
                                conversation_id, actor_id,
                                MultiAgentConversationState)

    async def _write(self, state: MultiAgentConversationState,
                     patch: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.store.update(tables.AGENT_CONVERSATIONS,
                                       {"id": state.id}, patch,
                                       expected_version=state.version)
        if not rows:
            raise NotFound(f"Conversation {state.id} not found")
        return rows[0]

    async def _persist_message(self, state: MultiAgentConversationState,
                               agent_id: str, content: str, turn: int):
        await self.store.insert(tables.MESSAGES, to_row(Message(
            chat_id=state.chat_id,
            sender_role=SenderRole.AGENT,
            content=content,
            agent_id=agent_id,
            intent="agent_conversation",
            confidence=AGENT_MESSAGE_CONFIDENCE,
            meta={"conversation_id": state.id, "turn": turn}
        )))


# Global conversation engine instance
conversation_agent = MultiAgentConversationEngine()
