"""Tests for the multi-agent conversation engine."""

from unittest.mock import AsyncMock

import pytest

from agentchat.agents.conversation_agent import MultiAgentConversationEngine
from agentchat.agents.response_generator import (
    LLMResponseGenerator, TemplateResponseGenerator
)
from agentchat.models.errors import (
    InvalidInput, InvalidStateTransition, NotActive, NotFound,
    PersistenceError, UpstreamError
)
from agentchat.models.schemas import (
    AgentRole, ChatType, CompletionResult, ConversationStatus, SenderRole
)
from agentchat.services import store as tables
from agentchat.services.store import InMemoryStore
from tests.conftest import ACTOR, OTHER_ACTOR, make_agent, make_chat


class FlakyTranscriptStore(InMemoryStore):
    """Fails chat message inserts while ``fail_messages`` is set"""

    fail_messages = False

    async def insert(self, table, row):
        if table == tables.MESSAGES and self.fail_messages:
            raise PersistenceError("messages index unavailable")
        return await super().insert(table, row)


@pytest.fixture
def engine(store):
    return MultiAgentConversationEngine(store, TemplateResponseGenerator())


async def setup_agents(store, count=2):
    roles = [AgentRole.RESEARCHER, AgentRole.CODER, AgentRole.WRITER]
    agents = [await make_agent(store, f"Agent {index}", roles[index])
              for index in range(count)]
    chat = await make_chat(store, agent_ids=[a.id for a in agents])
    return chat, agents


class TestStart:
    """Tests for starting a conversation."""

    @pytest.mark.asyncio
    async def test_single_agent_is_rejected_without_writes(self, store,
                                                           engine):
        chat, agents = await setup_agents(store, 1)

        with pytest.raises(InvalidInput):
            await engine.start(ACTOR, chat.id, [agents[0].id], "Caching")

        assert await store.query(tables.AGENT_CONVERSATIONS) == []
        assert await store.query(tables.MESSAGES) == []

    @pytest.mark.asyncio
    async def test_non_positive_max_turns_is_rejected(self, store, engine):
        chat, agents = await setup_agents(store)

        with pytest.raises(InvalidInput):
            await engine.start(ACTOR, chat.id, [a.id for a in agents],
                               "Caching", max_turns=0)

    @pytest.mark.asyncio
    async def test_start_posts_opening_and_marks_chat(self, store, engine):
        chat, agents = await setup_agents(store)

        result = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                    "Caching strategies", max_turns=4)

        assert result.next_agent == agents[1].id
        assert result.turn == 1
        assert "Caching strategies" in result.first_message
        stored_chat = await store.get(tables.CHATS, chat.id)
        assert stored_chat["chat_type"] == ChatType.MULTI_AGENT
        messages = await store.query(tables.MESSAGES, {"chat_id": chat.id})
        assert len(messages) == 1
        assert messages[0]["sender_role"] == SenderRole.AGENT
        assert messages[0]["meta"]["turn"] == 0

    @pytest.mark.asyncio
    async def test_opening_agent_also_takes_first_turn(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)

        status = await engine.get_status(ACTOR, started.conversation_id)
        turn = await engine.continue_turn(ACTOR, started.conversation_id)

        assert started.next_agent == agents[1].id
        assert status["current_turn"] == 0
        assert status["next_agent"] == agents[0].id
        assert turn.agent_id == agents[0].id
        assert turn.next_agent == agents[1].id

    @pytest.mark.asyncio
    async def test_foreign_agent_is_not_found(self, store, engine):
        chat, agents = await setup_agents(store)
        foreign = await make_agent(store, "Foreign", user_id=OTHER_ACTOR)

        with pytest.raises(NotFound):
            await engine.start(ACTOR, chat.id, [agents[0].id, foreign.id],
                               "Caching")

    @pytest.mark.asyncio
    async def test_failed_opening_stores_nothing(self, store):
        chat, agents = await setup_agents(store)
        generator = AsyncMock()
        generator.generate.side_effect = UpstreamError("model unavailable")
        engine = MultiAgentConversationEngine(store, generator)

        with pytest.raises(UpstreamError):
            await engine.start(ACTOR, chat.id, [a.id for a in agents],
                               "Caching")

        assert await store.query(tables.AGENT_CONVERSATIONS) == []
        assert (await store.get(tables.CHATS, chat.id))["chat_type"] == \
            ChatType.GENERAL


class TestContinue:
    """Tests for continuing a conversation turn by turn."""

    @pytest.mark.asyncio
    async def test_conversation_completes_at_max_turns(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=5)

        results = [await engine.continue_turn(ACTOR, started.conversation_id)
                   for _ in range(5)]

        assert [r.turn for r in results] == [1, 2, 3, 4, 5]
        assert [r.should_continue for r in results] == \
            [True, True, True, True, False]
        assert results[-1].next_agent is None
        status = await engine.get_status(ACTOR, started.conversation_id)
        assert status["status"] == "completed"
        with pytest.raises(NotActive):
            await engine.continue_turn(ACTOR, started.conversation_id)

    @pytest.mark.asyncio
    async def test_agents_speak_in_rotation(self, store, engine):
        chat, agents = await setup_agents(store, 3)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=6)

        speakers = [
            (await engine.continue_turn(ACTOR,
                                        started.conversation_id)).agent_id
            for _ in range(6)
        ]

        ids = [a.id for a in agents]
        assert speakers == ids + ids

    @pytest.mark.asyncio
    async def test_turn_number_appears_in_template_reply(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)

        await engine.continue_turn(ACTOR, started.conversation_id)
        result = await engine.continue_turn(ACTOR, started.conversation_id)

        assert "This is my turn 2" in result.agent_message
        assert "Building on the discussion" in result.agent_message

    @pytest.mark.asyncio
    async def test_failed_generation_leaves_state_untouched(self, store):
        chat, agents = await setup_agents(store)
        generator = AsyncMock()
        generator.generate.return_value = "Opening"
        engine = MultiAgentConversationEngine(store, generator)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)
        before = await store.get(tables.AGENT_CONVERSATIONS,
                                 started.conversation_id)

        generator.generate.side_effect = UpstreamError("model unavailable")
        with pytest.raises(UpstreamError):
            await engine.continue_turn(ACTOR, started.conversation_id)

        after = await store.get(tables.AGENT_CONVERSATIONS,
                                started.conversation_id)
        assert after == before

    @pytest.mark.asyncio
    async def test_unstored_turn_is_rolled_back(self):
        store = FlakyTranscriptStore()
        engine = MultiAgentConversationEngine(store,
                                              TemplateResponseGenerator())
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)

        store.fail_messages = True
        with pytest.raises(PersistenceError):
            await engine.continue_turn(ACTOR, started.conversation_id)

        state = await store.get(tables.AGENT_CONVERSATIONS,
                                started.conversation_id)
        assert state["current_turn"] == 0
        assert len(state["messages"]) == 1
        assert state["status"] == ConversationStatus.ACTIVE

        store.fail_messages = False
        retried = await engine.continue_turn(ACTOR, started.conversation_id)
        assert retried.turn == 1
        messages = await store.query(tables.MESSAGES, {"chat_id": chat.id})
        assert len(messages) == 2

    @pytest.mark.asyncio
    async def test_paused_conversation_cannot_continue(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)

        paused = await engine.pause(ACTOR, started.conversation_id)
        assert paused.status == ConversationStatus.PAUSED
        with pytest.raises(NotActive):
            await engine.continue_turn(ACTOR, started.conversation_id)

        resumed = await engine.resume(ACTOR, started.conversation_id)
        assert resumed.status == ConversationStatus.ACTIVE
        result = await engine.continue_turn(ACTOR, started.conversation_id)
        assert result.turn == 1


class TestEnd:
    """Tests for ending and cancelling conversations."""

    @pytest.mark.asyncio
    async def test_end_is_idempotent(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching", max_turns=3)
        await engine.continue_turn(ACTOR, started.conversation_id)

        first = await engine.end(ACTOR, started.conversation_id)
        second = await engine.end(ACTOR, started.conversation_id)

        assert first == second
        assert first.total_turns == 1
        assert first.total_messages == 2
        summaries = await store.query(tables.MESSAGES,
                                      {"chat_id": chat.id,
                                       "intent": "conversation_summary"})
        assert len(summaries) == 1

    @pytest.mark.asyncio
    async def test_cancelled_conversation_cannot_end(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching")

        await engine.cancel(ACTOR, started.conversation_id)

        with pytest.raises(InvalidStateTransition):
            await engine.end(ACTOR, started.conversation_id)
        with pytest.raises(InvalidStateTransition):
            await engine.resume(ACTOR, started.conversation_id)

    @pytest.mark.asyncio
    async def test_other_actor_cannot_see_conversation(self, store, engine):
        chat, agents = await setup_agents(store)
        started = await engine.start(ACTOR, chat.id, [a.id for a in agents],
                                     "Caching")

        with pytest.raises(NotFound):
            await engine.get_status(OTHER_ACTOR, started.conversation_id)


class TestLLMResponseGenerator:
    """Tests for the completion-backed generator."""

    @pytest.mark.asyncio
    async def test_uses_agent_system_prompt(self, store):
        agent = await make_agent(store, "Coder", AgentRole.CODER,
                                 system_prompt="You write Python.")
        llm = AsyncMock()
        llm.generate.return_value = CompletionResult(text="Use a dict.")

        reply = await LLMResponseGenerator(llm).generate(
            agent, "Caching", ["first point"], 1)

        assert reply == "Use a dict."
        system_prompt, history, instruction = llm.generate.call_args.args
        assert system_prompt == "You write Python."
        assert history == [{"role": "model", "content": "first point"}]
        assert "Caching" in instruction
