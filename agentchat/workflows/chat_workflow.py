from typing import Dict, Any, List, Optional
from langgraph.graph import StateGraph, END
from typing_extensions import TypedDict
import logging

from agentchat.agents.classifier_agent import ClassifierAgent, \
    classifier_agent
from agentchat.agents.context_agent import ContextAnalyzer
from agentchat.agents.routing_agent import SupportRoutingEngine
from agentchat.models.errors import InvalidInput, PersistenceError, \
    UpstreamError
from agentchat.models.schemas import (
    Agent, AutoRouteResult, Chat, ContextSwitchResult, ConversationContext,
    IntentClassification, IntentResult, Message, SendMessageResult,
    SenderRole
)
from agentchat.services import store as tables
from agentchat.services.context_store import ContextStateStore
from agentchat.services.store import Store, data_store, load_owned, to_row
from config.settings import settings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ChatWorkflowState(TypedDict):
    """State for one user message passing through the chat pipeline"""
    actor_id: str
    chat: Chat
    content: str
    intent: Optional[IntentResult]
    current_context: Optional[ConversationContext]
    context_result: Optional[ContextSwitchResult]
    user_message: Optional[Message]
    responding_agent: Optional[Agent]
    response_text: Optional[str]
    response_meta: Dict[str, Any]
    error: Optional[str]
    assistant_message: Optional[Message]
    context_session: Optional[ConversationContext]
    route: Optional[AutoRouteResult]
    workflow_status: str


class ChatWorkflow:
    """LangGraph workflow answering a user message in a chat"""

    def __init__(self, store: Optional[Store] = None, llm=None,
                 classifier: Optional[ClassifierAgent] = None):
        self.store = store or data_store
        self.classifier = classifier or classifier_agent
        self.context_store = ContextStateStore(self.store)
        self.context_agent = ContextAnalyzer(
            self.store, self.classifier, self.context_store)
        self.routing_agent = SupportRoutingEngine(self.store, self.classifier)
        if llm is None:
            from agentchat.services.llm_service import create_llm_service
            llm = create_llm_service()
        self.llm = llm
        self.workflow = self._build_workflow()

    def _build_workflow(self):
        """Build the LangGraph workflow"""
        workflow = StateGraph(ChatWorkflowState)

        workflow.add_node("classify", self._classify_node)
        workflow.add_node("analyze_context", self._analyze_context_node)
        workflow.add_node("persist_user_message",
                          self._persist_user_message_node)
        workflow.add_node("generate_response", self._generate_response_node)
        workflow.add_node("apply_routing", self._apply_routing_node)
        workflow.add_node("record_failure", self._record_failure_node)
        workflow.add_node("finalize", self._finalize_node)

        workflow.set_entry_point("classify")
        workflow.add_edge("classify", "analyze_context")
        workflow.add_edge("analyze_context", "persist_user_message")
        workflow.add_edge("persist_user_message", "generate_response")

        # Failed generation skips every state change except the fallback
        workflow.add_conditional_edges(
            "generate_response",
            self._generation_outcome,
            {
                "success": "apply_routing",
                "failure": "record_failure"
            }
        )

        workflow.add_edge("apply_routing", "finalize")
        workflow.add_edge("record_failure", "finalize")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    async def _classify_node(self, state: ChatWorkflowState
                             ) -> ChatWorkflowState:
        """Classify the message intent"""
        state["intent"] = self.classifier.classify(state["content"])
        return state

    async def _analyze_context_node(self, state: ChatWorkflowState
                                    ) -> ChatWorkflowState:
        """Decide whether the chat should switch context"""
        chat = state["chat"]
        current = await self.context_store.get_current(chat.id)
        state["current_context"] = current
        state["context_result"] = await self.context_agent.analyze(
            state["actor_id"], state["content"], chat.id, current)
        return state

    async def _persist_user_message_node(self, state: ChatWorkflowState
                                         ) -> ChatWorkflowState:
        intent = state["intent"]
        message = Message(
            chat_id=state["chat"].id,
            sender_role=SenderRole.USER,
            content=state["content"],
            intent=intent.intent,
            confidence=intent.confidence
        )
        await self.store.insert(tables.MESSAGES, to_row(message))
        state["user_message"] = message
        return state

    async def _generate_response_node(self, state: ChatWorkflowState
                                      ) -> ChatWorkflowState:
        """Answer from the auto-response or the responding agent's LLM"""
        intent = state["intent"]
        if intent.auto_response:
            state["response_text"] = intent.auto_response
            state["response_meta"] = {"auto_response": True}
            return state

        agent = await self._responding_agent(state)
        state["responding_agent"] = agent
        system_prompt = agent.system_prompt if agent and agent.system_prompt \
            else DEFAULT_SYSTEM_PROMPT
        history = await self._chat_history(state["chat"].id,
                                           state["user_message"].id)

        try:
            completion = await self.llm.generate(system_prompt, history,
                                                 state["content"])
        except UpstreamError as e:
            logger.warning("Response generation failed for chat %s: %s",
                           state["chat"].id, e)
            state["error"] = e.message
            return state

        state["response_text"] = completion.text
        state["response_meta"] = {"usage": completion.usage}
        return state

    async def _apply_routing_node(self, state: ChatWorkflowState
                                  ) -> ChatWorkflowState:
        """Switch context, route support intents and store the answer"""
        chat = state["chat"]
        intent = state["intent"]
        result = state["context_result"]

        if result.should_switch:
            state["context_session"] = await self.context_store.switch(
                chat.id, result)

        if "support" in intent.intent or intent.requires_escalation:
            state["route"] = await self.routing_agent.auto_route(
                state["actor_id"], state["content"], chat.id)

        agent = state.get("responding_agent")
        route = state.get("route")
        if route and route.assigned_agent_id:
            agent_id = route.assigned_agent_id
        else:
            agent_id = agent.id if agent else None

        meta = dict(state.get("response_meta") or {})
        if result.should_switch:
            meta["context"] = result.new_context.value

        message = Message(
            chat_id=chat.id,
            sender_role=SenderRole.ASSISTANT,
            content=state["response_text"],
            agent_id=agent_id,
            intent=intent.intent,
            confidence=intent.confidence,
            meta=meta
        )
        await self.store.insert(tables.MESSAGES, to_row(message))
        state["assistant_message"] = message

        audit = IntentClassification(
            message_id=state["user_message"].id,
            intent=intent.intent,
            confidence=intent.confidence,
            suggested_agent_id=route.intent_result.suggested_agent_id
            if route else None
        )
        try:
            await self.store.insert(tables.INTENT_CLASSIFICATIONS,
                                    to_row(audit))
        except PersistenceError as e:
            logger.warning("Could not store intent audit for message %s: %s",
                           state["user_message"].id, e)
        return state

    async def _record_failure_node(self, state: ChatWorkflowState
                                   ) -> ChatWorkflowState:
        """Store the apologetic fallback; nothing else advances"""
        message = Message(
            chat_id=state["chat"].id,
            sender_role=SenderRole.ASSISTANT,
            content=settings.FALLBACK_RESPONSE,
            meta={"error": True, "reason": state.get("error")}
        )
        await self.store.insert(tables.MESSAGES, to_row(message))
        state["assistant_message"] = message
        return state

    async def _finalize_node(self, state: ChatWorkflowState
                             ) -> ChatWorkflowState:
        """Finalize the workflow"""
        state["workflow_status"] = "failed" if state.get("error") \
            else "completed"
        logger.info("Message in chat %s handled: intent=%s status=%s",
                    state["chat"].id, state["intent"].intent,
                    state["workflow_status"])
        return state

    def _generation_outcome(self, state: ChatWorkflowState) -> str:
        return "failure" if state.get("error") else "success"

    async def _responding_agent(self, state: ChatWorkflowState
                                ) -> Optional[Agent]:
        result = state["context_result"]
        current = state.get("current_context")
        chat = state["chat"]

        candidates = []
        if result.should_switch and result.suggested_agent:
            candidates.append(result.suggested_agent)
        if current and current.assigned_agent_id:
            candidates.append(current.assigned_agent_id)
        candidates.extend(chat.agent_ids)

        for agent_id in candidates:
            row = await self.store.get(tables.AGENTS, agent_id)
            if row and row.get("user_id") == state["actor_id"]:
                return Agent.model_validate(row)
        return None

    async def _chat_history(self, chat_id: str, exclude_id: str
                            ) -> List[Dict[str, str]]:
        rows = await self.store.query(tables.MESSAGES, {"chat_id": chat_id},
                                      order_by="created_at", descending=True,
                                      limit=settings.CHAT_HISTORY_LIMIT + 1)
        history = []
        for row in reversed(rows):
            if row["id"] == exclude_id or row.get("meta", {}).get("error"):
                continue
            role = "user" if row.get("sender_role") == SenderRole.USER \
                else "model"
            history.append({"role": role, "content": row.get("content", "")})
        return history[-settings.CHAT_HISTORY_LIMIT:]

    async def send_message(self, actor_id: str, chat_id: str,
                           content: str) -> SendMessageResult:
        """Process a user message through the workflow"""
        if not content or not content.strip():
            raise InvalidInput("Message content must not be empty")
        chat = await load_owned(self.store, tables.CHATS, chat_id, actor_id,
                                Chat)

        initial_state = ChatWorkflowState(
            actor_id=actor_id,
            chat=chat,
            content=content,
            intent=None,
            current_context=None,
            context_result=None,
            user_message=None,
            responding_agent=None,
            response_text=None,
            response_meta={},
            error=None,
            assistant_message=None,
            context_session=None,
            route=None,
            workflow_status="started"
        )
        final_state = await self.workflow.ainvoke(initial_state)

        return SendMessageResult(
            user_message=final_state["user_message"],
            assistant_message=final_state["assistant_message"],
            intent=final_state["intent"],
            context=final_state["context_result"],
            context_session=final_state.get("context_session"),
            route=final_state.get("route"),
            failed=final_state["workflow_status"] == "failed"
        )


# Global chat workflow instance
chat_workflow = ChatWorkflow()
