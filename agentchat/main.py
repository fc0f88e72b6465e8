from fastapi import FastAPI, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Any, Optional
import logging
import uvicorn

from agentchat.agents.classifier_agent import classifier_agent
from agentchat.agents.context_agent import context_agent
from agentchat.agents.conversation_agent import conversation_agent
from agentchat.agents.learning_agent import learning_agent
from agentchat.agents.routing_agent import routing_agent
from agentchat.models.errors import InvalidInput, RoutingError
from agentchat.models.schemas import (
    Agent, AgentCreate, APIResponse, AutoRouteRequest, Chat, ChatCreate,
    ClassifyRequest, ContextAnalyzeRequest, ContextSwitchResult,
    ConversationCreate, Document, DocumentCreate, FeedbackCreate, Message,
    MessageCreate, TicketStatus, TicketUpdate
)
from agentchat.services import store as tables
from agentchat.services.store import data_store, load_owned, to_row
from agentchat.workflows.chat_workflow import chat_workflow
from config.logging_config import configure_logging
from config.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    configure_logging()
    logger.info("Starting Agent Chat Router API (store: %s)",
                settings.STORE_BACKEND)

    connected = await data_store.initialize()
    if not connected:
        logger.warning("Store backend not reachable. Requests will fail "
                       "until it is available.")

    yield

    logger.info("Shutting down API")
    await data_store.close()


# Create FastAPI app
app = FastAPI(
    title="Agent Chat Router",
    description="Intent, context and support routing for multi-agent chat",
    version="1.0.0",
    debug=settings.DEBUG,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RoutingError)
async def routing_error_handler(request: Request, exc: RoutingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path,
                     exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=APIResponse(success=False, message=exc.message,
                            error=exc.code, data=exc.details or None
                            ).model_dump()
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request,
                                   exc: RequestValidationError):
    """Malformed bodies use the same envelope as InvalidInput"""
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content=APIResponse(success=False, message="Invalid request",
                            error=InvalidInput.code,
                            data=jsonable_encoder(exc.errors())
                            ).model_dump()
    )


async def get_actor_id(x_user_id: str = Header(...)) -> str:
    """The authenticated user, resolved upstream and passed as a header"""
    if not x_user_id.strip():
        raise InvalidInput("X-User-Id header must not be empty")
    return x_user_id


def dump(value: Any) -> Any:
    if isinstance(value, list):
        return [dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return value


@app.get("/", response_model=APIResponse)
async def root():
    """Root endpoint"""
    return APIResponse(
        success=True,
        message="Agent Chat Router API is running",
        data={"version": "1.0.0", "status": "healthy"}
    )


@app.get("/health", response_model=APIResponse)
async def health_check():
    """Health check endpoint"""
    return APIResponse(
        success=True,
        message="Health check complete",
        data={
            "api": "healthy",
            "store": settings.STORE_BACKEND,
            "llm_service": "mock" if settings.MOCK_SERVICES else "gemini"
        }
    )


# ---------------------------
# Chats, agents, documents
# ---------------------------

@app.post("/chats", response_model=APIResponse)
async def create_chat(request: ChatCreate,
                      actor_id: str = Depends(get_actor_id)):
    """Create a new chat"""
    for agent_id in request.agent_ids:
        await load_owned(data_store, tables.AGENTS, agent_id, actor_id, Agent)
    for document_id in request.document_ids:
        await load_owned(data_store, tables.DOCUMENTS, document_id, actor_id,
                         Document)

    chat = Chat(user_id=actor_id, **request.model_dump())
    await data_store.insert(tables.CHATS, to_row(chat))
    return APIResponse(success=True, message="Chat created",
                       data=dump(chat))


@app.get("/chats", response_model=APIResponse)
async def list_chats(actor_id: str = Depends(get_actor_id)):
    rows = await data_store.query(tables.CHATS, {"user_id": actor_id},
                                  order_by="updated_at", descending=True)
    chats = [Chat.model_validate(row) for row in rows]
    return APIResponse(success=True, message=f"Found {len(chats)} chats",
                       data=dump(chats))


@app.get("/chats/{chat_id}", response_model=APIResponse)
async def get_chat(chat_id: str, actor_id: str = Depends(get_actor_id)):
    chat = await load_owned(data_store, tables.CHATS, chat_id, actor_id, Chat)
    return APIResponse(success=True, message="Chat found", data=dump(chat))


@app.get("/chats/{chat_id}/messages", response_model=APIResponse)
async def list_messages(chat_id: str, limit: Optional[int] = None,
                        actor_id: str = Depends(get_actor_id)):
    await load_owned(data_store, tables.CHATS, chat_id, actor_id, Chat)
    rows = await data_store.query(tables.MESSAGES, {"chat_id": chat_id},
                                  order_by="created_at", limit=limit)
    messages = [Message.model_validate(row) for row in rows]
    return APIResponse(success=True,
                       message=f"Found {len(messages)} messages",
                       data=dump(messages))


@app.post("/chats/{chat_id}/messages", response_model=APIResponse)
async def send_message(chat_id: str, request: MessageCreate,
                       actor_id: str = Depends(get_actor_id)):
    """Send a user message and get the routed answer"""
    result = await chat_workflow.send_message(actor_id, chat_id,
                                              request.content)
    return APIResponse(
        success=not result.failed,
        message="Response generated" if not result.failed
        else "Response generation failed",
        data=dump(result)
    )


@app.post("/agents", response_model=APIResponse)
async def create_agent(request: AgentCreate,
                       actor_id: str = Depends(get_actor_id)):
    agent = Agent(user_id=actor_id, **request.model_dump())
    await data_store.insert(tables.AGENTS, to_row(agent))
    return APIResponse(success=True, message="Agent created",
                       data=dump(agent))


@app.get("/agents", response_model=APIResponse)
async def list_agents(actor_id: str = Depends(get_actor_id)):
    rows = await data_store.query(tables.AGENTS, {"user_id": actor_id},
                                  order_by="created_at")
    agents = [Agent.model_validate(row) for row in rows]
    return APIResponse(success=True, message=f"Found {len(agents)} agents",
                       data=dump(agents))


@app.get("/agents/{agent_id}", response_model=APIResponse)
async def get_agent(agent_id: str, actor_id: str = Depends(get_actor_id)):
    agent = await load_owned(data_store, tables.AGENTS, agent_id, actor_id,
                             Agent)
    return APIResponse(success=True, message="Agent found", data=dump(agent))


@app.post("/documents", response_model=APIResponse)
async def register_document(request: DocumentCreate,
                            actor_id: str = Depends(get_actor_id)):
    """Register document metadata; content ingestion happens elsewhere"""
    document = Document(user_id=actor_id, file_name=request.file_name)
    await data_store.insert(tables.DOCUMENTS, to_row(document))
    return APIResponse(success=True, message="Document registered",
                       data=dump(document))


@app.get("/documents", response_model=APIResponse)
async def list_documents(actor_id: str = Depends(get_actor_id)):
    rows = await data_store.query(tables.DOCUMENTS, {"user_id": actor_id},
                                  order_by="created_at", descending=True)
    documents = [Document.model_validate(row) for row in rows]
    return APIResponse(success=True,
                       message=f"Found {len(documents)} documents",
                       data=dump(documents))


# ---------------------------
# Intent and context routing
# ---------------------------

@app.post("/intents/classify", response_model=APIResponse)
async def classify_intent(request: ClassifyRequest):
    """Classify the intent of a message"""
    result = classifier_agent.classify(request.message)
    return APIResponse(success=True, message=f"Intent: {result.intent}",
                       data=dump(result))


@app.post("/intents/insights", response_model=APIResponse)
async def classification_insights(request: ClassifyRequest):
    insights = classifier_agent.classification_insights(request.message)
    return APIResponse(success=True, message="Classification insights",
                       data=insights)


@app.post("/chats/{chat_id}/context/analyze", response_model=APIResponse)
async def analyze_context(chat_id: str, request: ContextAnalyzeRequest,
                          actor_id: str = Depends(get_actor_id)):
    """Decide whether the chat should switch context"""
    current = None
    if request.use_current_context:
        await load_owned(data_store, tables.CHATS, chat_id, actor_id, Chat)
        current = await context_agent.context_store.get_current(chat_id)
    result = await context_agent.analyze(actor_id, request.message, chat_id,
                                         current)
    return APIResponse(success=True, message=result.reasoning,
                       data=dump(result))


@app.post("/chats/{chat_id}/context/switch", response_model=APIResponse)
async def execute_context_switch(chat_id: str, request: ContextSwitchResult,
                                 actor_id: str = Depends(get_actor_id)):
    """Open a new context session for the chat"""
    session = await context_agent.execute_switch(actor_id, chat_id, request)
    return APIResponse(
        success=True,
        message=f"Switched to {session.current_context.value} context",
        data=dump(session)
    )


@app.get("/chats/{chat_id}/context", response_model=APIResponse)
async def get_context(chat_id: str, actor_id: str = Depends(get_actor_id)):
    await load_owned(data_store, tables.CHATS, chat_id, actor_id, Chat)
    current = await context_agent.context_store.get_current(chat_id)
    history = await context_agent.context_store.history(chat_id)
    return APIResponse(
        success=True,
        message="Context timeline",
        data={"current": dump(current), "history": dump(history)}
    )


@app.get("/analytics/context", response_model=APIResponse)
async def context_analytics(actor_id: str = Depends(get_actor_id)):
    rows = await data_store.query(tables.CHATS, {"user_id": actor_id})
    analytics = await context_agent.context_store.switch_analytics(
        [row["id"] for row in rows])
    return APIResponse(success=True, message="Context analytics",
                       data=analytics)


# ---------------------------
# Multi-agent conversations
# ---------------------------

@app.post("/conversations", response_model=APIResponse)
async def start_conversation(request: ConversationCreate,
                             actor_id: str = Depends(get_actor_id)):
    """Start a multi-agent conversation"""
    result = await conversation_agent.start(
        actor_id, request.chat_id, request.agent_ids, request.topic,
        request.max_turns)
    return APIResponse(success=True, message="Conversation started",
                       data=dump(result))


@app.get("/chats/{chat_id}/conversations/active", response_model=APIResponse)
async def active_conversation(chat_id: str,
                              actor_id: str = Depends(get_actor_id)):
    """Latest active agent conversation in the chat, if any"""
    state = await conversation_agent.get_active_for_chat(actor_id, chat_id)
    return APIResponse(
        success=True,
        message="Active conversation" if state else "No active conversation",
        data=dump(state)
    )


@app.get("/conversations/{conversation_id}", response_model=APIResponse)
async def conversation_status(conversation_id: str,
                              actor_id: str = Depends(get_actor_id)):
    status = await conversation_agent.get_status(actor_id, conversation_id)
    return APIResponse(success=True, message=f"Status: {status['status']}",
                       data=status)


@app.post("/conversations/{conversation_id}/continue",
          response_model=APIResponse)
async def continue_conversation(conversation_id: str,
                                actor_id: str = Depends(get_actor_id)):
    """Let the next agent speak"""
    result = await conversation_agent.continue_turn(actor_id,
                                                    conversation_id)
    return APIResponse(success=True, message=f"Turn {result.turn}",
                       data=dump(result))


@app.post("/conversations/{conversation_id}/end", response_model=APIResponse)
async def end_conversation(conversation_id: str,
                           actor_id: str = Depends(get_actor_id)):
    result = await conversation_agent.end(actor_id, conversation_id)
    return APIResponse(success=True, message="Conversation ended",
                       data=dump(result))


@app.post("/conversations/{conversation_id}/{action}",
          response_model=APIResponse)
async def change_conversation_status(conversation_id: str, action: str,
                                     actor_id: str = Depends(get_actor_id)):
    """Pause, resume or cancel a conversation"""
    handlers = {
        "pause": conversation_agent.pause,
        "resume": conversation_agent.resume,
        "cancel": conversation_agent.cancel
    }
    if action not in handlers:
        raise InvalidInput(f"Unknown conversation action: {action}")
    state = await handlers[action](actor_id, conversation_id)
    return APIResponse(success=True,
                       message=f"Conversation {state.status.value}",
                       data=dump(state))


# ---------------------------
# Support routing
# ---------------------------

@app.post("/support/route", response_model=APIResponse)
async def auto_route_message(request: AutoRouteRequest,
                             actor_id: str = Depends(get_actor_id)):
    """Classify a message, open a ticket if needed and assign an agent"""
    result = await routing_agent.auto_route(actor_id, request.message,
                                            request.chat_id)
    return APIResponse(success=True,
                       message=f"Routed as {result.intent_result.intent}",
                       data=dump(result))


@app.get("/support/tickets", response_model=APIResponse)
async def list_tickets(status: Optional[TicketStatus] = None,
                       actor_id: str = Depends(get_actor_id)):
    tickets = await routing_agent.list_tickets(actor_id, status)
    return APIResponse(success=True, message=f"Found {len(tickets)} tickets",
                       data=dump(tickets))


@app.patch("/support/tickets/{ticket_id}", response_model=APIResponse)
async def update_ticket(ticket_id: str, request: TicketUpdate,
                        actor_id: str = Depends(get_actor_id)):
    ticket = await routing_agent.update_ticket(actor_id, ticket_id, request)
    return APIResponse(success=True, message="Ticket updated",
                       data=dump(ticket))


@app.get("/support/tickets/{ticket_id}/escalations",
         response_model=APIResponse)
async def ticket_escalations(ticket_id: str,
                             actor_id: str = Depends(get_actor_id)):
    records = await routing_agent.escalations_for(actor_id, ticket_id)
    return APIResponse(success=True,
                       message=f"Found {len(records)} escalations",
                       data=dump(records))


@app.get("/support/dashboard", response_model=APIResponse)
async def support_dashboard(actor_id: str = Depends(get_actor_id)):
    dashboard = await routing_agent.support_dashboard(actor_id)
    return APIResponse(success=True, message="Support dashboard",
                       data=dashboard)


@app.get("/support/agents/performance", response_model=APIResponse)
async def agent_performance(actor_id: str = Depends(get_actor_id)):
    """Tickets, resolutions and escalations per active agent"""
    summary = await routing_agent.agent_performance(actor_id)
    return APIResponse(success=True, message="Agent performance",
                       data=summary)


# ---------------------------
# Feedback and learning
# ---------------------------

@app.post("/agents/{agent_id}/feedback", response_model=APIResponse)
async def record_feedback(agent_id: str, request: FeedbackCreate,
                          actor_id: str = Depends(get_actor_id)):
    """Record feedback and let the agent learn from it"""
    outcome = await learning_agent.process_feedback(actor_id, agent_id,
                                                    request)
    message = "Feedback recorded"
    if outcome.improvement:
        message += "; agent prompt improved"
    return APIResponse(success=True, message=message, data=dump(outcome))


@app.get("/agents/{agent_id}/feedback", response_model=APIResponse)
async def feedback_history(agent_id: str,
                           actor_id: str = Depends(get_actor_id)):
    records = await learning_agent.feedback_history(actor_id, agent_id)
    return APIResponse(success=True,
                       message=f"Found {len(records)} feedback records",
                       data=dump(records))


@app.get("/agents/{agent_id}/feedback/summary", response_model=APIResponse)
async def feedback_summary(agent_id: str,
                           actor_id: str = Depends(get_actor_id)):
    summary = await learning_agent.feedback_summary(actor_id, agent_id)
    return APIResponse(success=True, message="Feedback summary",
                       data=summary)


@app.get("/agents/{agent_id}/improvements", response_model=APIResponse)
async def improvement_logs(agent_id: str,
                           actor_id: str = Depends(get_actor_id)):
    logs = await learning_agent.improvement_logs(actor_id, agent_id)
    return APIResponse(success=True,
                       message=f"Found {len(logs)} improvements",
                       data=dump(logs))


if __name__ == "__main__":
    uvicorn.run(
        "agentchat.main:app",
        host=settings.FASTAPI_HOST,
        port=settings.FASTAPI_PORT,
        reload=settings.AUTO_RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
