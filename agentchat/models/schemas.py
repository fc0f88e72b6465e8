from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SenderRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    AGENT = "agent"
    SYSTEM = "system"


class ChatType(str, Enum):
    GENERAL = "general"
    RAG = "rag"
    MULTI_AGENT = "multi_agent"
    SUPPORT = "support"


class AgentRole(str, Enum):
    ASSISTANT = "assistant"
    RESEARCHER = "researcher"
    SUPPORT = "support"
    CODER = "coder"
    WRITER = "writer"
    ANALYST = "analyst"


class ContextType(str, Enum):
    GENERAL = "general"
    RAG = "rag"
    HISTORY = "history"
    AGENT = "agent"
    SUPPORT = "support"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FeedbackType(str, Enum):
    CORRECTION = "correction"
    IMPROVEMENT = "improvement"
    PRAISE = "praise"
    SUGGESTION = "suggestion"


class TicketCategory(str, Enum):
    TECHNICAL = "technical"
    BILLING = "billing"
    GENERAL = "general"
    FEATURE_REQUEST = "feature_request"
    BUG_REPORT = "bug_report"


class TicketComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING_CUSTOMER = "waiting_customer"
    RESOLVED = "resolved"
    CLOSED = "closed"


class EscalationType(str, Enum):
    COMPLEXITY = "complexity"
    PRIORITY = "priority"
    TIMEOUT = "timeout"
    MANUAL = "manual"


# ---------------------------
# Persisted entities
# ---------------------------

class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    sender_role: SenderRole
    content: str
    agent_id: Optional[str] = None
    intent: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    meta: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class Chat(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    title: str
    chat_type: ChatType = ChatType.GENERAL
    agent_ids: List[str] = []
    document_ids: List[str] = []
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1


class Document(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    file_name: str
    created_at: datetime = Field(default_factory=utc_now)


class Agent(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    role: AgentRole = AgentRole.ASSISTANT
    system_prompt: str = ""
    is_active: bool = True
    performance_metrics: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1


class MessageRef(BaseModel):
    message_id: str
    content: str = ""
    relevance_score: float = Field(ge=0.0, le=1.0)


class ConversationContext(BaseModel):
    """One context session of a chat; active while session_end is None"""
    id: str = Field(default_factory=new_id)
    chat_id: str
    current_context: ContextType = ContextType.GENERAL
    active_documents: List[str] = []
    relevant_history: List[MessageRef] = []
    assigned_agent_id: Optional[str] = None
    context_score: float = Field(default=0.5, ge=0.0, le=1.0)
    last_switch_time: Optional[datetime] = None
    session_end: Optional[datetime] = None
    reasoning: str = ""
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.session_end is None


class ContextSwitchRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    from_context: ContextType
    to_context: ContextType
    trigger_message: str
    confidence: float = Field(ge=0.0, le=1.0)
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class ConversationTurn(BaseModel):
    agent_id: str
    content: str
    turn: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=utc_now)


class MultiAgentConversationState(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    user_id: str
    agent_ids: List[str] = Field(min_length=2)
    current_turn: int = Field(default=0, ge=0)
    max_turns: int = Field(gt=0)
    topic: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    messages: List[ConversationTurn] = []
    summary: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1

    @property
    def next_agent_id(self) -> str:
        return self.agent_ids[self.current_turn % len(self.agent_ids)]


class FeedbackRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    user_id: Optional[str] = None
    message_id: Optional[str] = None
    feedback_type: FeedbackType
    user_feedback: str
    original_response: Optional[str] = None
    suggested_response: Optional[str] = None
    confidence_score: float = Field(ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class PromptImprovementLog(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    old_prompt: str
    new_prompt: str
    improvement_reason: str
    feedback_ids: List[str] = []
    performance_before: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)


class ImprovementNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: str
    trigger_reason: str
    feedback_count: int
    negative_ratio: float
    processed: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class IntentClassification(BaseModel):
    id: str = Field(default_factory=new_id)
    message_id: str
    intent: str
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_agent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class SupportTicket(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    user_id: str
    title: str
    description: str
    category: TicketCategory
    priority: Priority
    status: TicketStatus = TicketStatus.OPEN
    agent_id: Optional[str] = None
    complexity: TicketComplexity = TicketComplexity.MODERATE
    estimated_resolution_time: int = 30
    requires_escalation: bool = False
    escalated_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1


class AgentAssignment(BaseModel):
    id: str = Field(default_factory=new_id)
    chat_id: str
    agent_id: str
    assignment_reason: str = ""
    status: str = "active"
    assigned_at: datetime = Field(default_factory=utc_now)


class EscalationRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    ticket_id: str
    from_agent_id: Optional[str] = None
    escalation_type: EscalationType
    reason: str
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------
# Decision results
# ---------------------------

class IntentResult(BaseModel):
    intent: str
    confidence: float = Field(ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM
    suggested_agent_role: Optional[AgentRole] = None
    suggested_agent_id: Optional[str] = None
    requires_escalation: bool = False
    auto_response: Optional[str] = None
    reasoning: str = ""
    matched_keywords: List[str] = []


class ContextSwitchResult(BaseModel):
    should_switch: bool
    new_context: ContextType
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    suggested_documents: List[str] = []
    relevant_history: List[MessageRef] = []
    suggested_agent: Optional[str] = None


class TicketClassification(BaseModel):
    category: TicketCategory
    priority: Priority
    complexity: TicketComplexity
    estimated_resolution_minutes: int
    requires_human_escalation: bool


class AutoRouteResult(BaseModel):
    intent_result: IntentResult
    ticket_classification: TicketClassification
    auto_response: Optional[str] = None
    ticket: Optional[SupportTicket] = None
    assigned_agent_id: Optional[str] = None


class ConversationStartResult(BaseModel):
    conversation_id: str
    first_message: str
    next_agent: str
    turn: int = 1


class ConversationTurnResult(BaseModel):
    agent_message: str
    agent_id: str
    next_agent: Optional[str] = None
    turn: int
    should_continue: bool


class ConversationEndResult(BaseModel):
    summary: str
    total_turns: int
    total_messages: int


class FeedbackAnalysis(BaseModel):
    should_improve: bool
    negative_feedback_ratio: float
    average_confidence: float
    common_issues: List[str] = []
    total_feedback: int


class FeedbackOutcome(BaseModel):
    feedback: FeedbackRecord
    improvement: Optional[PromptImprovementLog] = None
    notification: Optional[ImprovementNotification] = None


class CompletionResult(BaseModel):
    text: str
    usage: Dict[str, Any] = {}


class SendMessageResult(BaseModel):
    user_message: Message
    assistant_message: Message
    intent: IntentResult
    context: ContextSwitchResult
    context_session: Optional[ConversationContext] = None
    route: Optional[AutoRouteResult] = None
    failed: bool = False


# ---------------------------
# Request bodies
# ---------------------------

class ChatCreate(BaseModel):
    title: str
    chat_type: ChatType = ChatType.GENERAL
    agent_ids: List[str] = []
    document_ids: List[str] = []


class AgentCreate(BaseModel):
    name: str
    role: AgentRole = AgentRole.ASSISTANT
    system_prompt: str = ""
    is_active: bool = True


class DocumentCreate(BaseModel):
    file_name: str


class MessageCreate(BaseModel):
    content: str


class ClassifyRequest(BaseModel):
    message: str


class ContextAnalyzeRequest(BaseModel):
    message: str
    use_current_context: bool = True


class ConversationCreate(BaseModel):
    chat_id: str
    agent_ids: List[str]
    topic: str
    max_turns: int = 5


class AutoRouteRequest(BaseModel):
    chat_id: str
    message: str


class TicketUpdate(BaseModel):
    status: Optional[TicketStatus] = None
    priority: Optional[Priority] = None
    agent_id: Optional[str] = None
    requires_escalation: Optional[bool] = None


class FeedbackCreate(BaseModel):
    feedback_type: FeedbackType
    user_feedback: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    message_id: Optional[str] = None
    original_response: Optional[str] = None
    suggested_response: Optional[str] = None

    @field_validator("user_feedback")
    @classmethod
    def feedback_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_feedback must not be empty")
        return value


class APIResponse(BaseModel):
    success: bool
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None
