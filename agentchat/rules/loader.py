"""
Routing rule tables

Keyword lists and their effects are kept as data (JSON) so they can be
versioned, extended and tested independently of the dispatch code. Each
table is validated here and exposes first-match helpers; order in the
file is evaluation order.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, model_validator

from agentchat.models.errors import InvalidInput
from agentchat.models.schemas import (
    AgentRole, Priority, TicketCategory, TicketComplexity
)

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "default_rules.json"


def find_keywords(text: str, keywords: List[str]) -> List[str]:
    """Return the keywords contained in an already lower-cased text"""
    return [keyword for keyword in keywords if keyword in text]


class _KeywordSet(BaseModel):
    keywords: List[str] = []

    @model_validator(mode="after")
    def _lowercase_keywords(self):
        self.keywords = [keyword.lower() for keyword in self.keywords]
        return self

    def matches(self, text: str) -> List[str]:
        return find_keywords(text, self.keywords)


class IntentTier(_KeywordSet):
    priority: Priority
    confidence: float = Field(ge=0.0, le=1.0)


class IntentRule(_KeywordSet):
    intent: str
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    priority: Optional[Priority] = None
    tiers: List[IntentTier] = []
    requires_escalation: bool = False
    suggested_role: Optional[AgentRole] = None
    auto_response: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self):
        if not self.tiers and (self.confidence is None
                               or self.priority is None):
            raise ValueError(
                f"rule '{self.intent}' needs confidence and priority "
                f"or a list of tiers")
        return self

    def evaluate(self, text: str
                 ) -> Optional[Tuple[float, Priority, List[str]]]:
        """
        Match the rule against a lower-cased message.

        Tiered rules are checked most severe tier first, so the highest
        matching tier decides the confidence and priority.
        """
        if self.tiers:
            for tier in self.tiers:
                matched = tier.matches(text)
                if matched:
                    return tier.confidence, tier.priority, matched
            return None

        matched = self.matches(text)
        if matched:
            return self.confidence, self.priority, matched
        return None


class DefaultIntent(BaseModel):
    intent: str = "general"
    confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    empty_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM
    suggested_role: Optional[AgentRole] = None


class ContextRules(BaseModel):
    document_keywords: List[str]
    history_keywords: List[str]
    agent_task_keywords: List[str]
    technical_keywords: List[str]
    rag_retention_keywords: List[str]
    history_retention_keywords: List[str]
    stop_words: List[str] = []

    @model_validator(mode="after")
    def _lowercase_keywords(self):
        for name in ("document_keywords", "history_keywords",
                     "agent_task_keywords", "technical_keywords",
                     "rag_retention_keywords",
                     "history_retention_keywords", "stop_words"):
            setattr(self, name, [word.lower() for word in getattr(self, name)])
        return self


class TicketTier(_KeywordSet):
    complexity: TicketComplexity
    priority: Priority
    estimated_minutes: int = Field(ge=0)
    requires_escalation: bool = False


class TicketRule(_KeywordSet):
    category: TicketCategory
    tiers: List[TicketTier] = []
    complexity: TicketComplexity
    priority: Priority
    estimated_minutes: int = Field(ge=0)
    requires_escalation: bool = False


class TicketDefault(BaseModel):
    category: TicketCategory = TicketCategory.GENERAL
    complexity: TicketComplexity = TicketComplexity.MODERATE
    priority: Priority = Priority.MEDIUM
    estimated_minutes: int = 30


class TicketRules(BaseModel):
    rules: List[TicketRule]
    default: TicketDefault = TicketDefault()
    urgent_keywords: List[str] = []

    @model_validator(mode="after")
    def _lowercase_urgent(self):
        self.urgent_keywords = [k.lower() for k in self.urgent_keywords]
        return self


class FeedbackIssue(_KeywordSet):
    issue: str
    reason: str
    prompt_section: str


class RoutingRules(BaseModel):
    version: str = "1.0"
    intent_rules: List[IntentRule]
    default_intent: DefaultIntent = DefaultIntent()
    context: ContextRules
    ticket: TicketRules
    feedback_issues: List[FeedbackIssue] = []
    correction_section_header: str = "**Special instructions from user corrections:**"
    correction_reason: str = "Added user correction instructions"


def load_rules(path: Optional[str] = None) -> RoutingRules:
    """
    Load and validate a rule table file.

    Falls back to the rules shipped with the package when no path is given.
    """
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    try:
        raw = json.loads(rules_path.read_text(encoding="utf-8"))
        rules = RoutingRules.model_validate(raw)
    except FileNotFoundError:
        raise InvalidInput(f"Rule file not found: {rules_path}")
    except (json.JSONDecodeError, ValidationError) as e:
        raise InvalidInput(f"Invalid rule file {rules_path}: {e}")

    logger.info("Loaded routing rules v%s from %s (%d intent rules)",
                rules.version, rules_path, len(rules.intent_rules))
    return rules


@lru_cache(maxsize=1)
def get_rules() -> RoutingRules:
    """Rules selected by settings, loaded once per process"""
    from config.settings import settings

    return load_rules(settings.ROUTING_RULES_PATH)
