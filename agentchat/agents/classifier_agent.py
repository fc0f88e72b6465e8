from typing import Dict, Any, Optional
import logging

from agentchat.models.schemas import IntentResult
from agentchat.rules.loader import RoutingRules, get_rules

logger = logging.getLogger(__name__)


class ClassifierAgent:
    """Agent responsible for detecting the intent of incoming messages"""

    def __init__(self, rules: Optional[RoutingRules] = None):
        self.name = "Classifier Agent"
        self._rules = rules

    @property
    def rules(self) -> RoutingRules:
        if self._rules is None:
            self._rules = get_rules()
        return self._rules

    def classify(self, message: str) -> IntentResult:
        """
        Classify a message against the ordered intent rules.

        The first matching rule wins; nothing matching falls back to the
        general intent. Pure, never raises for string input.
        """
        text = (message or "").lower()
        default = self.rules.default_intent

        if not text.strip():
            return IntentResult(
                intent=default.intent,
                confidence=default.empty_confidence,
                priority=default.priority,
                suggested_agent_role=default.suggested_role,
                reasoning="Empty message"
            )

        for rule in self.rules.intent_rules:
            outcome = rule.evaluate(text)
            if outcome is None:
                continue

            confidence, priority, matched = outcome
            logger.debug("Message matched intent %s on %s", rule.intent,
                         matched)
            return IntentResult(
                intent=rule.intent,
                confidence=confidence,
                priority=priority,
                suggested_agent_role=rule.suggested_role,
                requires_escalation=rule.requires_escalation,
                auto_response=rule.auto_response,
                reasoning=f"Matched {rule.intent} keywords: "
                          f"{', '.join(matched)}",
                matched_keywords=matched
            )

        return IntentResult(
            intent=default.intent,
            confidence=default.confidence,
            priority=default.priority,
            suggested_agent_role=default.suggested_role,
            reasoning="No specific intent keywords found"
        )

    def classification_insights(self, message: str) -> Dict[str, Any]:
        """
        Every rule that matched the message, not only the winner
        """
        text = (message or "").lower()
        winner = self.classify(message)

        candidates = []
        for position, rule in enumerate(self.rules.intent_rules):
            outcome = rule.evaluate(text)
            if outcome is None:
                continue
            confidence, priority, matched = outcome
            candidates.append({
                "intent": rule.intent,
                "rule_order": position,
                "confidence": confidence,
                "priority": priority.value,
                "keywords_matched": matched
            })

        return {
            "text_length": len(message or ""),
            "selected_intent": winner.intent,
            "candidates": candidates,
            "ambiguous": len(candidates) > 1
        }


# Global classifier agent instance
classifier_agent = ClassifierAgent()
