"""
Routing Agents

This package contains the engines that decide where a message goes:
- Classifier Agent: Detects message intent from keyword rules
- Context Analyzer: Decides context switches for a chat
- Conversation Engine: Runs bounded multi-agent dialogues
- Support Routing Engine: Tickets, agent assignment and escalation
- Feedback Improvement Engine: Refines agent prompts from feedback
"""

from agentchat.agents.classifier_agent import classifier_agent
from agentchat.agents.context_agent import context_agent
from agentchat.agents.conversation_agent import conversation_agent
from agentchat.agents.routing_agent import routing_agent
from agentchat.agents.learning_agent import learning_agent

__all__ = [
    "classifier_agent",
    "context_agent",
    "conversation_agent",
    "routing_agent",
    "learning_agent"
]
