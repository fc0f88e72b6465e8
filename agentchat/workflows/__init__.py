"""
LangGraph Workflows

The message pipeline that classifies, routes and answers user messages.
"""

from agentchat.workflows.chat_workflow import chat_workflow

__all__ = ["chat_workflow"]
