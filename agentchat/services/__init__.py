"""
Core Services

- Store: async row storage (in-memory or Elasticsearch)
- Context State Store: per-chat context session timeline
- LLM Service: Google Gemini integration, with a mock for offline runs
"""

from agentchat.services.store import data_store
from agentchat.services.context_store import ContextStateStore
from agentchat.services.llm_service import llm_service

__all__ = [
    "data_store",
    "ContextStateStore",
    "llm_service"
]
