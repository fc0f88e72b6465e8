"""Shared fixtures for the routing engine tests."""

from datetime import datetime, timezone
from typing import List, Optional

import pytest

from agentchat.agents.classifier_agent import ClassifierAgent
from agentchat.models.schemas import (
    Agent, AgentRole, Chat, ChatType, Document, Message, SenderRole
)
from agentchat.rules.loader import load_rules
from agentchat.services import store as tables
from agentchat.services.store import InMemoryStore, to_row

ACTOR = "user-1"
OTHER_ACTOR = "user-2"
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def rules():
    return load_rules()


@pytest.fixture
def classifier(rules):
    return ClassifierAgent(rules)


@pytest.fixture
def store():
    """A fresh in-memory store per test."""
    return InMemoryStore()


async def make_agent(store, name: str = "Helper",
                     role: AgentRole = AgentRole.ASSISTANT,
                     user_id: str = ACTOR, system_prompt: str = "",
                     is_active: bool = True) -> Agent:
    agent = Agent(user_id=user_id, name=name, role=role,
                  system_prompt=system_prompt, is_active=is_active)
    await store.insert(tables.AGENTS, to_row(agent))
    return agent


async def make_chat(store, user_id: str = ACTOR,
                    agent_ids: Optional[List[str]] = None,
                    document_ids: Optional[List[str]] = None,
                    chat_type: ChatType = ChatType.GENERAL) -> Chat:
    chat = Chat(user_id=user_id, title="Test chat", chat_type=chat_type,
                agent_ids=agent_ids or [], document_ids=document_ids or [])
    await store.insert(tables.CHATS, to_row(chat))
    return chat


async def make_document(store, file_name: str = "manual.pdf",
                        user_id: str = ACTOR,
                        created_at: Optional[datetime] = None) -> Document:
    document = Document(user_id=user_id, file_name=file_name)
    if created_at:
        document.created_at = created_at
    await store.insert(tables.DOCUMENTS, to_row(document))
    return document


async def make_message(store, chat_id: str, content: str,
                       sender_role: SenderRole = SenderRole.USER) -> Message:
    message = Message(chat_id=chat_id, sender_role=sender_role,
                      content=content)
    await store.insert(tables.MESSAGES, to_row(message))
    return message
