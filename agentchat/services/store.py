"""
Storage abstraction

Rows are plain dicts keyed by ``id``. Every row carries an integer
``version`` that starts at 1 and is bumped on each update; passing
``expected_version`` to :meth:`Store.update` turns the write into a
compare-and-set.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel

from agentchat.models.errors import ConcurrencyConflict, NotFound
from config.settings import settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Table names
CHATS = "chats"
MESSAGES = "messages"
AGENTS = "agents"
DOCUMENTS = "documents"
INTENT_CLASSIFICATIONS = "intent_classifications"
CONVERSATION_CONTEXTS = "conversation_contexts"
CONTEXT_SWITCHES = "context_switches"
AGENT_CONVERSATIONS = "agent_conversations"
SUPPORT_TICKETS = "support_tickets"
AGENT_ASSIGNMENTS = "agent_assignments"
SUPPORT_ESCALATIONS = "support_escalations"
AGENT_FEEDBACK = "agent_feedback"
PROMPT_IMPROVEMENT_LOGS = "prompt_improvement_logs"
IMPROVEMENT_NOTIFICATIONS = "agent_improvement_notifications"

TABLES = [
    CHATS, MESSAGES, AGENTS, DOCUMENTS, INTENT_CLASSIFICATIONS,
    CONVERSATION_CONTEXTS, CONTEXT_SWITCHES, AGENT_CONVERSATIONS,
    SUPPORT_TICKETS, AGENT_ASSIGNMENTS, SUPPORT_ESCALATIONS,
    AGENT_FEEDBACK, PROMPT_IMPROVEMENT_LOGS, IMPROVEMENT_NOTIFICATIONS,
]


def to_row(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump()


async def load_owned(store: "Store", table: str, row_id: str, actor_id: str,
                     model: Type[ModelT]) -> ModelT:
    """Fetch a row owned by ``actor_id``; foreign rows look missing"""
    row = await store.get(table, row_id)
    if row is None or row.get("user_id") != actor_id:
        raise NotFound(f"{table} {row_id} not found",
                       {"table": table, "id": row_id})
    return model.model_validate(row)


def matches_filters(row: Dict[str, Any],
                    filters: Optional[Dict[str, Any]]) -> bool:
    """Equality match; a ``None`` filter value matches a missing field"""
    for key, value in (filters or {}).items():
        if row.get(key) != value:
            return False
    return True


class Store(ABC):
    """Async row store used by every engine"""

    async def initialize(self) -> bool:
        return True

    async def close(self):
        pass

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(self, table: str,
                    filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None,
                    descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update(self, table: str, filters: Dict[str, Any],
                     patch: Dict[str, Any],
                     expected_version: Optional[int] = None
                     ) -> List[Dict[str, Any]]:
        """
        Apply ``patch`` to every row matching ``filters``.

        With ``expected_version`` set, a matching row at any other version
        raises ConcurrencyConflict and nothing is written.
        Returns the updated rows; an empty list means nothing matched.
        """
        ...

    @abstractmethod
    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, table: str, filters: Dict[str, Any]) -> int:
        ...


class InMemoryStore(Store):
    """Dict-of-tables backend, used by default and in tests"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            stored = copy.deepcopy(row)
            stored.setdefault("version", 1)
            self._table(table)[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._table(table).get(row_id)
            return copy.deepcopy(row) if row is not None else None

    async def query(self, table: str,
                    filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None,
                    descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [row for row in self._table(table).values()
                    if matches_filters(row, filters)]
            if order_by:
                # Rows without the sort field always come last
                present = [row for row in rows
                           if row.get(order_by) is not None]
                missing = [row for row in rows if row.get(order_by) is None]
                present.sort(key=lambda row: row[order_by],
                             reverse=descending)
                rows = present + missing
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    async def update(self, table: str, filters: Dict[str, Any],
                     patch: Dict[str, Any],
                     expected_version: Optional[int] = None
                     ) -> List[Dict[str, Any]]:
        async with self._lock:
            targets = [row for row in self._table(table).values()
                       if matches_filters(row, filters)]
            if expected_version is not None:
                for row in targets:
                    if row.get("version", 1) != expected_version:
                        raise ConcurrencyConflict(
                            f"{table}/{row['id']} is at version "
                            f"{row.get('version', 1)}, expected "
                            f"{expected_version}",
                            {"table": table, "id": row["id"]})

            for row in targets:
                row.update(copy.deepcopy(patch))
                row["version"] = row.get("version", 1) + 1
            return copy.deepcopy(targets)

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            existing = self._table(table).get(row["id"])
            stored = copy.deepcopy(row)
            stored["version"] = existing.get("version", 1) + 1 \
                if existing else stored.get("version", 1)
            self._table(table)[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def delete(self, table: str, filters: Dict[str, Any]) -> int:
        async with self._lock:
            rows = self._table(table)
            doomed = [row_id for row_id, row in rows.items()
                      if matches_filters(row, filters)]
            for row_id in doomed:
                del rows[row_id]
            return len(doomed)


def create_store(backend: Optional[str] = None) -> Store:
    """Build the store selected by ``STORE_BACKEND``"""
    backend = (backend or settings.STORE_BACKEND).lower()
    if backend == "elasticsearch":
        from agentchat.services.elasticsearch_service import \
            ElasticsearchStore
        return ElasticsearchStore()
    if backend != "memory":
        logger.warning("Unknown STORE_BACKEND %r, using memory", backend)
    return InMemoryStore()


# Global data store instance
data_store = create_store()
