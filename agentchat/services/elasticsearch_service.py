from elasticsearch import (
    AsyncElasticsearch, ApiError, ConflictError, NotFoundError,
    TransportError
)
from pydantic_core import to_jsonable_python
from typing import List, Dict, Any, Optional, Set
import logging

from agentchat.models.errors import ConcurrencyConflict, PersistenceError
from agentchat.services.store import Store, TABLES
from config.settings import settings

logger = logging.getLogger(__name__)

MAX_QUERY_SIZE = 10000


class ElasticsearchStore(Store):
    """One index per table, rows stored as documents keyed by row id"""

    def __init__(self, client: Optional[AsyncElasticsearch] = None,
                 index_prefix: Optional[str] = None):
        self.es_url = settings.ELASTICSEARCH_URL
        self.index_prefix = index_prefix if index_prefix is not None \
            else settings.ELASTICSEARCH_INDEX_PREFIX
        self.client = client or AsyncElasticsearch([self.es_url])
        self._known_indices: Set[str] = set()

    def index_name(self, table: str) -> str:
        return f"{self.index_prefix}{table}"

    async def initialize(self) -> bool:
        """Check the connection and create every table index"""
        try:
            info = await self.client.info()
            logger.info("Connected to Elasticsearch %s",
                        info["version"]["number"])
            for table in TABLES:
                await self.create_index(table)
            return True
        except (ApiError, TransportError) as e:
            logger.error("Error connecting to Elasticsearch: %s", e)
            return False

    async def create_index(self, table: str):
        """Create a table index; string fields are mapped as keywords"""
        index = self.index_name(table)
        if index in self._known_indices:
            return

        mapping = {
            "mappings": {
                "dynamic_templates": [
                    {
                        "strings_as_keywords": {
                            "match_mapping_type": "string",
                            "mapping": {
                                "type": "keyword",
                                "ignore_above": 1024
                            }
                        }
                    }
                ],
                "properties": {
                    "id": {"type": "keyword"},
                    "version": {"type": "integer"},
                    "created_at": {"type": "date"},
                    "updated_at": {"type": "date"}
                }
            },
            "settings": {
                "number_of_shards": 1,
                "number_of_replicas": 0
            }
        }

        try:
            exists = await self.client.indices.exists(index=index)
            if not exists:
                await self.client.indices.create(index=index, body=mapping)
                logger.info("Created index: %s", index)
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error creating index {index}: {e}")
        self._known_indices.add(index)

    def _build_query(self, filters: Optional[Dict[str, Any]]
                     ) -> Dict[str, Any]:
        clauses = []
        missing = []
        for key, value in (filters or {}).items():
            if value is None:
                missing.append({"exists": {"field": key}})
            else:
                clauses.append({"term": {key: to_jsonable_python(value)}})

        if not clauses and not missing:
            return {"match_all": {}}
        return {"bool": {"filter": clauses, "must_not": missing}}

    async def _search(self, table: str, filters: Optional[Dict[str, Any]],
                      order_by: Optional[str] = None,
                      descending: bool = False,
                      limit: Optional[int] = None) -> List[Dict[str, Any]]:
        await self.create_index(table)
        body: Dict[str, Any] = {
            "query": self._build_query(filters),
            "size": limit if limit is not None else MAX_QUERY_SIZE,
            "seq_no_primary_term": True
        }
        if order_by:
            body["sort"] = [{order_by: {
                "order": "desc" if descending else "asc",
                "missing": "_last"
            }}]

        try:
            response = await self.client.search(
                index=self.index_name(table), body=body)
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error querying {table}: {e}")
        return response["hits"]["hits"]

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await self.create_index(table)
        doc = to_jsonable_python(row)
        doc.setdefault("version", 1)
        try:
            await self.client.create(
                index=self.index_name(table), id=doc["id"], document=doc,
                refresh="wait_for")
        except ConflictError:
            raise ConcurrencyConflict(f"{table}/{doc['id']} already exists",
                                      {"table": table, "id": doc["id"]})
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error inserting into {table}: {e}")
        return doc

    async def get(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.get(index=self.index_name(table),
                                             id=row_id)
        except NotFoundError:
            return None
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error reading {table}/{row_id}: {e}")
        return response["_source"]

    async def query(self, table: str,
                    filters: Optional[Dict[str, Any]] = None,
                    order_by: Optional[str] = None,
                    descending: bool = False,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        hits = await self._search(table, filters, order_by, descending, limit)
        return [hit["_source"] for hit in hits]

    async def update(self, table: str, filters: Dict[str, Any],
                     patch: Dict[str, Any],
                     expected_version: Optional[int] = None
                     ) -> List[Dict[str, Any]]:
        hits = await self._search(table, filters)
        if expected_version is not None:
            for hit in hits:
                version = hit["_source"].get("version", 1)
                if version != expected_version:
                    raise ConcurrencyConflict(
                        f"{table}/{hit['_id']} is at version {version}, "
                        f"expected {expected_version}",
                        {"table": table, "id": hit["_id"]})

        updated = []
        changes = to_jsonable_python(patch)
        for hit in hits:
            doc = dict(hit["_source"])
            doc.update(changes)
            doc["version"] = doc.get("version", 1) + 1
            try:
                # Conditional write on the version we read
                await self.client.index(
                    index=self.index_name(table), id=hit["_id"],
                    document=doc, if_seq_no=hit["_seq_no"],
                    if_primary_term=hit["_primary_term"],
                    refresh="wait_for")
            except ConflictError:
                raise ConcurrencyConflict(
                    f"{table}/{hit['_id']} was modified concurrently",
                    {"table": table, "id": hit["_id"]})
            except (ApiError, TransportError) as e:
                raise PersistenceError(f"Error updating {table}: {e}")
            updated.append(doc)
        return updated

    async def upsert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        await self.create_index(table)
        doc = to_jsonable_python(row)
        existing = await self.get(table, doc["id"])
        doc["version"] = existing.get("version", 1) + 1 if existing \
            else doc.get("version", 1)
        try:
            await self.client.index(index=self.index_name(table),
                                    id=doc["id"], document=doc,
                                    refresh="wait_for")
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error upserting into {table}: {e}")
        return doc

    async def delete(self, table: str, filters: Dict[str, Any]) -> int:
        await self.create_index(table)
        try:
            response = await self.client.delete_by_query(
                index=self.index_name(table),
                body={"query": self._build_query(filters)},
                refresh=True)
        except (ApiError, TransportError) as e:
            raise PersistenceError(f"Error deleting from {table}: {e}")
        return response.get("deleted", 0)

    async def close(self):
        """Close Elasticsearch connections"""
        if self.client:
            await self.client.close()
