"""
Procurement Workflow Hub - Entity Repository

Persistence boundary for workflow entities. The engine and the cascade tooling
only talk to EntityRepository; MongoEntityRepository backs the service and
InMemoryEntityRepository backs tests and local runs.

Concurrency model:
- every document carries an integer `version`
- update() with expected_version is a conditional write; exactly one of two
  racing writers succeeds, the other gets StaleStateError
- transaction() groups writes so readers see all of them or none
"""

import copy
import uuid
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from services.workflow_status import EntityKind
from services.workflow_errors import EntityNotFoundError, StaleStateError, ValidationError

logger = logging.getLogger(__name__)


# Orders and PRs share a collection; a PR is an order in a PR-enabled company
COLLECTIONS: Dict[EntityKind, str] = {
    EntityKind.ORDER: "orders",
    EntityKind.PR: "orders",
    EntityKind.PO: "purchaseorders",
    EntityKind.SHIPMENT: "shipments",
    EntityKind.GRN: "grns",
    EntityKind.INVOICE: "invoices",
}


# Business keys that must stay unique per collection; Mongo backs them with unique indexes
UNIQUE_FIELDS: Dict[str, tuple] = {
    "purchaseorders": ("client_po_number",),
}


def _duplicate_error(collection: str, field_name: str, value: Any) -> ValidationError:
    return ValidationError(
        f"{collection} with {field_name}={value} already exists",
        {"collection": collection, "field": field_name, "value": value}
    )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class EntityRepository(ABC):
    """Abstract store of workflow entity documents."""

    @abstractmethod
    async def find_by_id(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_by_reference(self, kind: EntityKind, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose fields equal every value in filters ({} lists all)."""
        pass

    @abstractmethod
    async def create(self, kind: EntityKind, fields: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        unset: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """
        Apply field changes and bump the version.

        Raises:
            EntityNotFoundError: no document with entity_id
            StaleStateError: expected_version given and the stored version differs
        """
        pass

    @abstractmethod
    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        pass

    @abstractmethod
    def transaction(self):
        """Async context manager grouping writes atomically."""
        pass


# =============================================================================
# MONGODB
# =============================================================================

_mongo_session: ContextVar = ContextVar("mongo_session", default=None)


class MongoEntityRepository(EntityRepository):
    """
    Motor-backed repository. Transactions need a replica set; writes issued
    inside transaction() reuse the session bound to the current task.
    """

    def __init__(self, db, client=None):
        self.db = db
        self.client = client

    def _collection(self, kind: EntityKind):
        return self.db[COLLECTIONS[EntityKind(kind)]]

    async def find_by_id(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        return await self._collection(kind).find_one(
            {"id": entity_id}, {"_id": 0}, session=_mongo_session.get()
        )

    async def find_by_reference(self, kind: EntityKind, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self._collection(kind).find(filters, {"_id": 0}, session=_mongo_session.get())
        return await cursor.to_list(None)

    async def create(self, kind: EntityKind, fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(fields)
        doc.setdefault("id", str(uuid.uuid4()))
        doc.setdefault("version", 0)
        doc.setdefault("created_utc", _now())
        try:
            await self._collection(kind).insert_one(dict(doc), session=_mongo_session.get())
        except DuplicateKeyError as e:
            key = (e.details or {}).get("keyValue") or {}
            field_name, value = next(iter(key.items()), ("id", doc["id"]))
            raise _duplicate_error(COLLECTIONS[EntityKind(kind)], field_name, value)
        return doc

    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        unset: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"id": entity_id}
        if expected_version is not None:
            if expected_version == 0:
                # Legacy documents predate the version field
                query["$or"] = [{"version": 0}, {"version": {"$exists": False}}]
            else:
                query["version"] = expected_version

        change: Dict[str, Any] = {
            "$set": {**fields, "updated_utc": _now()},
            "$inc": {"version": 1},
        }
        if unset:
            change["$unset"] = {name: "" for name in unset}

        session = _mongo_session.get()
        updated = await self._collection(kind).find_one_and_update(
            query,
            change,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            exists = await self._collection(kind).find_one({"id": entity_id}, {"_id": 0, "version": 1}, session=session)
            if exists is None:
                raise EntityNotFoundError(f"{kind} {entity_id} not found", {"id": entity_id})
            raise StaleStateError(
                f"{kind} {entity_id} changed concurrently",
                {"id": entity_id, "expected_version": expected_version, "actual_version": exists.get("version", 0)}
            )
        return updated

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        result = await self._collection(kind).delete_one({"id": entity_id}, session=_mongo_session.get())
        return result.deleted_count > 0

    @asynccontextmanager
    async def transaction(self):
        if _mongo_session.get() is not None:
            # Nested: join the outer transaction
            yield self
            return
        if self.client is None:
            raise RuntimeError("MongoEntityRepository needs a client for transactions")

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                token = _mongo_session.set(session)
                try:
                    yield self
                finally:
                    _mongo_session.reset(token)


# =============================================================================
# IN-MEMORY
# =============================================================================

class _StagedWrites:
    """Working copy of the collections touched inside one transaction."""

    def __init__(self):
        self.docs: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self.base_versions: Dict[tuple, Optional[int]] = {}


_staged: ContextVar = ContextVar("inmemory_staged", default=None)


class InMemoryEntityRepository(EntityRepository):
    """
    Dict-backed repository. Writes inside transaction() are staged and applied
    in one step on commit; an exception discards them.
    """

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._store: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in set(COLLECTIONS.values())}
        for collection, docs in (seed or {}).items():
            for doc in docs:
                self._store.setdefault(collection, {})[doc["id"]] = copy.deepcopy(doc)

    # ----- internal view helpers -----

    def _get(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        staged = _staged.get()
        if staged is not None and entity_id in staged.docs.get(collection, {}):
            return staged.docs[collection][entity_id]
        return self._store.get(collection, {}).get(entity_id)

    def _all(self, collection: str) -> List[Dict[str, Any]]:
        merged = dict(self._store.get(collection, {}))
        staged = _staged.get()
        if staged is not None:
            merged.update(staged.docs.get(collection, {}))
        return [doc for doc in merged.values() if doc is not None]

    def _put(self, collection: str, entity_id: str, doc: Optional[Dict[str, Any]]):
        staged = _staged.get()
        if staged is None:
            if doc is None:
                self._store.get(collection, {}).pop(entity_id, None)
            else:
                self._store.setdefault(collection, {})[entity_id] = doc
            return
        key = (collection, entity_id)
        if key not in staged.base_versions:
            current = self._store.get(collection, {}).get(entity_id)
            staged.base_versions[key] = current.get("version", 0) if current else None
        staged.docs.setdefault(collection, {})[entity_id] = doc

    @staticmethod
    def _check_unique(collection: str, doc: Dict[str, Any], existing: List[Dict[str, Any]]):
        for field_name in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(field_name)
            if value is None:
                continue
            if any(other.get(field_name) == value and other.get("id") != doc.get("id") for other in existing):
                raise _duplicate_error(collection, field_name, value)

    # ----- EntityRepository -----

    async def find_by_id(self, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        doc = self._get(COLLECTIONS[EntityKind(kind)], entity_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find_by_reference(self, kind: EntityKind, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        docs = self._all(COLLECTIONS[EntityKind(kind)])
        matched = [d for d in docs if all(d.get(k) == v for k, v in filters.items())]
        return [copy.deepcopy(d) for d in matched]

    async def create(self, kind: EntityKind, fields: Dict[str, Any]) -> Dict[str, Any]:
        doc = copy.deepcopy(fields)
        doc.setdefault("id", str(uuid.uuid4()))
        doc.setdefault("version", 0)
        doc.setdefault("created_utc", _now())
        collection = COLLECTIONS[EntityKind(kind)]
        self._check_unique(collection, doc, self._all(collection))
        self._put(collection, doc["id"], doc)
        return copy.deepcopy(doc)

    async def update(
        self,
        kind: EntityKind,
        entity_id: str,
        fields: Dict[str, Any],
        expected_version: Optional[int] = None,
        unset: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        collection = COLLECTIONS[EntityKind(kind)]
        current = self._get(collection, entity_id)
        if current is None:
            raise EntityNotFoundError(f"{kind} {entity_id} not found", {"id": entity_id})

        actual_version = current.get("version", 0)
        if expected_version is not None and actual_version != expected_version:
            raise StaleStateError(
                f"{kind} {entity_id} changed concurrently",
                {"id": entity_id, "expected_version": expected_version, "actual_version": actual_version}
            )

        updated = copy.deepcopy(current)
        updated.update(copy.deepcopy(fields))
        for name in unset or []:
            updated.pop(name, None)
        updated["version"] = actual_version + 1
        updated["updated_utc"] = _now()
        self._put(collection, entity_id, updated)
        return copy.deepcopy(updated)

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        collection = COLLECTIONS[EntityKind(kind)]
        if self._get(collection, entity_id) is None:
            return False
        self._put(collection, entity_id, None)
        return True

    @asynccontextmanager
    async def transaction(self):
        if _staged.get() is not None:
            yield self
            return

        staged = _StagedWrites()
        token = _staged.set(staged)
        try:
            yield self
        finally:
            _staged.reset(token)
        # Only reached on success; commit all staged writes in one step
        self._commit(staged)

    def _commit(self, staged: _StagedWrites):
        for (collection, entity_id), base_version in staged.base_versions.items():
            current = self._store.get(collection, {}).get(entity_id)
            current_version = current.get("version", 0) if current else None
            if current_version != base_version:
                raise StaleStateError(
                    f"{collection} {entity_id} changed during transaction",
                    {"id": entity_id}
                )
        for collection, docs in staged.docs.items():
            committed = list(self._store.get(collection, {}).values())
            for entity_id, doc in docs.items():
                if doc is not None and staged.base_versions.get((collection, entity_id)) is None:
                    self._check_unique(collection, doc, committed)
        for collection, docs in staged.docs.items():
            for entity_id, doc in docs.items():
                if doc is None:
                    self._store.get(collection, {}).pop(entity_id, None)
                else:
                    self._store.setdefault(collection, {})[entity_id] = doc

    def dump(self, collection: str) -> List[Dict[str, Any]]:
        """Committed documents of a collection (test helper)."""
        return [copy.deepcopy(d) for d in self._store.get(collection, {}).values()]
