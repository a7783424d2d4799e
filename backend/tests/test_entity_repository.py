"""
Tests for the entity repositories.

The in-memory repository is exercised directly; the Mongo repository is
checked against a mocked motor collection.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock
from pymongo.errors import DuplicateKeyError

from services.entity_repository import InMemoryEntityRepository, MongoEntityRepository, COLLECTIONS
from services.workflow_errors import EntityNotFoundError, StaleStateError, ValidationError
from services.workflow_status import EntityKind


class TestCollections:

    def test_prs_and_orders_share_a_collection(self):
        assert COLLECTIONS[EntityKind.PR] == COLLECTIONS[EntityKind.ORDER] == "orders"
        assert COLLECTIONS[EntityKind.PO] == "purchaseorders"


@pytest.mark.asyncio
class TestInMemoryRepository:

    async def test_create_assigns_id_and_version(self):
        repo = InMemoryEntityRepository()
        doc = await repo.create(EntityKind.SHIPMENT, {"prNumber": "PR-001"})
        assert doc["id"]
        assert doc["version"] == 0
        assert doc["created_utc"]
        assert await repo.find_by_id(EntityKind.SHIPMENT, doc["id"]) == doc

    async def test_duplicate_po_number_rejected(self):
        repo = InMemoryEntityRepository(seed={"purchaseorders": [{"id": "po-1", "client_po_number": "4500001"}]})
        with pytest.raises(ValidationError) as exc:
            await repo.create(EntityKind.PO, {"client_po_number": "4500001"})
        assert exc.value.details["field"] == "client_po_number"
        assert len(repo.dump("purchaseorders")) == 1

    async def test_duplicate_po_number_from_parallel_transaction_fails_on_commit(self):
        repo = InMemoryEntityRepository()
        with pytest.raises(ValidationError):
            async with repo.transaction():
                await repo.create(EntityKind.PO, {"client_po_number": "4500001"})
                # another writer commits the same number first
                repo._store["purchaseorders"]["po-other"] = {"id": "po-other", "client_po_number": "4500001"}
        assert [p["id"] for p in repo.dump("purchaseorders")] == ["po-other"]

    async def test_update_bumps_version(self, repo):
        doc = await repo.update(EntityKind.PR, "ord-1", {"pr_status": "SUBMITTED"}, expected_version=0)
        assert doc["version"] == 1
        assert doc["pr_status"] == "SUBMITTED"
        assert doc["updated_utc"]

    async def test_conditional_update_rejects_stale_writer(self, repo):
        """Two writers with the same expected version: exactly one succeeds."""
        await repo.update(EntityKind.PR, "ord-1", {"pr_status": "SUBMITTED"}, expected_version=0)
        with pytest.raises(StaleStateError) as exc:
            await repo.update(EntityKind.PR, "ord-1", {"pr_status": "CANCELLED"}, expected_version=0)
        assert exc.value.details["actual_version"] == 1
        assert (await repo.find_by_id(EntityKind.PR, "ord-1"))["pr_status"] == "SUBMITTED"

    async def test_unconditional_update(self, repo):
        doc = await repo.update(EntityKind.PR, "ord-1", {"note": "x"})
        assert doc["version"] == 1

    async def test_update_missing(self, repo):
        with pytest.raises(EntityNotFoundError):
            await repo.update(EntityKind.PR, "ord-404", {"pr_status": "DRAFT"})

    async def test_update_unsets_fields(self, repo):
        await repo.update(EntityKind.PR, "ord-1", {"dispatchStatus": "SHIPPED"})
        doc = await repo.update(EntityKind.PR, "ord-1", {}, unset=["dispatchStatus"])
        assert "dispatchStatus" not in doc

    async def test_returned_documents_are_copies(self, repo):
        doc = await repo.find_by_id(EntityKind.PR, "ord-1")
        doc["pr_status"] = "MUTATED"
        assert (await repo.find_by_id(EntityKind.PR, "ord-1"))["pr_status"] == "DRAFT"

    async def test_find_by_reference(self, repo):
        found = await repo.find_by_reference(EntityKind.PR, {"pr_number": "PR-002"})
        assert [d["id"] for d in found] == ["ord-2"]
        assert len(await repo.find_by_reference(EntityKind.PR, {})) == 2

    async def test_delete(self, repo):
        assert await repo.delete(EntityKind.PR, "ord-1") is True
        assert await repo.delete(EntityKind.PR, "ord-1") is False
        assert await repo.find_by_id(EntityKind.PR, "ord-1") is None


@pytest.mark.asyncio
class TestInMemoryTransactions:

    async def test_commit_applies_all_writes(self, repo):
        async with repo.transaction():
            po = await repo.create(EntityKind.PO, {"client_po_number": "4500001"})
            await repo.update(EntityKind.PR, "ord-1", {"po_id": po["id"]}, expected_version=0)
            # Visible inside the transaction
            assert (await repo.find_by_id(EntityKind.PR, "ord-1"))["po_id"] == po["id"]
            # Not yet committed
            assert repo.dump("purchaseorders") == []

        assert len(repo.dump("purchaseorders")) == 1
        assert (await repo.find_by_id(EntityKind.PR, "ord-1"))["po_id"] == po["id"]

    async def test_exception_discards_writes(self, repo):
        with pytest.raises(RuntimeError):
            async with repo.transaction():
                await repo.create(EntityKind.PO, {"client_po_number": "4500001"})
                await repo.update(EntityKind.PR, "ord-1", {"po_id": "x"})
                raise RuntimeError("boom")

        assert repo.dump("purchaseorders") == []
        assert "po_id" not in (await repo.find_by_id(EntityKind.PR, "ord-1"))

    async def test_concurrent_change_fails_commit(self, repo):
        with pytest.raises(StaleStateError):
            async with repo.transaction():
                await repo.update(EntityKind.PR, "ord-1", {"po_id": "x"})
                # Another writer commits underneath the transaction
                repo._store["orders"]["ord-1"]["version"] = 7

        stored = await repo.find_by_id(EntityKind.PR, "ord-1")
        assert "po_id" not in stored

    async def test_nested_transaction_joins_outer(self, repo):
        with pytest.raises(RuntimeError):
            async with repo.transaction():
                async with repo.transaction():
                    await repo.update(EntityKind.PR, "ord-1", {"po_id": "x"})
                raise RuntimeError("outer failed")
        assert "po_id" not in (await repo.find_by_id(EntityKind.PR, "ord-1"))


def mongo_repo(collection):
    db = MagicMock()
    db.__getitem__.return_value = collection
    return MongoEntityRepository(db)


@pytest.mark.asyncio
class TestMongoRepository:

    async def test_update_is_conditional_on_version(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"id": "ord-1", "version": 4})
        repo = mongo_repo(collection)

        doc = await repo.update(EntityKind.PR, "ord-1", {"pr_status": "SUBMITTED"}, expected_version=3)

        assert doc["version"] == 4
        query, change = collection.find_one_and_update.call_args[0]
        assert query == {"id": "ord-1", "version": 3}
        assert change["$inc"] == {"version": 1}
        assert change["$set"]["pr_status"] == "SUBMITTED"

    async def test_version_zero_matches_unversioned_documents(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"id": "ord-1", "version": 1})
        repo = mongo_repo(collection)

        await repo.update(EntityKind.PR, "ord-1", {"pr_status": "SUBMITTED"}, expected_version=0)

        query = collection.find_one_and_update.call_args[0][0]
        assert {"version": {"$exists": False}} in query["$or"]

    async def test_lost_race_raises_stale_state(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.find_one = AsyncMock(return_value={"version": 5})
        repo = mongo_repo(collection)

        with pytest.raises(StaleStateError) as exc:
            await repo.update(EntityKind.PR, "ord-1", {"pr_status": "SUBMITTED"}, expected_version=4)
        assert exc.value.details["actual_version"] == 5

    async def test_missing_document_raises_not_found(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.find_one = AsyncMock(return_value=None)
        repo = mongo_repo(collection)

        with pytest.raises(EntityNotFoundError):
            await repo.update(EntityKind.PR, "ord-404", {"pr_status": "SUBMITTED"}, expected_version=0)

    async def test_unset_fields(self):
        collection = MagicMock()
        collection.find_one_and_update = AsyncMock(return_value={"id": "ord-1", "version": 1})
        repo = mongo_repo(collection)

        await repo.update(EntityKind.PR, "ord-1", {}, unset=["dispatchStatus"])

        change = collection.find_one_and_update.call_args[0][1]
        assert change["$unset"] == {"dispatchStatus": ""}

    async def test_duplicate_key_becomes_validation_error(self):
        collection = MagicMock()
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError(
            "E11000 duplicate key", 11000, {"keyValue": {"client_po_number": "4500001"}}
        ))
        repo = mongo_repo(collection)

        with pytest.raises(ValidationError) as exc:
            await repo.create(EntityKind.PO, {"client_po_number": "4500001"})
        assert exc.value.details == {
            "collection": "purchaseorders", "field": "client_po_number", "value": "4500001",
        }

    async def test_transaction_requires_client(self):
        repo = mongo_repo(MagicMock())
        with pytest.raises(RuntimeError):
            async with repo.transaction():
                pass
