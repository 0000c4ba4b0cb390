"""Tests for storage backends."""

from decimal import Decimal

import pytest

from agentmarket.models import Escrow, EscrowStatus, Job, Transaction, TransactionType
from agentmarket.storage import InMemoryStore, create_store
from agentmarket.storage.mongo import MongoStore, serialize_doc, to_doc
from conftest import make_settings


def test_create_store_memory():
    assert isinstance(create_store(make_settings(storage_backend="memory")), InMemoryStore)


def test_create_store_mongo_is_lazy():
    store = create_store(make_settings(storage_backend="mongo", mongodb_database="market_test"))
    assert isinstance(store, MongoStore)
    assert store.database == "market_test"


def test_create_store_unknown():
    with pytest.raises(ValueError):
        create_store(make_settings(storage_backend="sqlite"))


def test_mongo_documents_round_trip_amounts():
    txn = Transaction(
        txn_id="txn_1",
        type=TransactionType.ESCROW_CREATE,
        from_wallet="coordinator-agent",
        to_wallet="escrow",
        amount="3.00",
    )
    doc = {"_id": "object-id", **to_doc(txn)}
    assert doc["amount"] == "3.00"
    assert Transaction.model_validate(serialize_doc(doc)).amount == Decimal("3.00")


def test_serialize_missing_doc():
    assert serialize_doc(None) is None


class TestInMemoryStore:
    async def test_filters_escrows_by_status(self):
        store = InMemoryStore()
        await store.save_escrow(Escrow(escrow_id="a", job_id="j", payer_id="p", payee_id="q", amount="1"))
        await store.save_escrow(Escrow(
            escrow_id="b", job_id="j", payer_id="p", payee_id="q", amount="2", status=EscrowStatus.RELEASED,
        ))
        held = await store.list_escrows(status=EscrowStatus.HELD)
        assert [e.escrow_id for e in held] == ["a"]

    async def test_filters_transactions(self):
        store = InMemoryStore()
        for txn_id, job_id, to_wallet in [("t1", "j1", "a"), ("t2", "j2", "b"), ("t3", "j1", "b")]:
            await store.append_transaction(Transaction(
                txn_id=txn_id,
                type=TransactionType.ESCROW_RELEASE,
                from_wallet="escrow",
                to_wallet=to_wallet,
                amount="1",
                job_id=job_id,
            ))
        assert [t.txn_id for t in await store.list_transactions(job_id="j1")] == ["t1", "t3"]
        assert [t.txn_id for t in await store.list_transactions(wallet="b")] == ["t2", "t3"]

    async def test_saved_records_are_isolated(self):
        store = InMemoryStore()
        job = Job(job_id="j", type="analysis", description="d", budget_max="1")
        await store.save_job(job)
        job.description = "changed"
        assert (await store.get_job("j")).description == "d"
