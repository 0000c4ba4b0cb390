"""Tests for wallets, escrow and reconciliation."""

import asyncio
from decimal import Decimal

import pytest

from agentmarket.errors import EscrowNotHeld, InsufficientBalance, NotFound, ValidationError
from agentmarket.models import Agent, EscrowStatus, TransactionType
from agentmarket.payments import Ledger
from agentmarket.storage import InMemoryStore


@pytest.fixture
async def ledger():
    ledger = Ledger(InMemoryStore(), platform_wallet_id="platform")
    await ledger.open_wallet(Agent(agent_id="payer", name="Payer", type="coordinator", wallet_balance="10.00"))
    await ledger.open_wallet(Agent(agent_id="worker", name="Worker", type="analysis"))
    await ledger.open_wallet(Agent(agent_id="platform", name="Platform", type="platform"))
    return ledger


class TestWallets:
    async def test_open_wallet_records_initial_balance(self, ledger):
        agent = await ledger.store.get_agent("payer")
        assert agent.initial_balance == Decimal("10.00")

    async def test_open_wallet_is_idempotent(self, ledger):
        again = await ledger.open_wallet(
            Agent(agent_id="payer", name="Payer", type="coordinator", wallet_balance="999.00")
        )
        assert again.wallet_balance == Decimal("10.00")

    async def test_balance_unknown_agent(self, ledger):
        with pytest.raises(NotFound):
            await ledger.balance("ghost")

    async def test_deposit(self, ledger):
        txn = await ledger.deposit("worker", "2.5", reference="0xabc")
        assert txn.type == TransactionType.DEPOSIT
        assert txn.from_wallet == "external"
        assert await ledger.balance("worker") == Decimal("2.50")
        assert await ledger.reconcile() == {}

    async def test_deposit_reference_credited_once(self, ledger):
        await ledger.deposit("worker", "1.00", reference="0xabc")
        with pytest.raises(ValidationError):
            await ledger.deposit("worker", "1.00", reference="0xabc")
        assert await ledger.balance("worker") == Decimal("1.00")

    async def test_deposit_must_be_positive(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.deposit("worker", "0")


class TestCreateEscrow:
    async def test_debits_payer_and_holds_funds(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")

        assert await ledger.balance("payer") == Decimal("7.00")
        assert await ledger.escrow_balance() == Decimal("3.00")
        escrow = await ledger.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.HELD
        assert escrow.payee_id == "worker"

        txns = await ledger.store.list_transactions(job_id="job_1")
        assert len(txns) == 1
        assert txns[0].type == TransactionType.ESCROW_CREATE
        assert (txns[0].from_wallet, txns[0].to_wallet) == ("payer", "escrow")

    async def test_insufficient_balance_changes_nothing(self, ledger):
        with pytest.raises(InsufficientBalance):
            await ledger.create_escrow("payer", "worker", "10.01", "job_1")

        assert await ledger.balance("payer") == Decimal("10.00")
        assert await ledger.store.list_transactions() == []
        assert await ledger.store.list_escrows() == []

    async def test_exact_balance_allowed(self, ledger):
        await ledger.create_escrow("payer", "worker", "10.00", "job_1")
        assert await ledger.balance("payer") == Decimal("0.00")

    async def test_unknown_payee(self, ledger):
        with pytest.raises(NotFound):
            await ledger.create_escrow("payer", "ghost", "1.00", "job_1")


class TestReleaseEscrow:
    async def test_release_credits_agent(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        escrow = await ledger.release_escrow(escrow_id, to_agent="worker", job_id="job_1")

        assert escrow.status == EscrowStatus.RELEASED
        worker = await ledger.store.get_agent("worker")
        assert worker.wallet_balance == Decimal("3.00")
        assert worker.jobs_completed == 1
        assert worker.total_earned == Decimal("3.00")
        assert await ledger.escrow_balance() == Decimal("0.00")
        assert await ledger.reconcile() == {}

    async def test_second_release_credits_nothing(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        await ledger.release_escrow(escrow_id)

        with pytest.raises(EscrowNotHeld):
            await ledger.release_escrow(escrow_id)

        worker = await ledger.store.get_agent("worker")
        assert worker.wallet_balance == Decimal("3.00")
        assert worker.jobs_completed == 1
        releases = [
            t for t in await ledger.store.list_transactions()
            if t.type == TransactionType.ESCROW_RELEASE
        ]
        assert len(releases) == 1

    async def test_release_after_cancel_rejected(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        await ledger.cancel_escrow(escrow_id)
        with pytest.raises(EscrowNotHeld):
            await ledger.release_escrow(escrow_id)
        assert await ledger.balance("worker") == Decimal("0.00")

    async def test_platform_fee(self):
        ledger = Ledger(InMemoryStore(), platform_wallet_id="platform", platform_fee_rate=Decimal("0.10"))
        await ledger.open_wallet(Agent(agent_id="payer", name="Payer", type="coordinator", wallet_balance="10.00"))
        await ledger.open_wallet(Agent(agent_id="worker", name="Worker", type="analysis"))

        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        await ledger.release_escrow(escrow_id)

        assert await ledger.balance("worker") == Decimal("2.70")
        assert await ledger.balance("platform") == Decimal("0.30")
        fees = [t for t in await ledger.store.list_transactions() if t.type == TransactionType.PLATFORM_FEE]
        assert len(fees) == 1
        assert await ledger.reconcile() == {}

    async def test_partial_release_refunds_remainder(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        await ledger.release_escrow(escrow_id, amount="2.00")

        assert await ledger.balance("worker") == Decimal("2.00")
        assert await ledger.balance("payer") == Decimal("8.00")
        assert await ledger.escrow_balance() == Decimal("0.00")
        assert await ledger.reconcile() == {}

    async def test_release_more_than_held(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        with pytest.raises(ValidationError):
            await ledger.release_escrow(escrow_id, amount="3.01")
        assert (await ledger.get_escrow(escrow_id)).status == EscrowStatus.HELD

    async def test_release_wrong_job(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        with pytest.raises(ValidationError):
            await ledger.release_escrow(escrow_id, job_id="job_2")

    async def test_unknown_escrow(self, ledger):
        with pytest.raises(NotFound):
            await ledger.release_escrow("esc_missing")


class TestCancelEscrow:
    async def test_cancel_refunds_payer(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "4.00", "job_1")
        escrow = await ledger.cancel_escrow(escrow_id, job_id="job_1")

        assert escrow.status == EscrowStatus.CANCELLED
        assert await ledger.balance("payer") == Decimal("10.00")
        assert await ledger.balance("worker") == Decimal("0.00")
        cancels = [t for t in await ledger.store.list_transactions() if t.type == TransactionType.ESCROW_CANCEL]
        assert [(t.from_wallet, t.to_wallet, t.amount) for t in cancels] == [
            ("escrow", "payer", Decimal("4.00"))
        ]

    async def test_double_cancel(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "4.00", "job_1")
        await ledger.cancel_escrow(escrow_id)
        with pytest.raises(EscrowNotHeld):
            await ledger.cancel_escrow(escrow_id)
        assert await ledger.balance("payer") == Decimal("10.00")


class TestReconcile:
    async def test_balanced_after_mixed_activity(self, ledger):
        first = await ledger.create_escrow("payer", "worker", "3.00", "job_1")
        second = await ledger.create_escrow("payer", "worker", "2.00", "job_2")
        await ledger.create_escrow("payer", "worker", "1.00", "job_3")
        await ledger.release_escrow(first)
        await ledger.cancel_escrow(second)

        assert await ledger.reconcile() == {}
        assert await ledger.escrow_balance() == Decimal("1.00")

    async def test_detects_balance_drift(self, ledger):
        worker = await ledger.store.get_agent("worker")
        worker.wallet_balance = Decimal("5.00")
        await ledger.store.save_agent(worker)

        mismatches = await ledger.reconcile()
        assert mismatches == {"worker": (Decimal("0.00"), Decimal("5.00"))}


class TestConcurrentSettlement:
    async def test_parallel_releases_credit_once(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")

        results = await asyncio.gather(
            ledger.release_escrow(escrow_id, to_agent="worker", job_id="job_1"),
            ledger.release_escrow(escrow_id, to_agent="worker", job_id="job_1"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, EscrowNotHeld) for r in results) == 1
        assert sum(not isinstance(r, Exception) for r in results) == 1
        assert await ledger.balance("worker") == Decimal("3.00")
        releases = [
            t for t in await ledger.store.list_transactions()
            if t.type == TransactionType.ESCROW_RELEASE
        ]
        assert len(releases) == 1
        assert await ledger.reconcile() == {}

    async def test_parallel_escrows_never_overdraw(self, ledger):
        results = await asyncio.gather(
            *(ledger.create_escrow("payer", "worker", "4.00", f"job_{i}") for i in range(3)),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientBalance) for r in results) == 1
        assert sum(isinstance(r, str) for r in results) == 2
        assert await ledger.balance("payer") == Decimal("2.00")
        assert await ledger.escrow_balance() == Decimal("8.00")
        assert await ledger.reconcile() == {}

    async def test_release_races_cancel(self, ledger):
        escrow_id = await ledger.create_escrow("payer", "worker", "3.00", "job_1")

        results = await asyncio.gather(
            ledger.release_escrow(escrow_id, to_agent="worker"),
            ledger.cancel_escrow(escrow_id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, EscrowNotHeld) for r in results) == 1
        payer = await ledger.balance("payer")
        worker = await ledger.balance("worker")
        assert (payer, worker) in [(Decimal("7.00"), Decimal("3.00")), (Decimal("10.00"), Decimal("0.00"))]
        assert await ledger.escrow_balance() == Decimal("0.00")
        assert await ledger.reconcile() == {}
