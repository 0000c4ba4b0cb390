"""Wallet ledger with escrow for job payments.

Every balance change is paired with an append-only transaction so the
ledger can be reconciled against wallet balances at any time:

    sum of signed transactions for a wallet == balance - initial_balance

Funds in escrow sit in the ``escrow`` pseudo-wallet until the escrow is
released to the agent or cancelled back to the payer.
"""

from decimal import Decimal
from typing import Any, Callable, Optional
import structlog

from ..errors import EscrowNotHeld, InsufficientBalance, NotFound, ValidationError
from ..locks import KeyedLocks
from ..models import (
    Agent,
    AgentStatus,
    ESCROW_WALLET,
    EXTERNAL_WALLET,
    Escrow,
    EscrowStatus,
    Transaction,
    TransactionType,
    money,
    new_id,
    utcnow,
)
from ..storage import MarketStore

logger = structlog.get_logger()

ZERO = Decimal("0.00")


class Ledger:
    """Moves funds between agent wallets, escrow and the platform wallet."""

    def __init__(
        self,
        store: MarketStore,
        platform_wallet_id: str = "platform",
        platform_fee_rate: Decimal = Decimal("0"),
        clock: Callable = utcnow,
    ):
        self.store = store
        self.platform_wallet_id = platform_wallet_id
        self.platform_fee_rate = Decimal(str(platform_fee_rate))
        self.clock = clock
        self._wallet_locks = KeyedLocks()
        self._escrow_locks = KeyedLocks()

    # ============================================================
    # Wallets
    # ============================================================

    async def open_wallet(self, agent: Agent) -> Agent:
        """Register an agent's wallet. Its current balance becomes the opening balance."""
        async with self._wallet_locks.hold(agent.agent_id):
            existing = await self.store.get_agent(agent.agent_id)
            if existing is not None:
                return existing
            opened = agent.model_copy(update={"initial_balance": agent.wallet_balance})
            await self.store.save_agent(opened)

        logger.info("wallet_opened", agent_id=agent.agent_id, balance=str(agent.wallet_balance))
        return opened

    async def _agent(self, agent_id: str) -> Agent:
        agent = await self.store.get_agent(agent_id)
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        return agent

    async def balance(self, agent_id: str) -> Decimal:
        agent = await self._agent(agent_id)
        return agent.wallet_balance

    async def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        """Change an agent's availability without racing balance updates."""
        async with self._wallet_locks.hold(agent_id):
            agent = await self._agent(agent_id)
            if agent.status != status:
                agent.status = status
                await self.store.save_agent(agent)
        return agent

    async def deposit(self, agent_id: str, amount: Any, reference: Optional[str] = None) -> Transaction:
        """Credit funds from outside the marketplace.

        A reference (such as a transaction hash) can only be credited once.
        """
        amount = self._amount(amount)
        if amount <= ZERO:
            raise ValidationError("Deposit amount must be greater than zero")

        async with self._wallet_locks.hold(agent_id):
            agent = await self._agent(agent_id)
            if reference:
                previous = await self.store.list_transactions(wallet=agent_id)
                if any(t.type == TransactionType.DEPOSIT and t.reference == reference for t in previous):
                    raise ValidationError(f"Deposit {reference} was already credited")

            agent.wallet_balance += amount
            txn = self._txn(TransactionType.DEPOSIT, EXTERNAL_WALLET, agent_id, amount, reference=reference)
            await self.store.save_agent(agent)
            await self.store.append_transaction(txn)

        logger.info("deposit_credited", agent_id=agent_id, amount=str(amount), reference=reference)
        return txn

    # ============================================================
    # Escrow
    # ============================================================

    async def create_escrow(self, from_agent: str, to_agent: str, amount: Any, job_id: str) -> str:
        """Move ``amount`` from the payer's wallet into escrow for a job.

        Raises:
            InsufficientBalance: payer cannot cover the amount; nothing changes
            NotFound: unknown payer or payee
        """
        amount = self._amount(amount)
        if amount < ZERO:
            raise ValidationError("Escrow amount cannot be negative")

        await self._agent(to_agent)

        async with self._wallet_locks.hold(from_agent):
            payer = await self._agent(from_agent)
            if payer.wallet_balance < amount:
                logger.warning(
                    "escrow_insufficient_balance",
                    payer_id=from_agent,
                    balance=str(payer.wallet_balance),
                    amount=str(amount),
                    job_id=job_id,
                )
                raise InsufficientBalance(
                    f"Insufficient balance: {payer.name} has ${payer.wallet_balance}, needs ${amount}"
                )

            escrow = Escrow(
                escrow_id=new_id("esc"),
                job_id=job_id,
                payer_id=from_agent,
                payee_id=to_agent,
                amount=amount,
                created_at=self.clock(),
            )
            payer.wallet_balance -= amount
            await self.store.save_agent(payer)
            await self.store.save_escrow(escrow)
            await self.store.append_transaction(self._txn(
                TransactionType.ESCROW_CREATE,
                from_agent,
                ESCROW_WALLET,
                amount,
                job_id=job_id,
                escrow_id=escrow.escrow_id,
            ))

        logger.info(
            "escrow_created",
            escrow_id=escrow.escrow_id,
            payer_id=from_agent,
            payee_id=to_agent,
            amount=str(amount),
            job_id=job_id,
        )
        return escrow.escrow_id

    async def release_escrow(
        self,
        escrow_id: str,
        to_agent: Optional[str] = None,
        amount: Any = None,
        job_id: Optional[str] = None,
    ) -> Escrow:
        """Pay a held escrow out to the agent.

        A platform fee, if configured, goes to the platform wallet. Releasing
        less than the held amount refunds the rest to the payer.

        Raises:
            EscrowNotHeld: already released or cancelled; nothing is credited
        """
        async with self._escrow_locks.hold(escrow_id):
            escrow = await self._held_escrow(escrow_id, job_id)
            payee_id = to_agent or escrow.payee_id
            payout_total = self._settle_amount(escrow, amount)
            fee = money(payout_total * self.platform_fee_rate)
            payout = payout_total - fee
            remainder = escrow.amount - payout_total

            wallets = [payee_id]
            if fee > ZERO:
                wallets.append(self.platform_wallet_id)
            if remainder > ZERO:
                wallets.append(escrow.payer_id)

            async with self._wallet_locks.hold(*wallets):
                payee = await self._agent(payee_id)
                payee.wallet_balance += payout
                payee.jobs_completed += 1
                payee.total_earned += payout
                await self.store.save_agent(payee)
                await self.store.append_transaction(self._txn(
                    TransactionType.ESCROW_RELEASE, ESCROW_WALLET, payee_id, payout,
                    job_id=escrow.job_id, escrow_id=escrow_id,
                ))

                if fee > ZERO:
                    platform = await self._platform_wallet()
                    platform.wallet_balance += fee
                    await self.store.save_agent(platform)
                    await self.store.append_transaction(self._txn(
                        TransactionType.PLATFORM_FEE, ESCROW_WALLET, platform.agent_id, fee,
                        job_id=escrow.job_id, escrow_id=escrow_id,
                    ))

                if remainder > ZERO:
                    payer = await self._agent(escrow.payer_id)
                    payer.wallet_balance += remainder
                    await self.store.save_agent(payer)
                    await self.store.append_transaction(self._txn(
                        TransactionType.ESCROW_CANCEL, ESCROW_WALLET, payer.agent_id, remainder,
                        job_id=escrow.job_id, escrow_id=escrow_id,
                    ))

                escrow = escrow.model_copy(update={
                    "status": EscrowStatus.RELEASED,
                    "payee_id": payee_id,
                    "settled_at": self.clock(),
                })
                await self.store.save_escrow(escrow)

        logger.info(
            "escrow_released",
            escrow_id=escrow_id,
            payee_id=payee_id,
            amount=str(payout),
            fee=str(fee),
            refunded=str(remainder),
            job_id=escrow.job_id,
        )
        return escrow

    async def cancel_escrow(
        self,
        escrow_id: str,
        to_agent: Optional[str] = None,
        amount: Any = None,
        job_id: Optional[str] = None,
    ) -> Escrow:
        """Refund a held escrow to the payer.

        Raises:
            EscrowNotHeld: already released or cancelled; nothing is credited
        """
        async with self._escrow_locks.hold(escrow_id):
            escrow = await self._held_escrow(escrow_id, job_id)
            refund_to = to_agent or escrow.payer_id
            refund = self._settle_amount(escrow, amount)
            remainder = escrow.amount - refund

            async with self._wallet_locks.hold(refund_to, escrow.payer_id):
                recipient = await self._agent(refund_to)
                recipient.wallet_balance += refund
                await self.store.save_agent(recipient)
                await self.store.append_transaction(self._txn(
                    TransactionType.ESCROW_CANCEL, ESCROW_WALLET, refund_to, refund,
                    job_id=escrow.job_id, escrow_id=escrow_id,
                ))

                if remainder > ZERO:
                    payer = await self._agent(escrow.payer_id)
                    payer.wallet_balance += remainder
                    await self.store.save_agent(payer)
                    await self.store.append_transaction(self._txn(
                        TransactionType.ESCROW_CANCEL, ESCROW_WALLET, escrow.payer_id, remainder,
                        job_id=escrow.job_id, escrow_id=escrow_id,
                    ))

                escrow = escrow.model_copy(update={
                    "status": EscrowStatus.CANCELLED,
                    "settled_at": self.clock(),
                })
                await self.store.save_escrow(escrow)

        logger.info(
            "escrow_cancelled",
            escrow_id=escrow_id,
            refunded_to=refund_to,
            amount=str(escrow.amount),
            job_id=escrow.job_id,
        )
        return escrow

    async def get_escrow(self, escrow_id: str) -> Escrow:
        escrow = await self.store.get_escrow(escrow_id)
        if escrow is None:
            raise NotFound(f"Escrow {escrow_id} not found")
        return escrow

    async def escrow_balance(self) -> Decimal:
        """Total funds currently held in escrow."""
        held = await self.store.list_escrows(status=EscrowStatus.HELD)
        return sum((e.amount for e in held), ZERO)

    # ============================================================
    # Reconciliation
    # ============================================================

    async def reconcile(self) -> dict[str, tuple[Decimal, Decimal]]:
        """Compare transaction history with balances.

        Returns ``{wallet: (ledger_delta, balance_delta)}`` for every wallet
        where they disagree. An empty dict means the books balance.
        """
        txns = await self.store.list_transactions()
        mismatches: dict[str, tuple[Decimal, Decimal]] = {}

        for agent in await self.store.list_agents():
            ledger_delta = sum((t.signed_amount(agent.agent_id) for t in txns), ZERO)
            balance_delta = agent.wallet_balance - agent.initial_balance
            if ledger_delta != balance_delta:
                mismatches[agent.agent_id] = (ledger_delta, balance_delta)

        escrow_delta = sum((t.signed_amount(ESCROW_WALLET) for t in txns), ZERO)
        held = await self.escrow_balance()
        if escrow_delta != held:
            mismatches[ESCROW_WALLET] = (escrow_delta, held)

        if mismatches:
            logger.error("ledger_mismatch", wallets=sorted(mismatches))
        return mismatches

    # ============================================================
    # Helpers
    # ============================================================

    def _amount(self, value: Any) -> Decimal:
        try:
            return money(value)
        except ValueError:
            raise ValidationError(f"Not a currency amount: {value!r}")

    def _settle_amount(self, escrow: Escrow, amount: Any) -> Decimal:
        if amount is None:
            return escrow.amount
        settle = self._amount(amount)
        if settle < ZERO or settle > escrow.amount:
            raise ValidationError(
                f"Amount ${settle} is outside escrow {escrow.escrow_id} (${escrow.amount})"
            )
        return settle

    async def _held_escrow(self, escrow_id: str, job_id: Optional[str]) -> Escrow:
        escrow = await self.get_escrow(escrow_id)
        if escrow.status != EscrowStatus.HELD:
            logger.warning("escrow_not_held", escrow_id=escrow_id, status=escrow.status.value)
            raise EscrowNotHeld(f"Escrow {escrow_id} is already {escrow.status.value}")
        if job_id is not None and job_id != escrow.job_id:
            raise ValidationError(f"Escrow {escrow_id} belongs to job {escrow.job_id}, not {job_id}")
        return escrow

    async def _platform_wallet(self) -> Agent:
        platform = await self.store.get_agent(self.platform_wallet_id)
        if platform is None:
            platform = Agent(agent_id=self.platform_wallet_id, name="Platform", type="platform")
            await self.store.save_agent(platform)
        return platform

    def _txn(
        self,
        txn_type: TransactionType,
        from_wallet: str,
        to_wallet: str,
        amount: Decimal,
        job_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        return Transaction(
            txn_id=new_id("txn"),
            type=txn_type,
            from_wallet=from_wallet,
            to_wallet=to_wallet,
            amount=amount,
            job_id=job_id,
            escrow_id=escrow_id,
            reference=reference,
            created_at=self.clock(),
        )
