"""Pydantic models for all marketplace records."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, Field

CENTS = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Coerce to a two-decimal fixed currency amount."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a currency amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Not a currency amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


Money = Annotated[Decimal, BeforeValidator(money)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


# ============================================================
# Enums
# ============================================================

class JobStatus(str, Enum):
    ACCEPTING_BIDS = "accepting_bids"
    EVALUATING = "evaluating"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class TransactionType(str, Enum):
    ESCROW_CREATE = "escrow_create"
    ESCROW_RELEASE = "escrow_release"
    ESCROW_CANCEL = "escrow_cancel"
    PLATFORM_FEE = "platform_fee"
    CREATOR_EARNING = "creator_earning"
    DEPOSIT = "deposit"


class EscrowStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    CANCELLED = "cancelled"


# Pseudo-wallets that are not agents
ESCROW_WALLET = "escrow"
EXTERNAL_WALLET = "external"


# ============================================================
# Agent Models
# ============================================================

class PricingModel(BaseModel):
    """Base rate and per-complexity multipliers used when bidding."""
    base_rate: Money = Decimal("1.00")
    complexity_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"simple": 1.0, "medium": 1.5, "complex": 2.0}
    )


class Agent(BaseModel):
    """Marketplace participant with a wallet."""
    agent_id: str
    name: str
    type: str
    description: str = ""

    # Wallet
    wallet_balance: Money = Field(default=Decimal("0.00"), ge=0)
    initial_balance: Money = Decimal("0.00")

    # Reputation (0-5)
    reputation_score: float = 0.0
    jobs_completed: int = 0
    total_earned: Money = Decimal("0.00")

    # Bid behaviour
    pricing_model: PricingModel = Field(default_factory=PricingModel)
    confidence_range: tuple[float, float] = (0.80, 0.90)
    base_duration_minutes: float = 5.0

    status: AgentStatus = AgentStatus.AVAILABLE
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Job Models
# ============================================================

class AcceptedBid(BaseModel):
    bid_id: str
    agent_id: str
    price: Money
    accepted_at: datetime = Field(default_factory=utcnow)


class Submission(BaseModel):
    agent_id: str
    results: Any
    submitted_at: datetime = Field(default_factory=utcnow)


class Verification(BaseModel):
    """Outcome of checking submitted work."""
    approved: bool
    quality_score: float = 0.0  # 0-5
    issues: list[str] = Field(default_factory=list)
    reasoning: str = ""


class JobLog(BaseModel):
    """User-visible execution log line."""
    level: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class Job(BaseModel):
    """Posted task moving through bidding, execution and settlement."""
    job_id: str
    type: str
    description: str
    requirements: dict[str, Any] = Field(default_factory=dict)
    budget_max: Money = Field(gt=0)
    posted_by: str = "anonymous"

    status: JobStatus = JobStatus.ACCEPTING_BIDS
    accepted_bid: Optional[AcceptedBid] = None
    escrow_id: Optional[str] = None
    submission: Optional[Submission] = None
    verification: Optional[Verification] = None
    failure_reason: Optional[str] = None
    window_extensions: int = 0
    logs: list[JobLog] = Field(default_factory=list)

    posted_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# ============================================================
# Bid Models
# ============================================================

class Bid(BaseModel):
    """Agent bid on a job."""
    bid_id: str
    job_id: str
    agent_id: str
    price: Money = Field(ge=0)
    estimated_time: int  # seconds
    reasoning: str = ""
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    submitted_at: datetime = Field(default_factory=utcnow)


# ============================================================
# Ledger Models
# ============================================================

class Transaction(BaseModel):
    """Append-only ledger entry."""
    txn_id: str
    type: TransactionType
    from_wallet: str
    to_wallet: str
    amount: Money
    job_id: Optional[str] = None
    escrow_id: Optional[str] = None
    reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def signed_amount(self, wallet: str) -> Decimal:
        """Effect of this transaction on ``wallet``'s balance."""
        delta = Decimal("0.00")
        if self.to_wallet == wallet:
            delta += self.amount
        if self.from_wallet == wallet:
            delta -= self.amount
        return delta


class Escrow(BaseModel):
    """Funds held for a job until release or cancellation."""
    escrow_id: str
    job_id: str
    payer_id: str
    payee_id: str
    amount: Money
    status: EscrowStatus = EscrowStatus.HELD
    created_at: datetime = Field(default_factory=utcnow)
    settled_at: Optional[datetime] = None
