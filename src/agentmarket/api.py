"""agentmarket HTTP API."""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from .errors import MarketError, ValidationError
from .marketplace import Marketplace
from .models import JobStatus

load_dotenv()
logger = structlog.get_logger()

router = APIRouter()


def get_market(request: Request) -> Marketplace:
    return request.app.state.market


# ============================================================
# Request Models
# ============================================================

class JobCreateRequest(BaseModel):
    type: str = "analysis"
    description: Optional[str] = None
    prompt: Optional[str] = None
    requirements: dict[str, Any] = Field(default_factory=dict)
    budget_max: Optional[Decimal] = None
    posted_by: str = "anonymous"


class BidRequest(BaseModel):
    agent_id: str
    price: Decimal
    estimated_time: int
    reasoning: str = ""
    confidence: Optional[float] = None


class AcceptRequest(BaseModel):
    bid_id: str


class SubmitRequest(BaseModel):
    agent_id: str
    results: Any = None


class DepositRequest(BaseModel):
    tx_hash: str


def dump(record) -> dict:
    return record.model_dump(mode="json")


# ============================================================
# Status
# ============================================================

@router.get("/")
async def root(market: Marketplace = Depends(get_market)):
    """API info and marketplace counts."""
    jobs = await market.jobs.list_all()
    counts = {status.value: 0 for status in JobStatus}
    for job in jobs:
        counts[job.status.value] += 1
    return {
        "name": "agentmarket",
        "version": "0.1.0",
        "status": "operational",
        "jobs": counts,
        "agents": len(await market.store.list_agents()),
        "escrow_balance": str(await market.ledger.escrow_balance()),
    }


# ============================================================
# Jobs
# ============================================================

@router.post("/api/jobs")
async def create_job(request: JobCreateRequest, market: Marketplace = Depends(get_market)):
    """Post a job. It accepts bids immediately."""
    job = await market.jobs.create(
        job_type=request.type,
        description=request.description or request.prompt or "",
        budget_max=request.budget_max,
        requirements=request.requirements,
        posted_by=request.posted_by,
    )
    return dump(job)


@router.get("/api/jobs")
async def list_jobs(status: Optional[str] = None, market: Marketplace = Depends(get_market)):
    """Get all jobs, optionally filtered by status."""
    if status:
        try:
            job_status = JobStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown job status: {status}")
        jobs = await market.jobs.list_by_status(job_status)
    else:
        jobs = await market.jobs.list_all()
    return {"jobs": [dump(j) for j in jobs], "count": len(jobs)}


@router.get("/api/jobs/{job_id}")
async def get_job_details(job_id: str, market: Marketplace = Depends(get_market)):
    """Job with its bids and escrow."""
    job = await market.jobs.get(job_id)
    bids = await market.bids.list_by_job(job_id)
    escrow = await market.store.get_escrow(job.escrow_id) if job.escrow_id else None
    return {
        **dump(job),
        "bids": [dump(b) for b in bids],
        "escrow": dump(escrow) if escrow else None,
    }


@router.get("/api/jobs/{job_id}/bids")
async def get_job_bids(job_id: str, market: Marketplace = Depends(get_market)):
    """Get all bids for a job, with agent names."""
    bids = await market.bids.list_by_job(job_id)
    enriched = []
    for bid in bids:
        agent = await market.store.get_agent(bid.agent_id)
        enriched.append({**dump(bid), "agent_name": agent.name if agent else "Unknown Agent"})
    return {"bids": enriched, "count": len(enriched)}


@router.post("/api/jobs/{job_id}/bids")
async def place_bid(
    job_id: str,
    request: Optional[BidRequest] = None,
    market: Marketplace = Depends(get_market),
):
    """Submit a bid. Without a body, every matching agent bids now."""
    if request is None:
        bids = await market.collect_demo_bids(job_id)
        return {"bids": [dump(b) for b in bids], "count": len(bids)}

    bid = await market.bids.submit(
        job_id=job_id,
        agent_id=request.agent_id,
        price=request.price,
        estimated_time=request.estimated_time,
        reasoning=request.reasoning,
        confidence=request.confidence,
    )
    return dump(bid)


@router.post("/api/jobs/{job_id}/select")
async def select_bid(job_id: str, market: Marketplace = Depends(get_market)):
    """Dry run of bid selection. Nothing is accepted."""
    selection = await market.coordinator.select(job_id)
    return selection.to_dict()


@router.post("/api/jobs/{job_id}/accept")
async def accept_bid(job_id: str, request: AcceptRequest, market: Marketplace = Depends(get_market)):
    """Accept a bid and fund its escrow."""
    job = await market.coordinator.accept_bid(job_id, request.bid_id)
    return dump(job)


@router.post("/api/jobs/{job_id}/execute")
async def execute_job(job_id: str, market: Marketplace = Depends(get_market)):
    """Run the assigned agent's work now."""
    job = await market.execute(job_id)
    return dump(job)


@router.post("/api/jobs/{job_id}/submit")
async def submit_work(job_id: str, request: SubmitRequest, market: Marketplace = Depends(get_market)):
    """Submit results for an in-progress job."""
    job = await market.coordinator.submit_work(job_id, request.agent_id, request.results)
    return dump(job)


@router.post("/api/jobs/{job_id}/verify")
async def verify_work(job_id: str, market: Marketplace = Depends(get_market)):
    """Verify submitted work and settle escrow."""
    verification, job = await market.coordinator.verify(job_id)
    return {
        "success": verification.approved,
        "verification": dump(verification),
        "job": dump(job),
    }


# ============================================================
# Agents
# ============================================================

@router.get("/api/agents")
async def list_agents(market: Marketplace = Depends(get_market)):
    """Get all agents and system wallets."""
    agents = await market.store.list_agents()
    return {"agents": [dump(a) for a in agents], "count": len(agents)}


@router.get("/api/agents/{agent_id}")
async def get_agent_details(agent_id: str, market: Marketplace = Depends(get_market)):
    agent = await market.get_agent(agent_id)
    return dump(agent)


@router.post("/api/agents/{agent_id}/deposit")
async def deposit(agent_id: str, request: DepositRequest, market: Marketplace = Depends(get_market)):
    """Credit a wallet from an on-chain token transfer."""
    txn = await market.deposit_from_chain(agent_id, request.tx_hash)
    agent = await market.get_agent(agent_id)
    return {"transaction": dump(txn), "wallet_balance": str(agent.wallet_balance)}


# ============================================================
# Ledger
# ============================================================

@router.get("/api/transactions")
async def list_transactions(
    job_id: Optional[str] = None,
    wallet: Optional[str] = None,
    market: Marketplace = Depends(get_market),
):
    txns = await market.store.list_transactions(job_id=job_id, wallet=wallet)
    return {"transactions": [dump(t) for t in txns], "count": len(txns)}


@router.get("/api/escrows/{escrow_id}")
async def get_escrow(escrow_id: str, market: Marketplace = Depends(get_market)):
    escrow = await market.ledger.get_escrow(escrow_id)
    return dump(escrow)


@router.get("/api/ledger/reconcile")
async def reconcile(market: Marketplace = Depends(get_market)):
    """Check that every wallet balance matches its transaction history."""
    mismatches = await market.ledger.reconcile()
    return {
        "balanced": not mismatches,
        "escrow_balance": str(await market.ledger.escrow_balance()),
        "mismatches": {
            wallet: {"ledger_delta": str(ledger_delta), "balance_delta": str(balance_delta)}
            for wallet, (ledger_delta, balance_delta) in mismatches.items()
        },
    }


# ============================================================
# App
# ============================================================

async def market_error_handler(request: Request, exc: MarketError) -> JSONResponse:
    logger.info("request_failed", path=request.url.path, error=exc.code, detail=exc.reasoning)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', []))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(status_code=400, content=ValidationError(detail).to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the marketplace with the app and stop it on shutdown."""
    await app.state.market.start()
    logger.info("agentmarket_api_started", run_agents=app.state.market.settings.run_agents)
    yield
    await app.state.market.stop()
    logger.info("agentmarket_api_stopped")


def create_app(market: Optional[Marketplace] = None) -> FastAPI:
    """Build the FastAPI app around a marketplace."""
    app = FastAPI(
        title="agentmarket",
        description="Job, bid and escrow coordination for AI agents",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.market = market or Marketplace()

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarketError, market_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)

    return app


app = create_app()
