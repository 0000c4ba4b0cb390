"""MongoDB store for agentmarket."""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
import structlog

from ..models import Agent, Bid, Escrow, EscrowStatus, Job, JobStatus, Transaction
from .base import MarketStore

logger = structlog.get_logger()


# ============================================================
# Collection Names
# ============================================================

AGENTS_COLLECTION = "market_agents"
JOBS_COLLECTION = "market_jobs"
BIDS_COLLECTION = "market_bids"
TRANSACTIONS_COLLECTION = "market_transactions"
ESCROWS_COLLECTION = "market_escrows"


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Drop Mongo's ``_id`` so the document validates as a model."""
    if doc is None:
        return None
    return {key: value for key, value in doc.items() if key != "_id"}


def to_doc(record) -> dict:
    # JSON mode keeps Decimal amounts as exact strings
    return record.model_dump(mode="json")


class MongoStore(MarketStore):
    """Store backed by MongoDB via motor."""

    def __init__(self, uri: str, database: str):
        self.uri = uri
        self.database = database
        self._client: Optional[AsyncIOMotorClient] = None
        self._db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self) -> None:
        if self._db is None:
            self._client = AsyncIOMotorClient(self.uri)
            self._db = self._client[self.database]
            logger.info("mongodb_connected", database=self.database)
        try:
            await self.setup_indexes()
        except PyMongoError as e:
            # Indexes usually exist already
            logger.warning("index_setup_failed", error=str(e))

    async def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None
            self._db = None
            logger.info("mongodb_disconnected")

    def _collection(self, name: str) -> AsyncIOMotorCollection:
        if self._db is None:
            raise RuntimeError("MongoStore.connect() has not been awaited")
        return self._db[name]

    async def setup_indexes(self) -> None:
        """Create indexes for all collections."""
        agents = self._collection(AGENTS_COLLECTION)
        await agents.create_index([("agent_id", 1)], unique=True)

        jobs = self._collection(JOBS_COLLECTION)
        await jobs.create_index([("job_id", 1)], unique=True)
        await jobs.create_index([("status", 1), ("posted_at", 1)])

        bids = self._collection(BIDS_COLLECTION)
        await bids.create_index([("bid_id", 1)], unique=True)
        await bids.create_index([("job_id", 1), ("agent_id", 1)], unique=True)

        txns = self._collection(TRANSACTIONS_COLLECTION)
        await txns.create_index([("txn_id", 1)], unique=True)
        await txns.create_index([("job_id", 1)])
        await txns.create_index([("from_wallet", 1)])
        await txns.create_index([("to_wallet", 1)])

        escrows = self._collection(ESCROWS_COLLECTION)
        await escrows.create_index([("escrow_id", 1)], unique=True)
        await escrows.create_index([("status", 1)])

    async def _replace(self, name: str, key: str, record) -> None:
        doc = to_doc(record)
        await self._collection(name).replace_one({key: doc[key]}, doc, upsert=True)

    async def _find_one(self, name: str, key: str, value: str) -> Optional[dict]:
        doc = await self._collection(name).find_one({key: value})
        return serialize_doc(doc)

    async def _find(self, name: str, query: dict, sort: list) -> list[dict]:
        cursor = self._collection(name).find(query).sort(sort)
        return [serialize_doc(doc) async for doc in cursor]

    # ============================================================
    # Job Operations
    # ============================================================

    async def save_job(self, job: Job) -> None:
        await self._replace(JOBS_COLLECTION, "job_id", job)

    async def get_job(self, job_id: str) -> Optional[Job]:
        doc = await self._find_one(JOBS_COLLECTION, "job_id", job_id)
        return Job.model_validate(doc) if doc else None

    async def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        query = {"status": status.value} if status else {}
        docs = await self._find(JOBS_COLLECTION, query, [("posted_at", 1)])
        return [Job.model_validate(d) for d in docs]

    # ============================================================
    # Bid Operations
    # ============================================================

    async def save_bid(self, bid: Bid) -> None:
        await self._replace(BIDS_COLLECTION, "bid_id", bid)

    async def get_bid(self, bid_id: str) -> Optional[Bid]:
        doc = await self._find_one(BIDS_COLLECTION, "bid_id", bid_id)
        return Bid.model_validate(doc) if doc else None

    async def list_bids(self, job_id: str) -> list[Bid]:
        docs = await self._find(BIDS_COLLECTION, {"job_id": job_id}, [("submitted_at", 1)])
        return [Bid.model_validate(d) for d in docs]

    # ============================================================
    # Agent Operations
    # ============================================================

    async def save_agent(self, agent: Agent) -> None:
        await self._replace(AGENTS_COLLECTION, "agent_id", agent)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        doc = await self._find_one(AGENTS_COLLECTION, "agent_id", agent_id)
        return Agent.model_validate(doc) if doc else None

    async def list_agents(self) -> list[Agent]:
        docs = await self._find(AGENTS_COLLECTION, {}, [("created_at", 1)])
        return [Agent.model_validate(d) for d in docs]

    # ============================================================
    # Ledger Operations
    # ============================================================

    async def append_transaction(self, txn: Transaction) -> None:
        await self._collection(TRANSACTIONS_COLLECTION).insert_one(to_doc(txn))

    async def list_transactions(
        self,
        job_id: Optional[str] = None,
        wallet: Optional[str] = None,
    ) -> list[Transaction]:
        query: dict = {}
        if job_id is not None:
            query["job_id"] = job_id
        if wallet is not None:
            query["$or"] = [{"from_wallet": wallet}, {"to_wallet": wallet}]
        docs = await self._find(TRANSACTIONS_COLLECTION, query, [("created_at", 1), ("_id", 1)])
        return [Transaction.model_validate(d) for d in docs]

    async def save_escrow(self, escrow: Escrow) -> None:
        await self._replace(ESCROWS_COLLECTION, "escrow_id", escrow)

    async def get_escrow(self, escrow_id: str) -> Optional[Escrow]:
        doc = await self._find_one(ESCROWS_COLLECTION, "escrow_id", escrow_id)
        return Escrow.model_validate(doc) if doc else None

    async def list_escrows(self, status: Optional[EscrowStatus] = None) -> list[Escrow]:
        query = {"status": status.value} if status else {}
        docs = await self._find(ESCROWS_COLLECTION, query, [("created_at", 1)])
        return [Escrow.model_validate(d) for d in docs]
