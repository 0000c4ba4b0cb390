"""ERC-20 transfer verification for wallet deposits.

A user tops up an agent wallet by sending tokens to the owner address on
chain and posting the transaction hash. We read the receipt over JSON-RPC,
find the token ``Transfer`` log addressed to the owner and convert the
amount with the token's decimals.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import httpx
import structlog

from ..config import Settings, get_settings
from ..errors import ExternalServiceError, ValidationError

logger = structlog.get_logger()

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"


@dataclass
class TransferReceipt:
    """A confirmed token transfer to the owner address."""
    tx_hash: str
    from_address: str
    amount: Decimal  # tokens, not USD


def topic_to_address(topic: str) -> str:
    """Indexed address topics are left-padded to 32 bytes."""
    return "0x" + topic[-40:].lower()


class TransferVerifier:
    """Checks ERC-20 transfers to the owner address via JSON-RPC."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = settings or get_settings()
        self.rpc_url = settings.chain_rpc_url
        self.token_address = settings.token_address.lower()
        self.token_decimals = settings.token_decimals
        self.owner_address = settings.token_owner_address.lower()
        self.usd_rate = settings.token_usd_rate
        self.timeout = settings.llm_timeout_seconds
        self._transport = transport

    async def _rpc(self, method: str, params: list) -> Optional[dict]:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("chain_rpc_failed", method=method, error=str(e))
            raise ExternalServiceError(f"Chain RPC {method} failed: {e}")

        if data.get("error"):
            message = data["error"].get("message", "unknown error")
            logger.error("chain_rpc_error", method=method, error=message)
            raise ExternalServiceError(f"Chain RPC {method} returned an error: {message}")
        return data.get("result")

    async def verify(self, tx_hash: str) -> TransferReceipt:
        """Return the transfer to the owner found in ``tx_hash``.

        Raises:
            ValidationError: pending, failed or no matching transfer
            ExternalServiceError: RPC unreachable or returned an error
        """
        if not self.owner_address:
            raise ValidationError("Deposits are disabled: no token owner address configured")
        if not tx_hash or not tx_hash.startswith("0x"):
            raise ValidationError(f"Not a transaction hash: {tx_hash!r}")

        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            raise ValidationError("Transaction not found or still pending")
        if receipt.get("status") == "0x0":
            raise ValidationError("Transaction failed")

        for log in receipt.get("logs", []):
            if log.get("address", "").lower() != self.token_address:
                continue
            topics = log.get("topics", [])
            if len(topics) < 3 or topics[0].lower() != TRANSFER_TOPIC:
                continue
            if topic_to_address(topics[2]) != self.owner_address:
                continue

            raw = int(log.get("data", "0x0"), 16)
            amount = Decimal(raw) / (Decimal(10) ** self.token_decimals)
            transfer = TransferReceipt(
                tx_hash=tx_hash,
                from_address=topic_to_address(topics[1]),
                amount=amount,
            )
            logger.info(
                "transfer_verified",
                tx_hash=tx_hash,
                from_address=transfer.from_address,
                amount=str(amount),
            )
            return transfer

        raise ValidationError("No token transfer to the owner address found in transaction")

    def to_usd(self, tokens: Decimal) -> Decimal:
        return tokens * self.usd_rate
