"""Error taxonomy for the marketplace.

Every error carries a human-readable ``reasoning`` string because the UI
shows it to the user directly.
"""


class MarketError(Exception):
    """Base class for marketplace errors."""

    status_code = 500
    code = "market_error"

    def __init__(self, reasoning: str):
        super().__init__(reasoning)
        self.reasoning = reasoning

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.reasoning}


class ValidationError(MarketError):
    """Missing or malformed request fields."""

    status_code = 400
    code = "validation_error"


class NotFound(MarketError):
    """Unknown job, agent, bid or escrow id."""

    status_code = 404
    code = "not_found"


class DuplicateBid(MarketError):
    """Agent already bid on this job; the original bid stands."""

    status_code = 409
    code = "duplicate_bid"


class WindowClosed(MarketError):
    """Job is no longer accepting bids."""

    status_code = 409
    code = "window_closed"


class InvalidTransition(MarketError):
    """Operation not allowed in the job's current status."""

    status_code = 409
    code = "invalid_transition"


class EscrowNotHeld(MarketError):
    """Escrow was already released or cancelled."""

    status_code = 409
    code = "escrow_not_held"


class InsufficientBalance(MarketError):
    """Payer wallet cannot fund the escrow."""

    status_code = 402
    code = "insufficient_balance"


class ExternalServiceError(MarketError):
    """LLM or chain call failed after retries, or returned unusable output."""

    status_code = 502
    code = "external_service_error"
