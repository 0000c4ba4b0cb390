"""agentmarket: job, bid and escrow coordination for a marketplace of AI agents."""

__version__ = "0.1.0"
