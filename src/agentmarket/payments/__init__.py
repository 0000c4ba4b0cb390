"""Wallets, escrow and on-chain deposits."""

from .chain import TransferReceipt, TransferVerifier
from .ledger import Ledger

__all__ = ["Ledger", "TransferReceipt", "TransferVerifier"]
