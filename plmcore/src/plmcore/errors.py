"""
Error taxonomy for the chat wallet.

Errors raised from user actions (open, send, rescan) propagate to the caller.
Background scan and balance ticks log them and retry on the next timer.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all chat wallet errors."""


class InvalidKeyFormat(ChatError):
    """The secret key could not be decoded with any known version byte."""


class KeyAgreementError(ChatError):
    """ECDH produced no usable shared point."""


class BackendError(ChatError):
    """The backend answered with an error. The message is the backend's own."""


class BackendConnectionError(BackendError):
    """The backend could not be reached or broke protocol."""


class BroadcastError(BackendError):
    """The backend rejected a transaction."""


class SigningError(ChatError):
    pass


class WalletNotReady(ChatError):
    pass


class InsufficientFunds(ChatError):
    """Not enough spendable value to cover payment plus fee (amounts in satoshis)."""

    def __init__(
        self,
        required: int,
        available: int,
        fee: int,
        vbytes: int,
        fee_rate: int,
    ) -> None:
        self.required = required
        self.available = available
        self.fee = fee
        self.vbytes = vbytes
        self.fee_rate = fee_rate
        super().__init__(
            f"Insufficient funds: need at least {required / 1e8:.8f} PLM "
            f"(available: {available / 1e8:.8f} PLM). Fee rate: {fee_rate} sat/vB "
            f"({fee / 1e8:.8f} PLM for ~{vbytes} vBytes)"
        )
