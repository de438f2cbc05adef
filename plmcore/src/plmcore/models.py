"""
Core data models using Pydantic for validation and serialization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from plmcore.constants import COIN


class BackendMode(str, Enum):
    ELECTRUM = "electrum"
    RPC = "rpc"


class MessageStatus(IntEnum):
    """Delivery status. Ordered: a status only moves forward outside a forced rescan."""

    SENDING = 0
    BROADCAST_UNCONFIRMED = 1
    CONFIRMED = 2

    @classmethod
    def from_confirmations(cls, confirmations: int) -> MessageStatus:
        return cls.CONFIRMED if confirmations > 0 else cls.BROADCAST_UNCONFIRMED


def sats_to_coins(value: int) -> Decimal:
    return (Decimal(value) / COIN).quantize(Decimal("0.00000001"))


def coins_to_sats(amount: Decimal | float | str | int) -> int:
    return int((Decimal(str(amount)) * COIN).to_integral_value())


def utc_now() -> datetime:
    return datetime.now(UTC)


class _MessageBase(BaseModel):
    id: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: MessageStatus = MessageStatus.SENDING
    txid: str
    amount: Decimal | None = None


class OutgoingMessage(_MessageBase):
    direction: Literal["outgoing"] = "outgoing"
    fee: Decimal | None = None
    total_spent: Decimal | None = None


class IncomingMessage(_MessageBase):
    direction: Literal["incoming"] = "incoming"


Message = Annotated[OutgoingMessage | IncomingMessage, Field(discriminator="direction")]

# Message history persisted per contact bucket
MessageHistory = TypeAdapter(dict[str, list[Message]])


class Contact(BaseModel):
    id: str = Field(..., min_length=1, description="Counterparty public key (hex)")
    address: str
    name: str = ""
    unread: int = Field(default=0, ge=0)

    @field_validator("id")
    @classmethod
    def normalize_id(cls, v: str) -> str:
        return v.strip().lower()

    def display_name(self) -> str:
        return self.name or f"...{self.id[-4:]}"


ContactList = TypeAdapter(list[Contact])


class ChatConfig(BaseModel):
    """Wallet session configuration, persisted as a plaintext blob."""

    mode: BackendMode = BackendMode.ELECTRUM
    host: str = "palladiumblockchain.net"
    port: int = Field(default=50002, ge=1, le=65535)
    user: str = ""
    password: str = ""
    use_ssl: bool = True
    lang: str = "en"
    show_txid: bool = True
    retention_days: int = Field(default=0, ge=0, description="0 = keep forever")
    rescan_hours: int = Field(default=0, ge=0, description="Legacy node history window")
    fee_rate: int = Field(default=1, description="sat/vbyte")
    default_amount: Decimal = Field(default=Decimal(0), ge=0)
    allow_unconfirmed_spend: bool = True
    config_version: int = 3

    scan_interval: float = Field(default=3.0, gt=0)
    balance_interval: float = Field(default=2.0, gt=0)

    @field_validator("fee_rate", mode="before")
    @classmethod
    def clamp_fee_rate(cls, v: object) -> int:
        try:
            rate = int(v)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            return 1
        return max(1, rate)

    @property
    def is_electrum(self) -> bool:
        return self.mode == BackendMode.ELECTRUM
