"""
Tests for plmcore.models and plmcore.errors
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from plmcore.errors import BackendConnectionError, BackendError, ChatError, InsufficientFunds
from plmcore.models import (
    BackendMode,
    ChatConfig,
    Contact,
    ContactList,
    IncomingMessage,
    MessageHistory,
    MessageStatus,
    OutgoingMessage,
    coins_to_sats,
    sats_to_coins,
)


def test_message_status_ordering():
    assert MessageStatus.SENDING < MessageStatus.BROADCAST_UNCONFIRMED < MessageStatus.CONFIRMED
    assert max(MessageStatus.CONFIRMED, MessageStatus.BROADCAST_UNCONFIRMED) == (
        MessageStatus.CONFIRMED
    )


def test_message_status_from_confirmations():
    assert MessageStatus.from_confirmations(0) == MessageStatus.BROADCAST_UNCONFIRMED
    assert MessageStatus.from_confirmations(1) == MessageStatus.CONFIRMED
    assert MessageStatus.from_confirmations(6) == MessageStatus.CONFIRMED


def test_amount_conversion():
    assert sats_to_coins(2000) == Decimal("0.00002000")
    assert sats_to_coins(100_000_000) == Decimal("1")
    assert coins_to_sats(Decimal("0.00002")) == 2000
    assert coins_to_sats("1.5") == 150_000_000
    assert coins_to_sats(0.1) == 10_000_000


def test_message_history_tagged_union():
    raw = {
        "02" + "ab" * 32: [
            {
                "id": "aa" * 32,
                "text": "hi",
                "txid": "aa" * 32,
                "direction": "outgoing",
                "status": 2,
                "fee": "0.00000250",
                "total_spent": "0.00001250",
            },
            {"id": "bb" * 32, "text": "hello", "txid": "bb" * 32, "direction": "incoming"},
        ]
    }
    history = MessageHistory.validate_python(raw)
    sent, received = history["02" + "ab" * 32]

    assert isinstance(sent, OutgoingMessage)
    assert sent.status == MessageStatus.CONFIRMED
    assert sent.fee == Decimal("0.00000250")
    assert isinstance(received, IncomingMessage)
    assert received.status == MessageStatus.SENDING
    assert not hasattr(received, "fee")


def test_message_history_json_roundtrip_keeps_direction():
    msg = IncomingMessage(
        id="cc" * 32,
        text="x",
        txid="cc" * 32,
        timestamp=datetime(2024, 1, 1, tzinfo=UTC),
        status=MessageStatus.BROADCAST_UNCONFIRMED,
        amount=Decimal("0.5"),
    )
    dumped = MessageHistory.dump_python({"k": [msg]}, mode="json")
    assert dumped["k"][0]["direction"] == "incoming"

    restored = MessageHistory.validate_python(dumped)["k"][0]
    assert restored == msg


def test_contact_normalizes_id():
    contact = Contact(id="  02ABCDEF  ", address="plm1qxyz")
    assert contact.id == "02abcdef"
    assert contact.display_name() == "...cdef"

    named = Contact(id="02abcdef", address="plm1qxyz", name="Bob")
    assert named.display_name() == "Bob"


def test_contact_unread_non_negative():
    with pytest.raises(ValueError):
        Contact(id="02ab", address="plm1qxyz", unread=-1)


def test_contact_list_json():
    contacts = [Contact(id="02ab", address="plm1q", name="A", unread=3)]
    restored = ContactList.validate_json(ContactList.dump_json(contacts))
    assert restored == contacts


@pytest.mark.parametrize("value,expected", [(0, 1), (-5, 1), ("abc", 1), (None, 1), (7, 7)])
def test_config_fee_rate_clamped(value, expected):
    assert ChatConfig(fee_rate=value).fee_rate == expected


def test_config_defaults():
    config = ChatConfig()
    assert config.mode == BackendMode.ELECTRUM
    assert config.is_electrum
    assert config.port == 50002
    assert config.retention_days == 0
    assert config.scan_interval == 3.0
    assert config.balance_interval == 2.0
    assert "secret" not in config.model_dump()
    assert "wif" not in config.model_dump()


def test_config_rpc_mode_from_json():
    config = ChatConfig.model_validate_json('{"mode": "rpc", "port": 2332}')
    assert config.mode == BackendMode.RPC
    assert not config.is_electrum


def test_error_hierarchy():
    assert issubclass(BackendConnectionError, BackendError)
    assert issubclass(BackendError, ChatError)


def test_insufficient_funds_message():
    error = InsufficientFunds(required=3250, available=1000, fee=250, vbytes=250, fee_rate=1)
    assert error.required == 3250
    assert error.available == 1000
    text = str(error)
    assert "0.00003250 PLM" in text
    assert "0.00001000 PLM" in text
    assert "1 sat/vB" in text
    assert "~250 vBytes" in text
