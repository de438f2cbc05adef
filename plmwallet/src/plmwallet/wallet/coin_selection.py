"""
UTXO selection and fee estimation.

Sizes follow a fixed P2WPKH-only model:
- base: 10 bytes overhead + 41 per input + (11 + payload) for the data
  carrier + 31 per value output
- witness: 108 per input (signature + pubkey stack)
- total = base + witness + 2 (segwit marker/flag)
- vbytes = ceil((3 * base + total) / 4) + 2 relay margin
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from loguru import logger
from plmcore.constants import MIN_RECIPIENT_AMOUNT, STANDARD_DUST_LIMIT
from plmcore.errors import InsufficientFunds

from plmwallet.backends.base import UTXO

TX_OVERHEAD_BYTES = 10
INPUT_BASE_BYTES = 41
INPUT_WITNESS_BYTES = 108
DATA_OUTPUT_BYTES = 11
VALUE_OUTPUT_BYTES = 31
SEGWIT_MARKER_BYTES = 2
RELAY_MARGIN_VBYTES = 2


@dataclass
class CoinSelection:
    """Result of a successful selection. All values in satoshis."""

    utxos: list[UTXO] = field(default_factory=list)
    total_value: int = 0
    payment: int = 0
    change_value: int = 0
    fee: int = 0
    vbytes: int = 0

    @property
    def has_change(self) -> bool:
        return self.change_value > 0


def estimate_vbytes(
    num_inputs: int,
    payload_len: int,
    has_recipient: bool = True,
    has_change: bool = True,
) -> int:
    value_outputs = int(has_recipient) + int(has_change)
    base = (
        TX_OVERHEAD_BYTES
        + INPUT_BASE_BYTES * num_inputs
        + DATA_OUTPUT_BYTES
        + payload_len
        + VALUE_OUTPUT_BYTES * value_outputs
    )
    witness = INPUT_WITNESS_BYTES * num_inputs
    total = base + witness + SEGWIT_MARKER_BYTES
    return math.ceil((base * 3 + total) / 4) + RELAY_MARGIN_VBYTES


def estimate_fee(
    num_inputs: int,
    payload_len: int,
    fee_rate: int,
    has_recipient: bool = True,
    has_change: bool = True,
) -> int:
    """Fee in satoshis for the given shape at ``fee_rate`` sat/vbyte (floored at 1)."""
    return estimate_vbytes(num_inputs, payload_len, has_recipient, has_change) * max(1, fee_rate)


def recipient_amount(payment: int) -> int:
    """Value of the recipient output: the payment, floored at the carrier amount."""
    return max(MIN_RECIPIENT_AMOUNT, payment)


def select_coins(
    utxos: list[UTXO],
    payment: int,
    payload_len: int,
    fee_rate: int = 1,
) -> CoinSelection:
    """
    Greedy selection over ``utxos`` in the order given.

    Inputs are added one at a time. After each addition the change variant is
    tried first; if its change would fall to the dust limit or below, the
    no-change variant is tried and the remainder goes to the fee.

    Raises:
        InsufficientFunds: If the full candidate set cannot cover payment + fee
    """
    fee_rate = max(1, fee_rate)
    amount = recipient_amount(payment)

    selected: list[UTXO] = []
    total = 0

    for utxo in utxos:
        selected.append(utxo)
        total += utxo.value
        n = len(selected)

        fee_with_change = estimate_fee(n, payload_len, fee_rate, has_change=True)
        change = total - amount - fee_with_change
        if change > STANDARD_DUST_LIMIT:
            logger.debug(f"Selected {n} UTXO(s) with change {change} sats")
            return CoinSelection(
                utxos=selected,
                total_value=total,
                payment=amount,
                change_value=change,
                fee=fee_with_change,
                vbytes=estimate_vbytes(n, payload_len, has_change=True),
            )

        fee_no_change = estimate_fee(n, payload_len, fee_rate, has_change=False)
        if total >= amount + fee_no_change:
            logger.debug(
                f"Selected {n} UTXO(s) without change, "
                f"{total - amount - fee_no_change} sats folded into fee"
            )
            return CoinSelection(
                utxos=selected,
                total_value=total,
                payment=amount,
                change_value=0,
                fee=total - amount,
                vbytes=estimate_vbytes(n, payload_len, has_change=False),
            )

    n = max(1, len(selected))
    has_change = total - amount > STANDARD_DUST_LIMIT
    vbytes = estimate_vbytes(n, payload_len, has_change=has_change)
    fee = vbytes * fee_rate
    raise InsufficientFunds(
        required=amount + fee,
        available=total,
        fee=fee,
        vbytes=vbytes,
        fee_rate=fee_rate,
    )
