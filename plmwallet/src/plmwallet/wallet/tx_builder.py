"""
Transaction builder for chat messages.

Every message transaction has the same shape:
- Inputs: greedily selected UTXOs of the session address (P2WPKH)
- Outputs, in order: OP_RETURN envelope (value 0), recipient payment,
  change back to the session address (only above dust)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger
from plmcore.address import address_to_scriptpubkey, pubkey_to_p2wpkh_script
from plmcore.constants import STANDARD_DUST_LIMIT
from plmcore.crypto import encode_envelope, encrypt_message
from plmcore.errors import ChatError, SigningError
from plmcore.keys import KeyPair, derive_address, is_valid_pubkey
from plmcore.models import BackendMode, MessageStatus, OutgoingMessage, sats_to_coins

from plmwallet.backends.base import UTXO, ChainBackend
from plmwallet.wallet.coin_selection import CoinSelection, select_coins
from plmwallet.wallet.script import op_return_script
from plmwallet.wallet.signing import (
    Transaction,
    TransactionParseError,
    TxInput,
    TxOutput,
    create_p2wpkh_script_code,
    create_witness_stack,
    deserialize_transaction,
    serialize_transaction,
    sign_p2wpkh_input,
)

TX_VERSION = 2

_PUBKEY_HEX = re.compile(r"^(?:[0-9a-fA-F]{66}|[0-9a-fA-F]{130})$")


class InvalidRecipient(ChatError):
    pass


@dataclass
class SpendInput:
    """
    A selected UTXO ready for signing.

    ``prev_tx`` holds the full referenced transaction for the legacy node,
    which has to be validated before we commit to its value.
    """

    utxo: UTXO
    script_pubkey: bytes
    value: int
    prev_tx: bytes | None = None


def validate_recipient_pubkey(pubkey_hex: str) -> str:
    """
    Check a recipient key: 66 or 130 hex characters and a point on secp256k1.

    Returns:
        The key lowercased
    """
    pubkey_hex = pubkey_hex.strip()
    if not _PUBKEY_HEX.match(pubkey_hex):
        raise InvalidRecipient("Invalid Recipient Public Key. Must be 66 or 130 hex characters.")
    if not is_valid_pubkey(pubkey_hex):
        raise InvalidRecipient("Invalid Recipient Public Key. Not a valid secp256k1 point.")
    return pubkey_hex.lower()


def build_outputs(
    envelope: bytes,
    recipient_address: str,
    payment: int,
    change_address: str,
    change: int,
) -> list[TxOutput]:
    outputs = [TxOutput(value=0, script=op_return_script(envelope))]
    if payment > 0:
        outputs.append(TxOutput(value=payment, script=address_to_scriptpubkey(recipient_address)))
    if change > STANDARD_DUST_LIMIT:
        outputs.append(TxOutput(value=change, script=address_to_scriptpubkey(change_address)))
    return outputs


def sign_transaction(keypair: KeyPair, inputs: list[SpendInput], outputs: list[TxOutput]) -> Transaction:
    """Create and sign a transaction spending ``inputs`` with the session key."""
    tx = Transaction(
        version=TX_VERSION.to_bytes(4, "little"),
        marker_flag=True,
        inputs=[
            TxInput(txid_le=bytes.fromhex(inp.utxo.txid)[::-1], vout=inp.utxo.vout)
            for inp in inputs
        ],
        outputs=outputs,
        locktime=(0).to_bytes(4, "little"),
    )

    pubkey = keypair.public_key_bytes()
    script_code = create_p2wpkh_script_code(pubkey)

    for index, inp in enumerate(inputs):
        signature = sign_p2wpkh_input(tx, index, script_code, inp.value, keypair.private_key)
        tx.inputs[index].witness = create_witness_stack(signature, pubkey)

    tx.raw = serialize_transaction(tx)
    return tx


class MessageTxBuilder:
    """
    Builds, signs and broadcasts message transactions for one session key.
    """

    def __init__(self, keypair: KeyPair, backend: ChainBackend):
        self.keypair = keypair
        self.backend = backend
        self.address = keypair.address()
        self.script_pubkey = pubkey_to_p2wpkh_script(keypair.public_key_bytes())

    async def prepare_inputs(self, selection: CoinSelection) -> list[SpendInput]:
        """
        Attach the spent output to each selected UTXO.

        The indexer reports value and script with the UTXO, so they are used
        inline. The legacy node requires fetching the full previous transaction
        and validating the referenced output against our own script.
        """
        inputs: list[SpendInput] = []
        for utxo in selection.utxos:
            if self.backend.mode == BackendMode.ELECTRUM:
                inputs.append(SpendInput(utxo, self.script_pubkey, utxo.value))
                continue

            prev_raw = await self.backend.get_raw_transaction(utxo.txid)
            try:
                prev_tx = deserialize_transaction(prev_raw)
            except TransactionParseError as e:
                raise SigningError(f"Signing error: cannot parse {utxo.txid}: {e}") from e

            if utxo.vout >= len(prev_tx.outputs):
                raise SigningError(f"Signing error: {utxo.txid} has no output {utxo.vout}")
            prev_out = prev_tx.outputs[utxo.vout]
            if prev_out.script != self.script_pubkey:
                raise SigningError(f"Signing error: {utxo.txid}:{utxo.vout} is not ours")
            if prev_out.value != utxo.value:
                logger.warning(
                    f"UTXO {utxo.txid}:{utxo.vout} value mismatch: "
                    f"backend={utxo.value}, tx={prev_out.value}"
                )
            inputs.append(SpendInput(utxo, prev_out.script, prev_out.value, prev_raw))
        return inputs

    async def send_message(
        self,
        recipient_pubkey: str,
        text: str,
        payment: int = 0,
        fee_rate: int = 1,
        include_unconfirmed: bool = True,
    ) -> OutgoingMessage:
        """
        Encrypt ``text`` for the recipient and broadcast it with ``payment`` sats.

        Raises:
            InvalidRecipient: Malformed recipient key
            KeyAgreementError: ECDH with the recipient key failed
            InsufficientFunds: Not enough spendable value
            SigningError: An input could not be signed
            BroadcastError: The backend rejected the transaction
        """
        recipient_pubkey = validate_recipient_pubkey(recipient_pubkey)
        recipient_address = derive_address(recipient_pubkey)

        payload = encrypt_message(text, recipient_pubkey, self.keypair.private_key)
        envelope = encode_envelope(payload)

        utxos = await self.backend.list_unspent(self.address, include_unconfirmed)
        selection = select_coins(utxos, max(0, payment), len(envelope), fee_rate)

        inputs = await self.prepare_inputs(selection)
        outputs = build_outputs(
            envelope,
            recipient_address,
            selection.payment,
            self.address,
            selection.change_value,
        )
        tx = sign_transaction(self.keypair, inputs, outputs)

        logger.info(
            f"Broadcasting message tx {tx.txid}: {len(inputs)} input(s), "
            f"payment={selection.payment}, change={selection.change_value}, fee={selection.fee}"
        )
        txid = await self.backend.broadcast(tx.raw)

        return OutgoingMessage(
            id=txid,
            text=text,
            status=MessageStatus.SENDING,
            txid=txid,
            amount=sats_to_coins(payment) if payment > 0 else None,
            fee=sats_to_coins(selection.fee),
            total_spent=sats_to_coins(selection.payment + selection.fee),
        )
