"""
Transaction (de)serialization and signing utilities for P2WPKH inputs.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from coincurve import PrivateKey
from plmcore.address import hash160
from plmcore.errors import SigningError

SIGHASH_ALL = 1

# CompactSize prefix byte -> payload width
_VARINT_WIDTHS = {0xFD: 2, 0xFE: 4, 0xFF: 8}


class TransactionParseError(Exception):
    pass


@dataclass
class TxInput:
    txid_le: bytes
    vout: int
    script: bytes = b""
    sequence: bytes = b"\xff\xff\xff\xff"
    witness: list[bytes] = field(default_factory=list)

    @property
    def txid(self) -> str:
        return self.txid_le[::-1].hex()


@dataclass
class TxOutput:
    value: int
    script: bytes


@dataclass
class Transaction:
    version: bytes
    marker_flag: bool
    inputs: list[TxInput]
    outputs: list[TxOutput]
    locktime: bytes
    raw: bytes = b""

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, RPC byte order."""
        return hash256(serialize_transaction(self, include_witness=False))[::-1].hex()


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Decode a CompactSize integer at `offset`. Returns (value, next offset)."""
    if offset >= len(data):
        raise TransactionParseError("Unexpected end of transaction data")
    prefix = data[offset]
    width = _VARINT_WIDTHS.get(prefix, 0)
    if not width:
        return prefix, offset + 1
    raw, end = _take(data, offset + 1, width)
    return int.from_bytes(raw, "little"), end


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _take(data: bytes, offset: int, length: int) -> tuple[bytes, int]:
    end = offset + length
    if end > len(data):
        raise TransactionParseError("Unexpected end of transaction data")
    return data[offset:end], end


def deserialize_transaction(tx_bytes: bytes) -> Transaction:
    """
    Parse a raw transaction, keeping witness stacks.

    Raises:
        TransactionParseError: If the bytes are not a well-formed transaction
    """
    try:
        offset = 0
        version, offset = _take(tx_bytes, offset, 4)

        marker_flag = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            marker_flag = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxInput] = []

        for _ in range(input_count):
            txid_le, offset = _take(tx_bytes, offset, 32)
            vout_bytes, offset = _take(tx_bytes, offset, 4)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _take(tx_bytes, offset, script_len)
            sequence, offset = _take(tx_bytes, offset, 4)
            inputs.append(
                TxInput(txid_le, int.from_bytes(vout_bytes, "little"), script, sequence)
            )

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOutput] = []

        for _ in range(output_count):
            value_bytes, offset = _take(tx_bytes, offset, 8)
            script_len, offset = read_varint(tx_bytes, offset)
            script, offset = _take(tx_bytes, offset, script_len)
            outputs.append(TxOutput(int.from_bytes(value_bytes, "little"), script))

        if marker_flag:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    item, offset = _take(tx_bytes, offset, item_len)
                    inp.witness.append(item)

        locktime, offset = _take(tx_bytes, offset, 4)
        return Transaction(version, marker_flag, inputs, outputs, locktime, tx_bytes)

    except IndexError as e:
        raise TransactionParseError(f"Failed to parse transaction: {e}") from e


def serialize_transaction(tx: Transaction, include_witness: bool = True) -> bytes:
    with_witness = include_witness and any(inp.witness for inp in tx.inputs)

    result = tx.version
    if with_witness:
        result += b"\x00\x01"

    result += encode_varint(len(tx.inputs))
    for inp in tx.inputs:
        result += inp.txid_le + inp.vout.to_bytes(4, "little")
        result += encode_varint(len(inp.script)) + inp.script
        result += inp.sequence

    result += encode_varint(len(tx.outputs))
    for out in tx.outputs:
        result += out.value.to_bytes(8, "little")
        result += encode_varint(len(out.script)) + out.script

    if with_witness:
        for inp in tx.inputs:
            result += encode_varint(len(inp.witness))
            for item in inp.witness:
                result += encode_varint(len(item)) + item

    return result + tx.locktime


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash."""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")

    hash_prevouts = hash256(
        b"".join(inp.txid_le + inp.vout.to_bytes(4, "little") for inp in tx.inputs)
    )
    hash_sequence = hash256(b"".join(inp.sequence for inp in tx.inputs))
    hash_outputs = hash256(
        b"".join(
            out.value.to_bytes(8, "little") + encode_varint(len(out.script)) + out.script
            for out in tx.outputs
        )
    )

    target_input = tx.inputs[input_index]

    preimage = (
        tx.version
        + hash_prevouts
        + hash_sequence
        + target_input.txid_le
        + target_input.vout.to_bytes(4, "little")
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target_input.sequence
        + hash_outputs
        + tx.locktime
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    private_key: PrivateKey,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a P2WPKH input using coincurve.

    Returns:
        DER-encoded signature with sighash type byte appended
    """
    sighash = compute_sighash_segwit(tx, input_index, script_code, value, sighash_type)

    # sighash is already SHA256d; hasher=None signs it as-is
    try:
        signature = private_key.sign(sighash, hasher=None)
    except ValueError as e:
        raise SigningError(f"Signing error: {e}") from e

    return signature + bytes([sighash_type])


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG, 25 bytes
    without length prefix.
    """
    return b"\x76\xa9\x14" + hash160(pubkey_bytes) + b"\x88\xac"


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]
