"""
Minimal script handling: data pushes, OP_RETURN outputs and decompilation.
"""

from __future__ import annotations

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_RETURN = 0x6A


class ScriptError(Exception):
    pass


def push_data(data: bytes) -> bytes:
    """Minimal push opcode + data."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data


def op_return_script(data: bytes) -> bytes:
    """Unspendable data-carrier script: OP_RETURN <data>."""
    return bytes([OP_RETURN]) + push_data(data)


def decompile(script: bytes) -> list[int | bytes]:
    """
    Split a script into opcodes (int) and pushed data (bytes).

    Raises:
        ScriptError: If a push runs past the end of the script
    """
    chunks: list[int | bytes] = []
    offset = 0

    while offset < len(script):
        opcode = script[offset]
        offset += 1

        if 0 < opcode < OP_PUSHDATA1:
            length = opcode
        elif opcode == OP_PUSHDATA1:
            length = script[offset] if offset < len(script) else -1
            offset += 1
        elif opcode == OP_PUSHDATA2:
            length = int.from_bytes(script[offset : offset + 2], "little")
            offset += 2
        elif opcode == OP_PUSHDATA4:
            length = int.from_bytes(script[offset : offset + 4], "little")
            offset += 4
        else:
            chunks.append(opcode)
            continue

        if length < 0 or offset + length > len(script):
            raise ScriptError("Push data exceeds script length")
        chunks.append(script[offset : offset + length])
        offset += length

    return chunks


def extract_op_return_data(script: bytes) -> bytes | None:
    """Data pushed by an OP_RETURN script, or None for any other script."""
    if not script or script[0] != OP_RETURN:
        return None
    try:
        chunks = decompile(script)
    except ScriptError:
        return None
    if len(chunks) > 1 and isinstance(chunks[1], bytes) and chunks[1]:
        return chunks[1]
    return None
