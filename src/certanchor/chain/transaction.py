"""Bitcoin transaction codec for anchor transactions.

Only what an anchor needs: legacy (non-witness) version-1 transactions,
P2PKH inputs and change, one OP_RETURN data output, SIGHASH_ALL.

Anchor payload layout inside the OP_RETURN push:

    ANCHOR_PREFIX (b"CRTA") ++ ANCHOR_VERSION (0x01) ++ root (32 bytes)

The prefix separates these anchors from unrelated OP_RETURN data.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from Crypto.Hash import RIPEMD160

from certanchor.models.anchor import Outpoint


ANCHOR_PREFIX = b"CRTA"
ANCHOR_VERSION = 1
ANCHOR_TAG = ANCHOR_PREFIX + bytes([ANCHOR_VERSION])
ROOT_SIZE = 32

OP_RETURN = 0x6A
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC

SIGHASH_ALL = 1
DEFAULT_SEQUENCE = 0xFFFFFFFF
DUST_LIMIT = 546
MAX_OP_RETURN_PAYLOAD = 80


# ------------------------------------------------------------------
# Hashing helpers
# ------------------------------------------------------------------

def double_sha256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


# ------------------------------------------------------------------
# Scripts
# ------------------------------------------------------------------

def push_data(data: bytes) -> bytes:
    """Minimal push opcode for ``data``."""
    size = len(data)
    if size < OP_PUSHDATA1:
        return bytes([size]) + data
    if size <= 0xFF:
        return bytes([OP_PUSHDATA1, size]) + data
    if size <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", size) + data
    raise ValueError("Push too large")


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    if len(pubkey_hash) != 20:
        raise ValueError("P2PKH needs a 20-byte public key hash")
    return bytes([OP_DUP, OP_HASH160]) + push_data(pubkey_hash) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def op_return_script(payload: bytes) -> bytes:
    if len(payload) > MAX_OP_RETURN_PAYLOAD:
        raise ValueError(f"OP_RETURN payload exceeds {MAX_OP_RETURN_PAYLOAD} bytes")
    return bytes([OP_RETURN]) + push_data(payload)


def parse_op_return(script: bytes) -> Optional[bytes]:
    """Return the data pushed by an OP_RETURN script, or None if it is not one."""
    if len(script) < 2 or script[0] != OP_RETURN:
        return None
    op = script[1]
    if op < OP_PUSHDATA1:
        size, start = op, 2
    elif op == OP_PUSHDATA1 and len(script) >= 3:
        size, start = script[2], 3
    elif op == OP_PUSHDATA2 and len(script) >= 4:
        size, start = struct.unpack("<H", script[2:4])[0], 4
    else:
        return None
    if len(script) != start + size:
        return None
    return script[start:]


def anchor_payload(root_hex: str) -> bytes:
    root = bytes.fromhex(root_hex)
    if len(root) != ROOT_SIZE:
        raise ValueError(f"Merkle root must be {ROOT_SIZE} bytes, got {len(root)}")
    return ANCHOR_TAG + root


def split_anchor_payload(payload: bytes) -> tuple[bytes, bytes]:
    """Split embedded data into (tag, root). Either part may be malformed."""
    return payload[: len(ANCHOR_TAG)], payload[len(ANCHOR_TAG):]


# ------------------------------------------------------------------
# Serialisation primitives
# ------------------------------------------------------------------

def encode_varint(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise ValueError("Truncated transaction")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def varint(self) -> int:
        first = self.take(1)[0]
        if first < 0xFD:
            return first
        size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
        return int.from_bytes(self.take(size), "little")

    @property
    def exhausted(self) -> bool:
        return self._pos == len(self._data)


# ------------------------------------------------------------------
# Transaction
# ------------------------------------------------------------------

@dataclass(frozen=True)
class TxIn:
    outpoint: Outpoint
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    def serialize(self) -> bytes:
        return (
            bytes.fromhex(self.outpoint.txid)[::-1]
            + struct.pack("<I", self.outpoint.vout)
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + encode_varint(len(self.script_pubkey)) + self.script_pubkey


@dataclass(frozen=True)
class Transaction:
    inputs: tuple[TxIn, ...]
    outputs: tuple[TxOut, ...]
    version: int = 1
    locktime: int = 0

    def serialize(self) -> bytes:
        return (
            struct.pack("<i", self.version)
            + encode_varint(len(self.inputs))
            + b"".join(i.serialize() for i in self.inputs)
            + encode_varint(len(self.outputs))
            + b"".join(o.serialize() for o in self.outputs)
            + struct.pack("<I", self.locktime)
        )

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return double_sha256(self.serialize())[::-1].hex()

    @property
    def is_signed(self) -> bool:
        return bool(self.inputs) and all(i.script_sig for i in self.inputs)

    def signature_hash(self, index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
        """Legacy signature hash for input ``index``."""
        if not 0 <= index < len(self.inputs):
            raise IndexError(f"Input index {index} out of range")
        stripped = tuple(
            replace(txin, script_sig=script_code if i == index else b"")
            for i, txin in enumerate(self.inputs)
        )
        preimage = replace(self, inputs=stripped).serialize() + struct.pack("<I", sighash_type)
        return double_sha256(preimage)

    def with_script_sigs(self, script_sigs: Sequence[bytes]) -> Transaction:
        if len(script_sigs) != len(self.inputs):
            raise ValueError("One scriptSig per input required")
        return replace(
            self,
            inputs=tuple(replace(txin, script_sig=sig) for txin, sig in zip(self.inputs, script_sigs)),
        )

    def op_return_data(self) -> Optional[bytes]:
        """Payload of the first OP_RETURN output, if any."""
        for out in self.outputs:
            data = parse_op_return(out.script_pubkey)
            if data is not None:
                return data
        return None

    @classmethod
    def from_hex(cls, raw_hex: str) -> Transaction:
        return cls.deserialize(bytes.fromhex(raw_hex))

    @classmethod
    def deserialize(cls, raw: bytes) -> Transaction:
        """Parse a legacy (non-witness) transaction."""
        reader = _Reader(raw)
        version = struct.unpack("<i", reader.take(4))[0]
        inputs = []
        for _ in range(reader.varint()):
            txid = reader.take(32)[::-1].hex()
            vout = struct.unpack("<I", reader.take(4))[0]
            script = reader.take(reader.varint())
            sequence = struct.unpack("<I", reader.take(4))[0]
            inputs.append(TxIn(Outpoint(txid, vout), script, sequence))
        outputs = []
        for _ in range(reader.varint()):
            value = struct.unpack("<q", reader.take(8))[0]
            outputs.append(TxOut(value, reader.take(reader.varint())))
        locktime = struct.unpack("<I", reader.take(4))[0]
        if not reader.exhausted:
            raise ValueError("Trailing bytes after transaction")
        return cls(tuple(inputs), tuple(outputs), version, locktime)


def estimate_size(n_inputs: int, n_p2pkh_outputs: int, payload_len: int) -> int:
    """Upper-bound size in bytes of a signed P2PKH anchor transaction."""
    op_return_output = 8 + 1 + 1 + len(push_data(b"\x00" * payload_len))
    return 10 + 148 * n_inputs + 34 * n_p2pkh_outputs + op_return_output


def encode_der_signature(r: int, s: int) -> bytes:
    def _int(x: int) -> bytes:
        body = x.to_bytes(max(1, (x.bit_length() + 7) // 8), "big")
        if body[0] & 0x80:
            body = b"\x00" + body
        return b"\x02" + bytes([len(body)]) + body

    seq = _int(r) + _int(s)
    return b"\x30" + bytes([len(seq)]) + seq


def decode_der_signature(der: bytes) -> tuple[int, int]:
    if len(der) < 8 or der[0] != 0x30 or der[1] != len(der) - 2:
        raise ValueError("Not a DER signature")
    pos = 2
    values = []
    for _ in range(2):
        if der[pos] != 0x02:
            raise ValueError("Malformed DER integer")
        size = der[pos + 1]
        values.append(int.from_bytes(der[pos + 2:pos + 2 + size], "big"))
        pos += 2 + size
    return values[0], values[1]
