"""Bitcoin wire format for transactions and blocks."""

from __future__ import annotations

import hashlib
import io
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

__all__ = [
    "WireError",
    "OutPoint",
    "TxIn",
    "TxOut",
    "Tx",
    "Header",
    "Block",
    "sha256d",
    "read_varint",
    "encode_varint",
    "extract_op_return",
]

OP_RETURN = 0x6A
_U64_MAX = 0xFFFF_FFFF_FFFF_FFFF


class WireError(ValueError):
    """Raised for malformed or truncated wire data."""


def sha256d(data: bytes) -> bytes:
    """Double SHA-256 of ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if data is None or len(data) != size:
        raise WireError(f"unexpected end of data: wanted {size} bytes")
    return data


def _unpack(fmt: str, stream: BinaryIO):
    return struct.unpack(fmt, _read_exact(stream, struct.calcsize(fmt)))[0]


def read_varint(stream: BinaryIO) -> int:
    """Read a compact-size integer."""
    prefix = _read_exact(stream, 1)[0]
    if prefix < 0xFD:
        return prefix
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[prefix]
    return int.from_bytes(_read_exact(stream, size), "little")


def encode_varint(value: int) -> bytes:
    """Encode a compact-size integer."""
    if value < 0 or value > _U64_MAX:
        raise WireError(f"varint out of range: {value}")
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFF_FFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def _read_var_bytes(stream: BinaryIO) -> bytes:
    return _read_exact(stream, read_varint(stream))


def _var_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def _check_hash(value: bytes, name: str) -> bytes:
    value = bytes(value)
    if len(value) != 32:
        raise WireError(f"{name} must be 32 bytes")
    return value


def _parse_all(reader, data: bytes):
    stream = io.BytesIO(bytes(data))
    result = reader(stream)
    if stream.read(1):
        raise WireError("trailing data after message")
    return result


@dataclass
class OutPoint:
    """Reference to an output of an earlier transaction."""

    hash: bytes = bytes(32)
    index: int = 0

    def __post_init__(self) -> None:
        self.hash = _check_hash(self.hash, "outpoint hash")

    @classmethod
    def read(cls, stream: BinaryIO) -> "OutPoint":
        return cls(_read_exact(stream, 32), _unpack("<I", stream))

    def serialize(self) -> bytes:
        return self.hash + struct.pack("<I", self.index)


@dataclass
class TxIn:
    """Transaction input."""

    prev_output: OutPoint = field(default_factory=OutPoint)
    unlock_script: bytes = b""
    sequence: int = 0xFFFF_FFFF

    @classmethod
    def read(cls, stream: BinaryIO) -> "TxIn":
        prev = OutPoint.read(stream)
        script = _read_var_bytes(stream)
        return cls(prev, script, _unpack("<I", stream))

    def serialize(self) -> bytes:
        return (
            self.prev_output.serialize()
            + _var_bytes(bytes(self.unlock_script))
            + struct.pack("<I", self.sequence)
        )


@dataclass
class TxOut:
    """Transaction output."""

    satoshis: int = 0
    lock_script: bytes = b""

    @classmethod
    def read(cls, stream: BinaryIO) -> "TxOut":
        satoshis = _unpack("<q", stream)
        return cls(satoshis, _read_var_bytes(stream))

    def serialize(self) -> bytes:
        return struct.pack("<q", self.satoshis) + _var_bytes(bytes(self.lock_script))


@dataclass
class Tx:
    """A Bitcoin transaction."""

    version: int = 1
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    lock_time: int = 0

    @classmethod
    def read(cls, stream: BinaryIO) -> "Tx":
        version = _unpack("<I", stream)
        inputs = [TxIn.read(stream) for _ in range(read_varint(stream))]
        outputs = [TxOut.read(stream) for _ in range(read_varint(stream))]
        return cls(version, inputs, outputs, _unpack("<I", stream))

    @classmethod
    def parse(cls, data: bytes) -> "Tx":
        """Parse exactly one transaction from ``data``."""
        return _parse_all(cls.read, data)

    def serialize(self) -> bytes:
        parts = [struct.pack("<I", self.version), encode_varint(len(self.inputs))]
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(encode_varint(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def to_hex(self) -> str:
        return self.serialize().hex()

    def hash(self) -> bytes:
        """Double SHA-256 of the serialized transaction, in internal byte order."""
        return sha256d(self.serialize())

    def txid(self) -> str:
        return self.hash().hex()


@dataclass
class Header:
    """An 80-byte block header."""

    version: int = 1
    prev_hash: bytes = bytes(32)
    merkle_root: bytes = bytes(32)
    timestamp: int = 0
    bits: int = 0
    nonce: int = 0

    def __post_init__(self) -> None:
        self.prev_hash = _check_hash(self.prev_hash, "prev_hash")
        self.merkle_root = _check_hash(self.merkle_root, "merkle_root")

    @classmethod
    def read(cls, stream: BinaryIO) -> "Header":
        version = _unpack("<I", stream)
        prev_hash = _read_exact(stream, 32)
        merkle_root = _read_exact(stream, 32)
        timestamp, bits, nonce = struct.unpack("<III", _read_exact(stream, 12))
        return cls(version, prev_hash, merkle_root, timestamp, bits, nonce)

    def serialize(self) -> bytes:
        return (
            struct.pack("<I", self.version)
            + self.prev_hash
            + self.merkle_root
            + struct.pack("<III", self.timestamp, self.bits, self.nonce)
        )

    def hash(self) -> bytes:
        return sha256d(self.serialize())


@dataclass
class Block:
    """A block header followed by its transactions."""

    header: Header = field(default_factory=Header)
    txns: List[Tx] = field(default_factory=list)

    @classmethod
    def read(cls, stream: BinaryIO) -> "Block":
        header = Header.read(stream)
        txns = [Tx.read(stream) for _ in range(read_varint(stream))]
        return cls(header, txns)

    @classmethod
    def parse(cls, data: bytes) -> "Block":
        """Parse exactly one block from ``data``."""
        return _parse_all(cls.read, data)

    def serialize(self) -> bytes:
        return (
            self.header.serialize()
            + encode_varint(len(self.txns))
            + b"".join(tx.serialize() for tx in self.txns)
        )


def extract_op_return(tx: Tx) -> Optional[str]:
    """Hex of the first output script that starts with OP_RETURN, if any."""
    for out in tx.outputs:
        script = bytes(out.lock_script)
        if script and script[0] == OP_RETURN:
            return script.hex()
    return None