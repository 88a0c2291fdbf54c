"""Position-addressable keystream ciphers.

Every cipher exposes the same three operations:

- ``byte_at(offset)`` returns the keystream byte for one payload offset;
- ``keystream(offset, length)`` returns a ``numpy.uint8`` array;
- ``decrypt(chunk, offset)`` XORs a ciphertext chunk starting at ``offset``.

Offsets are counted from the first byte of the audio payload. Outputs are a
pure function of the key material and the offset, so the chunking used by the
caller never changes the result.
"""

import dataclasses
import enum
import typing

import numpy as np


class KeyScheme(enum.Enum):
    NCM_KEYBOX = "ncm-keybox"
    STATIC_TABLE = "static-table"
    MAP = "map"
    RC4 = "rc4"


@dataclasses.dataclass(frozen=True)
class KeyMaterial:
    """Resolved key for one file: raw key bytes or a static table reference."""

    scheme: KeyScheme
    key: bytes = b""
    table: "typing.Optional[bytes]" = None
    fold: "typing.Optional[int]" = None

    def __repr__(self) -> str:
        size = len(self.table) if self.table is not None else len(self.key)
        return f"KeyMaterial(scheme={self.scheme.value}, size={size})"


def _xor(chunk: bytes, stream: "np.ndarray") -> bytes:
    data = np.frombuffer(chunk, dtype=np.uint8)
    return np.bitwise_xor(data, stream).tobytes()


def _positions(offset: int, length: int) -> "np.ndarray":
    if offset < 0:
        raise ValueError("Keystream offset must be non-negative")
    return np.arange(offset, offset + length, dtype=np.int64)


def _fold_positions(pos: "np.ndarray", fold: "typing.Optional[int]") -> "np.ndarray":
    if not fold:
        return pos
    return np.where(pos > fold, pos % fold, pos)


class NcmKeyboxCipher:
    """RC4-style key schedule; the stream repeats every 256 bytes."""

    def __init__(self, key: bytes):
        if not key:
            raise ValueError("NCM keybox requires a non-empty key")
        box = bytearray(range(256))
        last = 0
        key_offset = 0
        for i in range(256):
            swap = box[i]
            c = (swap + last + key[key_offset]) & 0xFF
            key_offset = (key_offset + 1) % len(key)
            box[i] = box[c]
            box[c] = swap
            last = c
        self.box = bytes(box)
        period = bytearray(256)
        for n in range(256):
            j = (n + 1) & 0xFF
            period[n] = box[(box[j] + box[(box[j] + j) & 0xFF]) & 0xFF]
        self._period = np.frombuffer(bytes(period), dtype=np.uint8)

    def byte_at(self, offset: int) -> int:
        if offset < 0:
            raise ValueError("Keystream offset must be non-negative")
        return int(self._period[offset & 0xFF])

    def keystream(self, offset: int, length: int) -> "np.ndarray":
        return self._period[_positions(offset, length) & 0xFF]

    def decrypt(self, chunk: bytes, offset: int) -> bytes:
        return _xor(chunk, self.keystream(offset, len(chunk)))


class StaticTableCipher:
    """``table[pos % len(table)]``; offsets past ``fold`` wrap modulo ``fold``."""

    def __init__(self, table: bytes, fold: "typing.Optional[int]" = None):
        if not table:
            raise ValueError("Static cipher table must not be empty")
        self.table = np.frombuffer(bytes(table), dtype=np.uint8)
        self.fold = fold

    def byte_at(self, offset: int) -> int:
        return int(self.keystream(offset, 1)[0])

    def keystream(self, offset: int, length: int) -> "np.ndarray":
        pos = _fold_positions(_positions(offset, length), self.fold)
        return self.table[pos % self.table.size]

    def decrypt(self, chunk: bytes, offset: int) -> bytes:
        return _xor(chunk, self.keystream(offset, len(chunk)))


class MapCipher:
    """Key-indexed mask with a per-index bit rotation."""

    FOLD = 0x7FFF
    INDEX_SALT = 71214

    def __init__(self, key: bytes):
        if not key:
            raise ValueError("Map cipher requires a non-empty key")
        self.key = np.frombuffer(bytes(key), dtype=np.uint8)

    def byte_at(self, offset: int) -> int:
        return int(self.keystream(offset, 1)[0])

    def keystream(self, offset: int, length: int) -> "np.ndarray":
        pos = _fold_positions(_positions(offset, length), self.FOLD)
        idx = (pos * pos + self.INDEX_SALT) % self.key.size
        value = self.key[idx].astype(np.uint16)
        rotate = ((idx & 0x7) + 4) % 8
        rotated = (value << rotate) | (value >> rotate)
        return (rotated & 0xFF).astype(np.uint8)

    def decrypt(self, chunk: bytes, offset: int) -> bytes:
        return _xor(chunk, self.keystream(offset, len(chunk)))


class SegmentedRC4Cipher:
    """RC4 restarted every 5120 bytes, with a key-derived mask for the head."""

    FIRST_SEGMENT_SIZE = 128
    SEGMENT_SIZE = 5120

    def __init__(self, key: bytes):
        if not key:
            raise ValueError("RC4 cipher requires a non-empty key")
        self.key = bytes(key)
        n = len(key)
        self.n = n
        # one byte per slot even when n > 256
        box = bytearray(i & 0xFF for i in range(n))
        j = 0
        for i in range(n):
            j = (j + box[i] + key[i % n]) % n
            box[i], box[j] = box[j], box[i]
        self.box = bytes(box)
        self.hash_base = self._hash_base(key)

    @staticmethod
    def _hash_base(key: bytes) -> int:
        value = 1
        for byte in key:
            if byte == 0:
                continue
            next_value = (value * byte) & 0xFFFFFFFF
            if next_value == 0 or next_value <= value:
                break
            value = next_value
        return value

    def _segment_skip(self, segment_id: int) -> int:
        seed = self.key[segment_id % self.n]
        if seed == 0:
            return 0
        idx = int(self.hash_base / ((segment_id + 1) * seed) * 100.0)
        return idx % self.n

    def _segment_stream(self, segment_id: int, start: int, length: int) -> bytes:
        n = self.n
        box = bytearray(self.box)
        j = 0
        k = 0
        out = bytearray(length)
        skip = start + self._segment_skip(segment_id)
        for i in range(-skip, length):
            j = (j + 1) % n
            k = (box[j] + k) % n
            box[j], box[k] = box[k], box[j]
            if i >= 0:
                out[i] = box[(box[j] + box[k]) % n]
        return bytes(out)

    def byte_at(self, offset: int) -> int:
        return int(self.keystream(offset, 1)[0])

    def keystream(self, offset: int, length: int) -> "np.ndarray":
        if offset < 0:
            raise ValueError("Keystream offset must be non-negative")
        out = bytearray(length)
        done = 0
        while done < length:
            position = offset + done
            if position < self.FIRST_SEGMENT_SIZE:
                count = min(length - done, self.FIRST_SEGMENT_SIZE - position)
                for i in range(count):
                    out[done + i] = self.key[self._segment_skip(position + i)]
            else:
                start = position % self.SEGMENT_SIZE
                count = min(length - done, self.SEGMENT_SIZE - start)
                out[done:done + count] = self._segment_stream(
                    position // self.SEGMENT_SIZE, start, count
                )
            done += count
        return np.frombuffer(bytes(out), dtype=np.uint8)

    def decrypt(self, chunk: bytes, offset: int) -> bytes:
        return _xor(chunk, self.keystream(offset, len(chunk)))


KeystreamCipher = typing.Union[NcmKeyboxCipher, StaticTableCipher, MapCipher, SegmentedRC4Cipher]


def build_cipher(material: KeyMaterial) -> KeystreamCipher:
    if material.scheme is KeyScheme.NCM_KEYBOX:
        return NcmKeyboxCipher(material.key)
    if material.scheme is KeyScheme.STATIC_TABLE:
        if material.table is None:
            raise ValueError("Static table key material carries no table")
        return StaticTableCipher(material.table, fold=material.fold)
    if material.scheme is KeyScheme.MAP:
        return MapCipher(material.key)
    if material.scheme is KeyScheme.RC4:
        return SegmentedRC4Cipher(material.key)
    raise ValueError(f"Unsupported key scheme: {material.scheme!r}")


__all__ = [
    "KeyScheme",
    "KeyMaterial",
    "NcmKeyboxCipher",
    "StaticTableCipher",
    "MapCipher",
    "SegmentedRC4Cipher",
    "KeystreamCipher",
    "build_cipher",
]
