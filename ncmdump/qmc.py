"""QMC container family: trailer parsing and embedded key recovery."""

import base64
import binascii
import dataclasses
import math
import typing

from .blockcipher import tc_tea_decrypt
from .ciphers import KeyMaterial, KeyScheme
from .errors import CorruptKeyBlock, InvalidMagic, IoFailure, TruncatedContainer, UnsupportedCipherVariant
from .keyvault import DEFAULT_VAULT, KeyVault
from .layout import ContainerLayout
from .sniffer import MAX_EKEY_RECORD, MUSICEX_MARKER, QTAG_MARKER, STAG_MARKER, ContainerVariant, sniff

MAP_KEY_LIMIT = 300


@dataclasses.dataclass(frozen=True)
class QmcContainer:
    layout: ContainerLayout
    key_material: KeyMaterial
    ekey_version: "typing.Optional[int]" = None
    song_id: "typing.Optional[int]" = None


def make_simple_key(seed: int = 106, length: int = 8) -> bytes:
    """Recompute the ekey simple key from its tangent-series definition."""
    return bytes(
        int(abs(math.tan(seed + i * 0.1)) * 100.0) & 0xFF
        for i in range(length)
    )


def _b64decode(data: bytes) -> bytes:
    try:
        return base64.b64decode(data.strip(b"\x00 \r\n"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CorruptKeyBlock("Embedded key record is not valid base64") from exc


def _derive_key_v1(ekey: bytes, vault: KeyVault) -> bytes:
    if len(ekey) < 8 + 16:
        raise CorruptKeyBlock("Embedded key too short for v1 derivation")
    simple_key = vault.ekey_simple_key
    tea_key = bytearray(16)
    for i in range(8):
        tea_key[i << 1] = simple_key[i]
        tea_key[(i << 1) + 1] = ekey[i]
    try:
        rest = tc_tea_decrypt(ekey[8:], bytes(tea_key))
    except ValueError as exc:
        raise CorruptKeyBlock(f"Embedded key v1 unwrap failed: {exc}") from exc
    return ekey[:8] + rest


def _derive_key_v2(wrapped: bytes, vault: KeyVault) -> bytes:
    try:
        stage = tc_tea_decrypt(wrapped, vault.ekey_v2_key_1)
        stage = tc_tea_decrypt(stage, vault.ekey_v2_key_2)
    except ValueError as exc:
        raise CorruptKeyBlock(f"Embedded key v2 unwrap failed: {exc}") from exc
    return _b64decode(stage)


def derive_key(record: bytes, vault: KeyVault = DEFAULT_VAULT) -> "typing.Tuple[bytes, int]":
    """Unwrap a base64 ekey record; returns ``(key, version)``."""
    decoded = _b64decode(record)
    version = 1
    if decoded.startswith(vault.ekey_v2_prefix):
        decoded = _derive_key_v2(decoded[len(vault.ekey_v2_prefix):], vault)
        version = 2
    return _derive_key_v1(decoded, vault), version


def key_material_for(key: bytes) -> KeyMaterial:
    if not key:
        raise CorruptKeyBlock("Embedded key is empty")
    if len(key) > MAP_KEY_LIMIT:
        return KeyMaterial(KeyScheme.RC4, key=key)
    return KeyMaterial(KeyScheme.MAP, key=key)


class QmcContainerParser:
    """Resolve the key scheme of a QMC file from its head and trailer."""

    def __init__(self, vault: KeyVault = DEFAULT_VAULT):
        self.vault = vault

    @staticmethod
    def _read_at(source: "typing.BinaryIO", offset: int, length: int) -> bytes:
        try:
            source.seek(offset)
            data = source.read(length)
        except OSError as exc:
            raise IoFailure(f"Failed to read container trailer: {exc}") from exc
        if len(data) != length:
            raise TruncatedContainer("Unexpected end of data while reading trailer")
        return data

    def _static_layout(self, size: int) -> QmcContainer:
        material = KeyMaterial(
            KeyScheme.STATIC_TABLE,
            table=self.vault.qmc_static_mask,
            fold=self.vault.qmc_static_fold,
        )
        layout = ContainerLayout.payload_only(0, size, trailer_length=0, total_size=size)
        return QmcContainer(layout=layout, key_material=material)

    def _embedded_layout(self, source: "typing.BinaryIO", size: int) -> QmcContainer:
        if size < 8:
            raise TruncatedContainer("Input too short to hold a key trailer")
        tail = self._read_at(source, size - 8, 8)
        marker = tail[-4:]
        if marker == STAG_MARKER or tail == MUSICEX_MARKER:
            raise UnsupportedCipherVariant(
                f"Trailer {marker!r} does not embed a key; it must be fetched from the client"
            )
        song_id = None
        if marker == QTAG_MARKER:
            record_len = int.from_bytes(tail[:4], "big")
            trailer_len = record_len + 8
            if trailer_len > size:
                raise TruncatedContainer(f"QTag record length {record_len} exceeds input size {size}")
            fields = self._read_at(source, size - trailer_len, record_len).split(b",")
            if len(fields) != 3:
                raise CorruptKeyBlock(f"QTag record has {len(fields)} fields, expected 3")
            record = fields[0]
            try:
                song_id = int(fields[1])
            except ValueError:
                song_id = None
        else:
            record_len = int.from_bytes(marker, "little")
            trailer_len = record_len + 4
            if record_len == 0 or record_len > MAX_EKEY_RECORD:
                raise UnsupportedCipherVariant(f"Unrecognised trailer marker {marker!r}")
            if trailer_len > size:
                raise TruncatedContainer(f"Key record length {record_len} exceeds input size {size}")
            record = self._read_at(source, size - trailer_len, record_len)
        key, version = derive_key(record, self.vault)
        layout = ContainerLayout.payload_only(0, size - trailer_len, trailer_length=trailer_len, total_size=size)
        return QmcContainer(
            layout=layout,
            key_material=key_material_for(key),
            ekey_version=version,
            song_id=song_id,
        )

    def parse(
        self,
        source: "typing.BinaryIO",
        variant: "typing.Optional[ContainerVariant]" = None
    ) -> QmcContainer:
        if variant is None:
            variant = sniff(source, vault=self.vault)
        try:
            size = source.seek(0, 2)
        except OSError as exc:
            raise IoFailure(f"Failed to size input: {exc}") from exc
        if variant is ContainerVariant.LEGACY_STATIC:
            return self._static_layout(size)
        if variant is ContainerVariant.EMBEDDED_KEY:
            return self._embedded_layout(source, size)
        raise InvalidMagic(f"Not a QMC container (classified as {variant.value})")


__all__ = [
    "QmcContainer",
    "QmcContainerParser",
    "derive_key",
    "key_material_for",
    "make_simple_key",
]
