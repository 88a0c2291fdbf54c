"""Primary container: header, key block, metadata block, cover frame."""

import dataclasses
import struct
import typing

from .blockcipher import aes_ecb_decrypt
from .ciphers import KeyMaterial, KeyScheme
from .errors import CorruptKeyBlock, InvalidMagic, IoFailure, TruncatedContainer
from .keyvault import DEFAULT_VAULT, KeyVault
from .layout import ContainerLayout

HEADER_GAP = 2
CRC_LENGTH = 4
CRC_GAP = 1


@dataclasses.dataclass(frozen=True)
class NcmContainer:
    layout: ContainerLayout
    key_material: KeyMaterial
    raw_metadata: bytes
    cover: bytes


class _Reader:
    """Sequential reads with exact-length checks against the known input size."""

    def __init__(self, source: "typing.BinaryIO", total_size: int):
        self.source = source
        self.total_size = total_size
        self.position = 0

    def read(self, length: int, what: str) -> bytes:
        if self.position + length > self.total_size:
            raise TruncatedContainer(
                f"{what} declares {length} bytes at offset {self.position}, "
                f"input holds {self.total_size}"
            )
        try:
            data = self.source.read(length)
        except OSError as exc:
            raise IoFailure(f"Failed to read {what}: {exc}") from exc
        if len(data) != length:
            raise TruncatedContainer(f"Unexpected end of data while reading {what}")
        self.position += length
        return data

    def read_u32(self, what: str) -> int:
        return struct.unpack("<I", self.read(4, what))[0]

    def skip(self, length: int, what: str) -> None:
        if self.position + length > self.total_size:
            raise TruncatedContainer(f"Cannot skip {length} bytes of {what} past end of input")
        try:
            self.source.seek(length, 1)
        except OSError as exc:
            raise IoFailure(f"Failed to seek over {what}: {exc}") from exc
        self.position += length


class NcmContainerParser:
    """Parse the header of a primary container into a validated layout.

    Nothing is written anywhere; every structural problem surfaces here as a
    ``ParseError`` subclass before the caller opens an output file.
    """

    def __init__(self, vault: KeyVault = DEFAULT_VAULT):
        self.vault = vault

    def unwrap_key(self, block: bytes) -> bytes:
        masked = bytes(b ^ self.vault.key_block_xor for b in block)
        try:
            plain = aes_ecb_decrypt(self.vault.core_key, masked)
        except ValueError as exc:
            raise CorruptKeyBlock(f"Key block failed to decrypt: {exc}") from exc
        marker = self.vault.key_marker
        if not plain.startswith(marker):
            raise CorruptKeyBlock("Decrypted key block lacks the expected marker")
        key = plain[len(marker):]
        if not key:
            raise CorruptKeyBlock("Key block holds no key bytes after the marker")
        return key

    def parse(self, source: "typing.BinaryIO") -> NcmContainer:
        try:
            total_size = source.seek(0, 2)
            source.seek(0)
        except OSError as exc:
            raise IoFailure(f"Failed to size input: {exc}") from exc
        reader = _Reader(source, total_size)

        magic = self.vault.ncm_magic
        if total_size < len(magic) or reader.read(len(magic), "magic") != magic:
            raise InvalidMagic("Leading bytes do not match the container magic")
        reader.skip(HEADER_GAP, "header gap")

        key_length = reader.read_u32("key length")
        key_offset = reader.position
        key = self.unwrap_key(reader.read(key_length, "key block"))

        meta_length = reader.read_u32("metadata length")
        meta_offset = reader.position
        raw_metadata = reader.read(meta_length, "metadata block") if meta_length else b""

        reader.skip(CRC_LENGTH + CRC_GAP, "checksum")
        frame_length = reader.read_u32("cover frame length")
        cover_length = reader.read_u32("cover length")
        if cover_length > frame_length:
            raise TruncatedContainer(
                f"Cover length {cover_length} exceeds its frame ({frame_length})"
            )
        cover_offset = reader.position
        cover = reader.read(cover_length, "cover image") if cover_length else b""
        reader.skip(frame_length - cover_length, "cover frame padding")

        audio_offset = reader.position
        layout = ContainerLayout(
            audio_offset=audio_offset,
            audio_length=total_size - audio_offset,
            total_size=total_size,
            key_offset=key_offset,
            key_length=key_length,
            meta_offset=meta_offset,
            meta_length=meta_length,
            cover_offset=cover_offset,
            cover_length=cover_length,
            cover_frame_length=frame_length,
        ).validate()
        return NcmContainer(
            layout=layout,
            key_material=KeyMaterial(KeyScheme.NCM_KEYBOX, key=key),
            raw_metadata=raw_metadata,
            cover=cover,
        )


__all__ = ["NcmContainer", "NcmContainerParser"]
