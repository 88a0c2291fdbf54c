"""Container and codec detection from short head/tail byte windows."""

import enum
import re
import typing

from .errors import IoFailure
from .keyvault import DEFAULT_VAULT, KeyVault

SNIFF_LENGTH = 8
QTAG_MARKER = b"QTag"
STAG_MARKER = b"STag"
MUSICEX_MARKER = b"musicex\x00"
MAX_EKEY_RECORD = 0x2000

_BASE64_TAIL = re.compile(rb"^[A-Za-z0-9+/=]{4}$")
_BASE64_RECORD = re.compile(rb"[A-Za-z0-9+/]+={0,2}")
_LEGACY_PLAIN_HEADS = (b"fLaC", b"ID3", b"OggS")


class ContainerVariant(enum.Enum):
    PRIMARY = "ncm"
    LEGACY_STATIC = "qmc-static"
    EMBEDDED_KEY = "qmc-embedded"
    UNKNOWN = "unknown"


def legacy_signatures(vault: KeyVault = DEFAULT_VAULT) -> "typing.Tuple[bytes, ...]":
    """Plain codec magics as they appear under the legacy static mask."""
    mask = vault.qmc_static_mask
    return tuple(
        bytes(b ^ mask[i % len(mask)] for i, b in enumerate(plain))
        for plain in _LEGACY_PLAIN_HEADS
    )


def _has_trailer_marker(tail: bytes) -> bool:
    return tail[-4:] in (QTAG_MARKER, STAG_MARKER) or tail == MUSICEX_MARKER


def _looks_like_raw_ekey_trailer(tail: bytes, size: "typing.Optional[int]") -> bool:
    if len(tail) < SNIFF_LENGTH:
        return False
    record_len = int.from_bytes(tail[-4:], "little")
    if record_len <= 0 or record_len > MAX_EKEY_RECORD:
        return False
    if size is not None and record_len > size - 4:
        return False
    return bool(_BASE64_TAIL.match(tail[-8:-4]))


def classify(
    head: bytes,
    tail: bytes = b"",
    size: "typing.Optional[int]" = None,
    vault: KeyVault = DEFAULT_VAULT
) -> ContainerVariant:
    head = bytes(head[:SNIFF_LENGTH])
    tail = bytes(tail[-SNIFF_LENGTH:])
    if head == vault.ncm_magic:
        return ContainerVariant.PRIMARY
    if _has_trailer_marker(tail):
        return ContainerVariant.EMBEDDED_KEY
    for signature in legacy_signatures(vault):
        if head.startswith(signature):
            return ContainerVariant.LEGACY_STATIC
    if _looks_like_raw_ekey_trailer(tail, size):
        return ContainerVariant.EMBEDDED_KEY
    return ContainerVariant.UNKNOWN


def sniff(source: "typing.BinaryIO", vault: KeyVault = DEFAULT_VAULT) -> ContainerVariant:
    """Classify a seekable binary source; its position is restored afterwards."""
    try:
        origin = source.tell()
        try:
            size = source.seek(0, 2)
            source.seek(0)
            head = source.read(SNIFF_LENGTH)
            tail = b""
            if size >= SNIFF_LENGTH:
                source.seek(size - SNIFF_LENGTH)
                tail = source.read(SNIFF_LENGTH)
            variant = classify(head, tail, size, vault=vault)
            if variant is ContainerVariant.EMBEDDED_KEY and not _has_trailer_marker(tail):
                # a bare length trailer only counts when the record is all base64
                record_len = int.from_bytes(tail[-4:], "little")
                source.seek(size - 4 - record_len)
                if not _BASE64_RECORD.fullmatch(source.read(record_len)):
                    variant = ContainerVariant.UNKNOWN
        finally:
            source.seek(origin)
    except OSError as exc:
        raise IoFailure(f"Failed to read container head/tail: {exc}") from exc
    return variant


_AUDIO_MAGICS = (
    (b"fLaC", "flac"),
    (b"ID3", "mp3"),
    (b"OggS", "ogg"),
    (b"RIFF", "wav"),
)


def sniff_audio_format(plain_head: bytes) -> "typing.Optional[str]":
    """Map decrypted codec magic bytes to a file extension."""
    for magic, ext in _AUDIO_MAGICS:
        if plain_head.startswith(magic):
            return ext
    if len(plain_head) >= 8 and plain_head[4:8] == b"ftyp":
        return "m4a"
    # MPEG frame sync; layer bits 00 would be ADTS AAC
    if len(plain_head) >= 2 and plain_head[0] == 0xFF and (plain_head[1] & 0xE0) == 0xE0:
        if plain_head[1] & 0x06:
            return "mp3"
    return None


__all__ = [
    "ContainerVariant",
    "SNIFF_LENGTH",
    "classify",
    "sniff",
    "sniff_audio_format",
    "legacy_signatures",
]
