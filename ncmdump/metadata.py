"""Metadata block decryption and the recovered tag record."""

import base64
import binascii
import dataclasses
import json
import typing

from .blockcipher import aes_ecb_decrypt
from .errors import MetadataError
from .keyvault import DEFAULT_VAULT, KeyVault


@dataclasses.dataclass
class AudioMetadata:
    title: str = ""
    artists: "typing.List[str]" = dataclasses.field(default_factory=list)
    album: str = ""
    format: str = ""
    duration: int = 0  # milliseconds
    cover: bytes = b""
    raw: str = ""
    music_id: "typing.Optional[int]" = None
    bitrate: "typing.Optional[int]" = None
    album_pic_url: str = ""
    aliases: "typing.List[str]" = dataclasses.field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.artists or self.album or self.format or self.raw)

    @classmethod
    def from_record(cls, record: "typing.Mapping[str, typing.Any]", raw: str = "") -> "AudioMetadata":
        artists = []
        for entry in record.get("artist") or []:
            if isinstance(entry, (list, tuple)) and entry:
                artists.append(str(entry[0]))
            elif isinstance(entry, str):
                artists.append(entry)
        return cls(
            title=str(record.get("musicName") or ""),
            artists=artists,
            album=str(record.get("album") or ""),
            format=str(record.get("format") or "").lower(),
            duration=_as_int(record.get("duration")) or 0,
            raw=raw,
            music_id=_as_int(record.get("musicId")),
            bitrate=_as_int(record.get("bitrate")),
            album_pic_url=str(record.get("albumPic") or ""),
            aliases=[str(item) for item in record.get("alias") or []],
        )


def _as_int(value: "typing.Any") -> "typing.Optional[int]":
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MetadataDecoder:
    """Turn the raw metadata block into an ``AudioMetadata`` record.

    Every failure raises ``MetadataError``; callers treat it as a warning
    because the audio payload does not depend on this block.
    """

    def __init__(self, vault: KeyVault = DEFAULT_VAULT):
        self.vault = vault

    def decrypt(self, raw: bytes) -> str:
        text = bytes(b ^ self.vault.meta_block_xor for b in raw)
        marker = self.vault.meta_marker
        if not text.startswith(marker):
            raise MetadataError("Metadata block lacks the expected marker")
        try:
            encrypted = base64.b64decode(text[len(marker):], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MetadataError("Metadata block is not valid base64") from exc
        try:
            plain = aes_ecb_decrypt(self.vault.meta_key, encrypted)
        except ValueError as exc:
            raise MetadataError(f"Metadata block failed to decrypt: {exc}") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MetadataError("Metadata record is not UTF-8 text") from exc

    def decode(self, raw: bytes) -> AudioMetadata:
        if not raw:
            return AudioMetadata()
        text = self.decrypt(raw)
        kind, sep, body = text.partition(":")
        if not sep or kind not in ("music", "dj"):
            raise MetadataError(f"Unknown metadata record type {kind[:16]!r}")
        try:
            record = json.loads(body)
        except ValueError as exc:
            raise MetadataError(f"Metadata record is not valid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise MetadataError("Metadata record is not a JSON object")
        if kind == "dj":
            record = record.get("mainMusic")
            if not isinstance(record, dict):
                raise MetadataError("dj record carries no mainMusic entry")
        return AudioMetadata.from_record(record, raw=body)


__all__ = ["AudioMetadata", "MetadataDecoder"]
