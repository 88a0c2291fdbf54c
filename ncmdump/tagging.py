"""Write recovered metadata into decoded audio files."""

import io
import os
import typing

import mutagen
from mutagen.flac import FLAC, Picture
from mutagen.id3 import APIC, ID3, TALB, TIT2, TPE1, ID3NoHeaderError
from PIL import Image, UnidentifiedImageError

from .errors import TagEmbedFailure
from .metadata import AudioMetadata

FRONT_COVER = 3


class CoverInfo(typing.NamedTuple):
    mime: str
    width: int
    height: int
    depth: int


def probe_cover(data: bytes) -> "typing.Optional[CoverInfo]":
    """Identify cover bytes with Pillow; None when they are not a usable image."""
    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
            if not mime:
                return None
            depth = 8 * len(img.getbands())
            return CoverInfo(mime, img.width, img.height, depth)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return None


def _tag_mp3(path: str, metadata: AudioMetadata, cover: "typing.Optional[CoverInfo]") -> None:
    try:
        tags = ID3(path)
    except ID3NoHeaderError:
        tags = ID3()
    if metadata.title:
        tags.setall("TIT2", [TIT2(encoding=3, text=metadata.title)])
    if metadata.artists:
        tags.setall("TPE1", [TPE1(encoding=3, text=list(metadata.artists))])
    if metadata.album:
        tags.setall("TALB", [TALB(encoding=3, text=metadata.album)])
    if cover is not None:
        tags.setall("APIC", [
            APIC(encoding=3, mime=cover.mime, type=FRONT_COVER, desc="Cover", data=metadata.cover)
        ])
    tags.save(path, v2_version=4)


def _tag_flac(path: str, metadata: AudioMetadata, cover: "typing.Optional[CoverInfo]") -> None:
    audio = FLAC(path)
    if metadata.title:
        audio["title"] = [metadata.title]
    if metadata.artists:
        audio["artist"] = list(metadata.artists)
    if metadata.album:
        audio["album"] = [metadata.album]
    if cover is not None:
        picture = Picture()
        picture.type = FRONT_COVER
        picture.mime = cover.mime
        picture.width = cover.width
        picture.height = cover.height
        picture.depth = cover.depth
        picture.data = metadata.cover
        audio.clear_pictures()
        audio.add_picture(picture)
    audio.save()


_TAGGERS = {
    ".mp3": _tag_mp3,
    ".flac": _tag_flac,
}


def embed_tags(path: "str | os.PathLike[str]", metadata: AudioMetadata) -> bool:
    """Embed title, artists, album and cover into ``path``.

    Returns False when the container is not one we tag (or there is nothing
    to write). Raises ``TagEmbedFailure`` when mutagen cannot update the file;
    the audio bytes themselves are left as they were.
    """
    path = os.fspath(path)
    tagger = _TAGGERS.get(os.path.splitext(path)[1].lower())
    if tagger is None or metadata.is_empty:
        return False
    try:
        tagger(path, metadata, probe_cover(metadata.cover))
    except (mutagen.MutagenError, OSError, ValueError) as exc:
        raise TagEmbedFailure(f"Failed to tag {path}: {exc}") from exc
    return True


__all__ = ["CoverInfo", "embed_tags", "probe_cover"]
