import io
import struct
import sys
import unittest
import zlib
from pathlib import Path
from tempfile import TemporaryDirectory

try:
    from mutagen.flac import FLAC
    from mutagen.id3 import ID3
    from PIL import Image

    from ncmdump.errors import TagEmbedFailure
    from ncmdump.main import DecodeResult, decode_file, decode_files
    from ncmdump.metadata import AudioMetadata
    from ncmdump.tagging import embed_tags, probe_cover
except ModuleNotFoundError as exc:  # pragma: no cover - dependency missing
    embed_tags = None
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None

if _IMPORT_ERROR is None:
    sys.path.insert(0, str(Path(__file__).resolve().parent))
    from builders import FLAC_HEAD, MP3_HEAD, build_ncm, sample_audio, sample_record


def _png_cover(size=(4, 3)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


def _oversized_png(width: int = 30000, height: int = 30000) -> bytes:
    """A PNG whose header declares far more pixels than Pillow will open."""
    def chunk(kind: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", zlib.crc32(kind + body))

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(bytes(16)))
        + chunk(b"IEND", b"")
    )


@unittest.skipIf(embed_tags is None, f"dependency unavailable: {_IMPORT_ERROR}")
class TaggingTests(unittest.TestCase):
    """mutagen-backed tag embedding."""

    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)
        self.metadata = AudioMetadata(
            title="Test Song",
            artists=["Artist One", "Artist Two"],
            album="Test Album",
            format="flac",
            cover=_png_cover(),
        )

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_probe_cover(self):
        info = probe_cover(_png_cover((5, 7)))
        self.assertEqual(info.mime, "image/png")
        self.assertEqual((info.width, info.height, info.depth), (5, 7, 24))
        self.assertIsNone(probe_cover(b"definitely not an image"))
        self.assertIsNone(probe_cover(b""))

    def test_flac_vorbis_comments_and_picture(self):
        audio = sample_audio(FLAC_HEAD, length=4000)
        path = self.tmp_path / "song.flac"
        path.write_bytes(audio)
        self.assertTrue(embed_tags(path, self.metadata))
        tagged = FLAC(str(path))
        self.assertEqual(tagged["title"], ["Test Song"])
        self.assertEqual(tagged["artist"], ["Artist One", "Artist Two"])
        self.assertEqual(tagged["album"], ["Test Album"])
        self.assertEqual(len(tagged.pictures), 1)
        self.assertEqual(tagged.pictures[0].mime, "image/png")
        self.assertEqual(tagged.pictures[0].data, self.metadata.cover)
        self.assertTrue(path.read_bytes().endswith(audio[len(FLAC_HEAD):]))

    def test_mp3_id3v24_frames(self):
        audio = sample_audio(MP3_HEAD, length=4000)
        path = self.tmp_path / "song.mp3"
        path.write_bytes(audio)
        self.assertTrue(embed_tags(str(path), self.metadata))
        tags = ID3(str(path))
        self.assertEqual(tags.version[:2], (2, 4))
        self.assertEqual(tags["TIT2"].text, ["Test Song"])
        self.assertEqual(tags["TPE1"].text, ["Artist One", "Artist Two"])
        self.assertEqual(tags["TALB"].text, ["Test Album"])
        self.assertEqual(tags.getall("APIC")[0].mime, "image/png")
        self.assertTrue(path.read_bytes().endswith(audio))

    def test_untaggable_container_returns_false(self):
        path = self.tmp_path / "song.ogg"
        path.write_bytes(b"OggS" + bytes(60))
        self.assertFalse(embed_tags(path, self.metadata))
        self.assertEqual(path.read_bytes(), b"OggS" + bytes(60))

    def test_empty_metadata_is_not_written(self):
        path = self.tmp_path / "song.mp3"
        path.write_bytes(MP3_HEAD)
        self.assertFalse(embed_tags(path, AudioMetadata()))
        self.assertEqual(path.read_bytes(), MP3_HEAD)

    def test_broken_flac_raises_tag_embed_failure(self):
        path = self.tmp_path / "broken.flac"
        path.write_bytes(b"not a flac stream at all")
        with self.assertRaises(TagEmbedFailure):
            embed_tags(path, self.metadata)

    def test_oversized_cover_is_left_out(self):
        self.assertIsNone(probe_cover(_oversized_png()))
        metadata = AudioMetadata(title="Test Song", format="flac", cover=_oversized_png())
        path = self.tmp_path / "song.flac"
        path.write_bytes(sample_audio(FLAC_HEAD, length=4000))
        self.assertTrue(embed_tags(path, metadata))
        tagged = FLAC(str(path))
        self.assertEqual(tagged["title"], ["Test Song"])
        self.assertEqual(tagged.pictures, [])

    def test_oversized_cover_does_not_abort_batch(self):
        good = self.tmp_path / "good.ncm"
        bad = self.tmp_path / "bad.ncm"
        good.write_bytes(build_ncm(sample_audio(FLAC_HEAD, length=6000), record=sample_record("flac"), cover=_png_cover()))
        bad.write_bytes(build_ncm(sample_audio(FLAC_HEAD, length=7000), record=sample_record("flac"), cover=_oversized_png()))
        results = decode_files([good, bad], workers=2)
        for path in (good, bad):
            with self.subTest(path=path.name):
                self.assertIsInstance(results[str(path)], DecodeResult)
                self.assertTrue(results[str(path)].tagged)
        self.assertEqual(FLAC(str(results[str(bad)].output_path))["title"], ["Test Song"])
        self.assertEqual(len(FLAC(str(results[str(good)].output_path)).pictures), 1)

    def test_decode_file_tags_output(self):
        audio = sample_audio(FLAC_HEAD, length=8000)
        cover = _png_cover()
        src = self.tmp_path / "song.ncm"
        src.write_bytes(build_ncm(audio, record=sample_record("flac"), cover=cover))
        result = decode_file(src)
        self.assertTrue(result.tagged)
        self.assertIsNone(result.tag_error)
        tagged = FLAC(str(result.output_path))
        self.assertEqual(tagged["title"], ["Test Song"])
        self.assertEqual(tagged.pictures[0].data, cover)


if __name__ == "__main__":
    unittest.main()
