"""Chunked payload decryption from a seekable source into a sink."""

import concurrent.futures
import typing

from . import config
from .ciphers import KeystreamCipher
from .errors import DecodeCancelled, IoFailure
from .layout import ContainerLayout

ProgressCallback = typing.Callable[[int, int], None]


class AudioDecryptionStream:
    """Pull-based decryption of ``layout``'s payload range.

    ``chunks()`` yields plaintext in order. The keystream is addressed by
    payload offset, so ``chunk_size`` only trades memory for call overhead.
    """

    def __init__(
        self,
        source: "typing.BinaryIO",
        cipher: KeystreamCipher,
        layout: ContainerLayout,
        chunk_size: "typing.Optional[int]" = None
    ):
        chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.source = source
        self.cipher = cipher
        self.layout = layout
        self.chunk_size = chunk_size

    def _read_at(self, offset: int, length: int) -> bytes:
        try:
            self.source.seek(self.layout.audio_offset + offset)
            data = self.source.read(length)
        except OSError as exc:
            raise IoFailure(f"Failed to read payload at offset {offset}: {exc}") from exc
        if len(data) != length:
            raise IoFailure(
                f"Short read at payload offset {offset}: expected {length}, got {len(data)}"
            )
        return data

    def _ranges(self) -> "typing.Iterator[typing.Tuple[int, int]]":
        total = self.layout.audio_length
        for start in range(0, total, self.chunk_size):
            yield start, min(self.chunk_size, total - start)

    def peek(self, n: int) -> bytes:
        """Decrypt the first ``n`` payload bytes; the source position is kept."""
        n = max(0, min(n, self.layout.audio_length))
        if n == 0:
            return b""
        try:
            origin = self.source.tell()
        except OSError as exc:
            raise IoFailure(f"Failed to query source position: {exc}") from exc
        try:
            return self.cipher.decrypt(self._read_at(0, n), 0)
        finally:
            self.source.seek(origin)

    def chunks(self) -> "typing.Iterator[bytes]":
        for start, length in self._ranges():
            yield self.cipher.decrypt(self._read_at(start, length), start)

    def copy_to(
        self,
        sink: "typing.BinaryIO",
        progress_cb: "typing.Optional[ProgressCallback]" = None,
        cancel: "typing.Optional[typing.Any]" = None,
        workers: int = 1
    ) -> int:
        """Write the whole plaintext payload to ``sink``; returns bytes written.

        ``cancel`` is anything with ``is_set()`` (usually a ``threading.Event``)
        and is polled between chunks. With ``workers > 1`` up to ``workers``
        chunks are decrypted concurrently and still written in order.
        """
        total = self.layout.audio_length
        written = 0

        def _write(plain: bytes) -> None:
            nonlocal written
            if cancel is not None and cancel.is_set():
                raise DecodeCancelled("Decode cancelled", bytes_written=written)
            try:
                sink.write(plain)
            except OSError as exc:
                raise IoFailure(f"Failed to write output: {exc}", bytes_written=written) from exc
            written += len(plain)
            if progress_cb is not None:
                progress_cb(written, total)

        if workers <= 1:
            try:
                for chunk in self.chunks():
                    _write(chunk)
            except IoFailure as exc:
                exc.bytes_written = written
                raise
            return written

        ranges = list(self._ranges())

        def _decrypt(block: "typing.Tuple[int, bytes]") -> bytes:
            start, data = block
            return self.cipher.decrypt(data, start)

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            for batch_start in range(0, len(ranges), workers):
                batch = ranges[batch_start:batch_start + workers]
                try:
                    # reads stay sequential; only the XOR work fans out
                    blocks = [(start, self._read_at(start, length)) for start, length in batch]
                    for plain in executor.map(_decrypt, blocks):
                        _write(plain)
                except IoFailure as exc:
                    exc.bytes_written = written
                    raise
        return written


__all__ = ["AudioDecryptionStream", "ProgressCallback"]
