# NCMDUMP DECODE ENGINE ->

import concurrent.futures
import dataclasses
import os
import pathlib
import sys
import threading
import time
import typing

try:
    import colorama
    colorama.init()  # Initialize colorama for cross-platform color support
except ImportError:
    colorama = None  # Colorama is optional

from . import config
from .ciphers import KeyMaterial, build_cipher
from .errors import (
    DecodeError,
    InvalidMagic,
    IoFailure,
    MetadataError,
    OutputExists,
    ParseError,
    TagEmbedFailure,
)
from .keyvault import DEFAULT_VAULT, KeyVault
from .layout import ContainerLayout
from .metadata import AudioMetadata, MetadataDecoder
from .ncm import NcmContainerParser
from .qmc import QmcContainerParser
from .sniffer import ContainerVariant, sniff, sniff_audio_format
from .stream import AudioDecryptionStream, ProgressCallback
from .tagging import embed_tags
from .version import __version__

PathLike = typing.Union[str, "os.PathLike[str]"]
Tagger = typing.Callable[[str, AudioMetadata], bool]

HEAD_PROBE_LENGTH = 16
KNOWN_FORMATS = frozenset({"mp3", "flac", "ogg", "m4a", "mp4", "wav", "wma", "ape", "aac"})

# Input suffix -> most likely plain extension, used when nothing better is known
SUFFIX_FORMATS = {
    ".ncm": "mp3",
    ".qmc0": "mp3",
    ".qmc2": "ogg",
    ".qmc3": "mp3",
    ".qmc4": "ogg",
    ".qmc6": "ogg",
    ".qmc8": "ogg",
    ".qmcflac": "flac",
    ".qmcogg": "ogg",
    ".tkm": "m4a",
    ".bkcmp3": "mp3",
    ".bkcm4a": "m4a",
    ".bkcflac": "flac",
    ".bkcwav": "wav",
    ".bkcape": "ape",
    ".bkcogg": "ogg",
    ".bkcwma": "wma",
    ".tm0": "mp3",
    ".tm2": "m4a",
    ".tm3": "mp3",
    ".tm6": "m4a",
    ".mflac": "flac",
    ".mflac0": "flac",
    ".mgg": "ogg",
    ".mgg0": "ogg",
    ".mgg1": "ogg",
    ".mmp4": "mp4",
    ".666c6163": "flac",
    ".6d7033": "mp3",
    ".6f6767": "ogg",
    ".6d3461": "m4a",
    ".776176": "wav",
}


@dataclasses.dataclass
class DecodeResult:
    input_path: pathlib.Path
    output_path: pathlib.Path
    metadata: AudioMetadata
    variant: ContainerVariant
    bytes_written: int = 0
    warnings: "typing.List[str]" = dataclasses.field(default_factory=list)
    tagged: bool = False
    tag_error: "typing.Optional[TagEmbedFailure]" = None


def choose_extension(
    metadata: AudioMetadata,
    plain_head: bytes,
    input_path: "typing.Optional[PathLike]" = None
) -> str:
    """Pick the output extension: metadata, then codec magic, then input suffix."""
    declared = (metadata.format or "").strip().lower().lstrip(".")
    if declared in KNOWN_FORMATS:
        return declared
    sniffed = sniff_audio_format(plain_head)
    if sniffed:
        return sniffed
    if input_path is not None:
        suffix = pathlib.Path(input_path).suffix.lower()
        if suffix in SUFFIX_FORMATS:
            return SUFFIX_FORMATS[suffix]
    return config.DEFAULT_EXTENSION


@dataclasses.dataclass
class DecodeJob:
    """Everything one file's decode needs, resolved before any output exists."""

    input_path: pathlib.Path
    variant: ContainerVariant
    key_material: KeyMaterial
    layout: ContainerLayout
    metadata: AudioMetadata
    output_dir: "typing.Optional[pathlib.Path]" = None
    warnings: "typing.List[str]" = dataclasses.field(default_factory=list)

    @classmethod
    def prepare(
        cls,
        input_path: pathlib.Path,
        source: "typing.BinaryIO",
        output_dir: "typing.Optional[pathlib.Path]" = None,
        vault: KeyVault = DEFAULT_VAULT
    ) -> "DecodeJob":
        variant = sniff(source, vault=vault)
        if variant is ContainerVariant.UNKNOWN:
            raise InvalidMagic(f"{input_path.name}: leading bytes match no known container")
        warnings: "typing.List[str]" = []
        if variant is ContainerVariant.PRIMARY:
            container = NcmContainerParser(vault).parse(source)
            try:
                metadata = MetadataDecoder(vault).decode(container.raw_metadata)
            except MetadataError as exc:
                warnings.append(f"metadata unreadable: {exc}")
                metadata = AudioMetadata()
            metadata.cover = container.cover
        else:
            container = QmcContainerParser(vault).parse(source, variant)
            metadata = AudioMetadata()
        return cls(
            input_path=input_path,
            variant=variant,
            key_material=container.key_material,
            layout=container.layout,
            metadata=metadata,
            output_dir=output_dir,
            warnings=warnings,
        )

    def output_path(self, plain_head: bytes) -> pathlib.Path:
        parent = self.output_dir if self.output_dir is not None else self.input_path.parent
        ext = choose_extension(self.metadata, plain_head, self.input_path)
        return parent / f"{self.input_path.stem}.{ext}"


def _discard_partial(path: pathlib.Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def decode_file(
    input_path: PathLike,
    output_dir: "typing.Optional[PathLike]" = None,
    *,
    overwrite: bool = False,
    tagger: "typing.Optional[Tagger]" = embed_tags,
    keep_partial: bool = False,
    chunk_size: "typing.Optional[int]" = None,
    chunk_workers: "typing.Optional[int]" = None,
    progress_cb: "typing.Optional[ProgressCallback]" = None,
    cancel: "typing.Optional[threading.Event]" = None,
    vault: KeyVault = DEFAULT_VAULT
) -> DecodeResult:
    """Decode one container next to its input (or into ``output_dir``).

    Structural problems raise before the output file is opened. A streaming
    failure raises ``IoFailure`` carrying ``bytes_written`` and
    ``output_path``; the partial file is removed unless ``keep_partial``.
    Metadata and tagging problems only add entries to ``result.warnings``.
    """
    path = pathlib.Path(input_path)
    out_dir = pathlib.Path(output_dir) if output_dir is not None else None
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise IoFailure(f"Cannot stat {path}: {exc}") from exc
    if size > config.MAX_INPUT_BYTES:
        raise ParseError(f"{path.name}: {size} bytes exceeds the {config.MAX_INPUT_BYTES} byte limit")

    try:
        source = open(path, "rb")
    except OSError as exc:
        raise IoFailure(f"Cannot open {path}: {exc}") from exc
    with source:
        job = DecodeJob.prepare(path, source, out_dir, vault=vault)
        stream = AudioDecryptionStream(
            source,
            build_cipher(job.key_material),
            job.layout,
            chunk_size=chunk_size,
        )
        target = job.output_path(stream.peek(HEAD_PROBE_LENGTH))
        if target.resolve() == path.resolve():
            raise OutputExists(f"{target} would overwrite its own input")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # exclusive create; concurrent jobs never share an output
            sink = open(target, "wb" if overwrite else "xb")
        except FileExistsError as exc:
            raise OutputExists(f"{target} already exists") from exc
        except OSError as exc:
            raise IoFailure(f"Cannot create {target}: {exc}", output_path=target) from exc
        try:
            with sink:
                written = stream.copy_to(
                    sink,
                    progress_cb=progress_cb,
                    cancel=cancel,
                    workers=chunk_workers or config.CHUNK_WORKERS,
                )
        except IoFailure as exc:
            exc.output_path = target
            if not keep_partial:
                _discard_partial(target)
            raise

    result = DecodeResult(
        input_path=path,
        output_path=target,
        metadata=job.metadata,
        variant=job.variant,
        bytes_written=written,
        warnings=list(job.warnings),
    )
    if tagger is not None and not job.metadata.is_empty:
        try:
            result.tagged = bool(tagger(str(target), job.metadata))
        except TagEmbedFailure as exc:
            result.tag_error = exc
            result.warnings.append(f"tagging failed: {exc}")
    return result


def decode_files(
    paths: "typing.Iterable[PathLike]",
    output_dir: "typing.Optional[PathLike]" = None,
    *,
    workers: "typing.Optional[int]" = None,
    on_done: "typing.Optional[typing.Callable[[str, typing.Any], None]]" = None,
    **options
) -> "typing.Dict[str, typing.Union[DecodeResult, DecodeError]]":
    """Decode several files, one per worker thread.

    The returned mapping holds a ``DecodeResult`` or the ``DecodeError`` raised
    for each input path; one failing file never affects the others.
    """
    paths = [str(p) for p in paths]
    results: "typing.Dict[str, typing.Union[DecodeResult, DecodeError]]" = {}
    if not paths:
        return results
    max_workers = max(1, min(workers or config.WORKERS, config.MAX_WORKERS, len(paths)))

    def _decode_one(path: str) -> "typing.Tuple[str, typing.Union[DecodeResult, DecodeError]]":
        try:
            outcome = decode_file(path, output_dir, **options)
        except DecodeError as exc:
            outcome = exc
        if on_done is not None:
            on_done(path, outcome)
        return path, outcome

    if max_workers == 1:
        for path in paths:
            key, outcome = _decode_one(path)
            results[key] = outcome
        return results

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(_decode_one, path) for path in paths]
        for future in futures:
            key, outcome = future.result()
            results[key] = outcome
    return results


def _human_readable_size(num_bytes: int) -> str:
    units = ["B", "KiB", "MiB", "GiB"]
    value = float(num_bytes)
    for unit in units:
        if value < 1024.0 or unit == units[-1]:
            return f"{value:.2f} {unit}"
        value /= 1024.0
    return f"{value:.2f} TiB"


class _ProgressReporter:
    """Per-file status lines plus an overall bar when attached to a terminal."""

    STATUS_OK = "SUCCESS!"
    STATUS_SKIP = "SKIPPED"
    STATUS_FAIL = "FAIL!"

    def __init__(self, total_files: int, stream=None, verbose: bool = False, min_interval: float = 0.1):
        self.total_files = max(total_files, 1)
        self.stream = stream or sys.stdout
        self.verbose = verbose
        self.done = 0
        self.bytes_done = 0
        self._min_interval = max(0.0, float(min_interval))
        self._last_render = 0.0
        self._bar_visible = False
        self._lock = threading.Lock()
        self._is_tty = bool(getattr(self.stream, "isatty", lambda: False)())
        if colorama is not None:
            self._green = colorama.Fore.GREEN
            self._yellow = colorama.Fore.YELLOW
            self._red = colorama.Fore.RED
            self._reset = colorama.Fore.RESET
        else:
            self._green = self._yellow = self._red = self._reset = ""

    def _colour(self, status: str) -> str:
        if not self._is_tty:
            return status
        colour = {
            self.STATUS_OK: self._green,
            self.STATUS_SKIP: self._yellow,
            self.STATUS_FAIL: self._red,
        }.get(status, "")
        return f"{colour}{status}{self._reset}" if colour else status

    def _render_bar(self, width: int = 30) -> str:
        fraction = self.done / self.total_files
        filled = int(fraction * width)
        return f"({'❚' * filled}{' ' * (width - filled)}) {self.done}/{self.total_files}"

    def _clear_bar(self) -> None:
        if self._bar_visible:
            self.stream.write("\r\033[K")
            self._bar_visible = False

    def _draw_bar(self, force: bool = False) -> None:
        if not self._is_tty:
            return
        now = time.monotonic()
        if not force and (now - self._last_render) < self._min_interval:
            return
        self._last_render = now
        self.stream.write(f"\r{self._render_bar()} {_human_readable_size(self.bytes_done)}")
        self.stream.flush()
        self._bar_visible = True

    def chunk_written(self, written: int, total: int) -> None:
        with self._lock:
            self._draw_bar()

    def warn(self, message: str) -> None:
        if not self.verbose:
            return
        with self._lock:
            self._clear_bar()
            print(f"⚠ {message}", file=sys.stderr)

    def file_done(self, path: str, status: str, detail: str = "", size: int = 0) -> None:
        with self._lock:
            self.done += 1
            self.bytes_done += size
            self._clear_bar()
            line = f"{path}: {self._colour(status)}"
            if detail and (self.verbose or status == self.STATUS_FAIL):
                line = f"{line} {detail}"
            print(line, file=self.stream)
            self._draw_bar(force=True)

    def finish(self) -> None:
        with self._lock:
            if self._bar_visible:
                self.stream.write("\n")
                self.stream.flush()
                self._bar_visible = False


def collect_targets(
    targets: "typing.Iterable[PathLike]",
    recursive: bool = False,
    max_depth: int = config.MAX_RECURSIVE_DEPTH
) -> "typing.List[pathlib.Path]":
    """Expand files and directories into a flat list of files.

    Directories contribute their immediate files, or everything up to
    ``max_depth`` levels down when ``recursive`` is set. Missing targets are
    skipped.
    """
    depth_limit = max_depth if recursive else 1
    found: "typing.List[pathlib.Path]" = []
    for raw in targets:
        target = pathlib.Path(raw)
        if target.is_file():
            found.append(target)
            continue
        if not target.is_dir():
            continue
        base_depth = len(target.parts)
        for root, dirs, files in os.walk(target, followlinks=True):
            depth = len(pathlib.Path(root).parts) - base_depth + 1
            if depth >= depth_limit:
                dirs[:] = []
            dirs.sort()
            for name in sorted(files):
                found.append(pathlib.Path(root) / name)
    return found


def cli(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="ncmdump",
        description="Recover playable audio from encrypted music containers"
    )
    parser.add_argument(
        "targets",
        nargs="+",
        metavar="TARGETS",
        help="Files or directories to convert"
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Output directory (default: next to each input file)"
    )
    parser.add_argument(
        "-O", "--overwrite",
        action="store_true",
        help="Overwrite outputs that already exist instead of skipping them"
    )
    parser.add_argument(
        "-r", "--recursive",
        action="store_true",
        help=f"Walk directories recursively (up to {config.MAX_RECURSIVE_DEPTH} levels)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="List every file processed and print warnings"
    )
    parser.add_argument(
        "-w", "--worker",
        dest="workers",
        type=int,
        default=config.WORKERS,
        help=f"Number of files decoded in parallel (1-{config.MAX_WORKERS})"
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=None,
        help="Bytes decrypted per chunk"
    )
    parser.add_argument(
        "--no-tag",
        dest="tag",
        action="store_false",
        help="Do not write recovered metadata into the outputs"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    args = parser.parse_args(argv)

    if not 1 <= args.workers <= config.MAX_WORKERS:
        parser.error(f"--worker must be between 1 and {config.MAX_WORKERS}")
    if args.chunk_size is not None and args.chunk_size <= 0:
        parser.error("--chunk-size must be positive")

    paths = collect_targets(args.targets, recursive=args.recursive)
    if not paths:
        print("No target can be converted", file=sys.stderr)
        return 1

    reporter = _ProgressReporter(len(paths), verbose=args.verbose)

    def _on_done(path: str, outcome) -> None:
        if isinstance(outcome, DecodeResult):
            for warning in outcome.warnings:
                reporter.warn(f"{warning}: {path}")
            reporter.file_done(
                path,
                reporter.STATUS_OK,
                f"-> {outcome.output_path}",
                size=outcome.bytes_written,
            )
        elif isinstance(outcome, (InvalidMagic, OutputExists)):
            reporter.file_done(path, reporter.STATUS_SKIP, str(outcome))
        else:
            reporter.file_done(path, reporter.STATUS_FAIL, str(outcome))

    try:
        results = decode_files(
            paths,
            args.output,
            workers=args.workers,
            on_done=_on_done,
            overwrite=args.overwrite,
            tagger=embed_tags if args.tag else None,
            chunk_size=args.chunk_size,
            progress_cb=reporter.chunk_written,
        )
    except KeyboardInterrupt:
        raise KeyboardInterrupt("Exiting...") from None
    finally:
        reporter.finish()

    failures = 0
    for outcome in results.values():
        if isinstance(outcome, DecodeError) and not isinstance(outcome, (InvalidMagic, OutputExists)):
            failures += 1
    return 0 if failures == 0 else 1


def main(argv=None) -> int:
    return cli(argv)


__all__ = [
    "DecodeJob",
    "DecodeResult",
    "SUFFIX_FORMATS",
    "choose_extension",
    "cli",
    "collect_targets",
    "decode_file",
    "decode_files",
    "embed_tags",
]


if __name__ == "__main__":
    raise SystemExit(main())
