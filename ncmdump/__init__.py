"""
NCMDUMP - Recover playable audio from encrypted music containers

This module provides easy-to-use functions for decoding NCM and QMC files.
Decoded audio bytes are written verbatim; recovered metadata is embedded as
tags when the output container supports it.
"""

from .main import *
from .errors import *
from .keyvault import DEFAULT_VAULT, KeyVault
from .metadata import AudioMetadata
from .sniffer import ContainerVariant
from .version import __version__

# ============================================================================
# FILE DECODING FUNCTIONS (Container → Audio)
# ============================================================================

def dump(path, output_dir=None, overwrite: bool = False, tag: bool = True):
    """
    Decode a single container file.

    Args:
        path: Input file (.ncm, .qmc0, .qmcflac, .mflac, ...)
        output_dir: Directory for the output (default: next to the input)
        overwrite: Replace an existing output instead of raising OutputExists
        tag: Embed title/artists/album/cover into the output

    Returns:
        DecodeResult with output_path, metadata and warnings

    Raises:
        InvalidMagic: the file is not a recognised container
        CorruptKeyBlock / UnsupportedCipherVariant / TruncatedContainer
        IoFailure: read/write failure; partial output is removed

    Note:
        - The output extension follows the recovered metadata, then the
          decrypted codec header, then the input suffix
        - Metadata problems never block audio recovery; see result.warnings
    """
    return decode_file(path, output_dir, overwrite=overwrite, tagger=embed_tags if tag else None)


def dump_many(paths, output_dir=None, workers: int | None = None, overwrite: bool = False, tag: bool = True):
    """
    Decode several container files in parallel.

    Args:
        paths: Iterable of input files
        output_dir: Shared output directory (default: next to each input)
        workers: Parallel decodes, 1-8 (default: NCMDUMP_WORKERS or 1)
        overwrite: Replace existing outputs
        tag: Embed recovered metadata

    Returns:
        Dict mapping each input path to its DecodeResult or DecodeError
    """
    return decode_files(
        paths,
        output_dir,
        workers=workers,
        overwrite=overwrite,
        tagger=embed_tags if tag else None
    )


def detect(path):
    """
    Classify a file without decoding it.

    Returns:
        ContainerVariant (PRIMARY, LEGACY_STATIC, EMBEDDED_KEY or UNKNOWN)
    """
    from .sniffer import sniff
    with open(path, "rb") as handle:
        return sniff(handle)


# ============================================================================
# METADATA FUNCTIONS
# ============================================================================

def read_metadata(path):
    """
    Recover the metadata record of an NCM file without decoding its audio.

    Returns:
        AudioMetadata (cover bytes included); empty for QMC files

    Raises:
        MetadataError: the metadata block is present but unreadable
    """
    from .metadata import MetadataDecoder
    from .ncm import NcmContainerParser
    from .sniffer import sniff
    with open(path, "rb") as handle:
        if sniff(handle) is not ContainerVariant.PRIMARY:
            return AudioMetadata()
        container = NcmContainerParser().parse(handle)
    metadata = MetadataDecoder().decode(container.raw_metadata)
    metadata.cover = container.cover
    return metadata
