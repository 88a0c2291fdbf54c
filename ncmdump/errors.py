"""Exception taxonomy for container decoding."""

import typing


class DecodeError(Exception):
    """Base class for every failure raised while decoding one input file."""


class ParseError(DecodeError):
    """Structural failure detected before any output byte is written."""


class InvalidMagic(ParseError):
    pass


class CorruptKeyBlock(ParseError):
    pass


class UnsupportedCipherVariant(ParseError):
    """The container is recognised but its key scheme is not implemented."""


class TruncatedContainer(ParseError):
    pass


class MetadataError(DecodeError):
    """The metadata block could not be decrypted or parsed.

    Never fatal: callers downgrade it to an empty record and a warning.
    """


class IoFailure(DecodeError):
    """Read/write failure while streaming, with the partial progress made."""

    def __init__(
        self,
        message: str,
        *,
        bytes_written: int = 0,
        output_path: "typing.Optional[typing.Any]" = None
    ):
        super().__init__(message)
        self.bytes_written = bytes_written
        self.output_path = output_path


class DecodeCancelled(IoFailure):
    pass


class OutputExists(DecodeError):
    pass


class TagEmbedFailure(DecodeError):
    """Raised by the tagging collaborator; decoded audio stays valid."""


__all__ = [
    "DecodeError",
    "ParseError",
    "InvalidMagic",
    "CorruptKeyBlock",
    "UnsupportedCipherVariant",
    "TruncatedContainer",
    "MetadataError",
    "IoFailure",
    "DecodeCancelled",
    "OutputExists",
    "TagEmbedFailure",
]
