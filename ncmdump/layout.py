"""Byte ranges of the blocks inside a container."""

import dataclasses

from .errors import TruncatedContainer


@dataclasses.dataclass(frozen=True)
class ContainerLayout:
    """Offsets and lengths computed once from the header or trailer.

    ``audio_offset + audio_length + trailer_length == total_size`` always
    holds for a validated layout.
    """

    audio_offset: int
    audio_length: int
    total_size: int
    key_offset: int = 0
    key_length: int = 0
    meta_offset: int = 0
    meta_length: int = 0
    cover_offset: int = 0
    cover_length: int = 0
    cover_frame_length: int = 0
    trailer_length: int = 0

    @classmethod
    def payload_only(
        cls,
        audio_offset: int,
        audio_length: int,
        *,
        trailer_length: int,
        total_size: int
    ) -> "ContainerLayout":
        return cls(
            audio_offset=audio_offset,
            audio_length=audio_length,
            total_size=total_size,
            trailer_length=trailer_length,
        ).validate()

    def validate(self) -> "ContainerLayout":
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if value < 0:
                raise TruncatedContainer(f"Layout field {field.name} is negative ({value})")
        if self.cover_length > self.cover_frame_length:
            raise TruncatedContainer(
                f"Cover length {self.cover_length} exceeds its frame ({self.cover_frame_length})"
            )
        end = self.audio_offset + self.audio_length + self.trailer_length
        if end != self.total_size:
            raise TruncatedContainer(
                f"Layout ends at {end} but the input holds {self.total_size} bytes"
            )
        return self


__all__ = ["ContainerLayout"]
