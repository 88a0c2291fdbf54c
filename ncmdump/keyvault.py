"""Fixed key material shared read-only by every decode job."""

import dataclasses
import types
import typing

# Legacy QMC substitution box, indexed by (pos * pos + 27) & 0xFF.
_QMC_STATIC_BOX = bytes.fromhex(
    "77 48 32 73 DE F2 C0 C8 95 EC 30 B2 51 C3 E1 A0"
    "9E E6 9D CF FA 7F 14 D1 CE B8 DC C3 4A 67 93 D6"
    "28 C2 91 70 CA 8D A2 A4 F0 08 61 90 7E 6F A2 E0"
    "EB AE 3E B6 67 C7 92 F4 91 B5 F6 6C 5E 84 40 F7"
    "F3 1B 02 7F D5 AB 41 89 28 F4 25 CC 52 11 AD 43"
    "68 A6 41 8B 84 B5 FF 2C 92 4A 26 D8 47 6A 7C 95"
    "61 CC E6 CB BB 3F 47 58 89 75 C3 75 A1 D9 AF CC"
    "08 73 17 DC AA 9A A2 16 41 D8 A2 06 C6 8B FC 66"
    "34 9F CF 18 23 A0 0A 74 E7 2B 27 70 92 E9 AF 37"
    "E6 8C A7 BC 62 65 9C C2 08 C9 88 B3 F3 43 AC 74"
    "2C 0F D4 AF A1 C3 01 64 95 4E 48 9F F4 35 78 95"
    "7A 39 D6 6A A0 6D 40 E8 4F A8 EF 11 1D F3 1B 3F"
    "3F 07 DD 6F 5B 19 30 19 FB EF 0E 37 F0 0E CD 16"
    "49 FE 53 47 13 1A BD A4 F1 40 19 60 0E ED 68 09"
    "06 5F 4D CF 3D 1A FE 20 77 E4 D9 DA F9 A4 2B 76"
    "1C 71 DB 00 BC FD 0C 6C A5 47 F7 F6 00 79 4A 11"
)


def _static_mask(box: bytes) -> bytes:
    # (i + 128)^2 == i^2 (mod 256), so 128 entries cover the whole cycle
    return bytes(box[(i * i + 27) & 0xFF] for i in range(128))


@dataclasses.dataclass(frozen=True)
class KeyVault:
    """Named constants for both container families.

    Instances are immutable and safe to share between concurrent decodes.
    """

    ncm_magic: bytes = b"CTENFDAM"
    core_key: bytes = b"hzHRAmso5kInbaxW"
    meta_key: bytes = b"#14ljk_!\\]&0U<'("
    key_block_xor: int = 0x64
    meta_block_xor: int = 0x63
    key_marker: bytes = b"neteasecloudmusic"
    meta_marker: bytes = b"163 key(Don't modify):"
    qmc_static_box: bytes = _QMC_STATIC_BOX
    qmc_static_mask: bytes = _static_mask(_QMC_STATIC_BOX)
    qmc_static_fold: int = 0x7FFF
    ekey_simple_key: bytes = bytes((0x69, 0x56, 0x46, 0x38, 0x2B, 0x20, 0x15, 0x0B))
    ekey_v2_prefix: bytes = b"QQMusic EncV2,Key:"
    ekey_v2_key_1: bytes = b"386ZJY!@#*$%^&)("
    ekey_v2_key_2: bytes = b"**#!(#$%&^a1cZ,T"

    def lookup(self, name: str) -> "typing.Union[bytes, int]":
        try:
            return self.as_mapping()[name]
        except KeyError:
            raise KeyError(f"Unknown key vault constant: {name}") from None

    def as_mapping(self) -> "types.MappingProxyType":
        return types.MappingProxyType(
            {field.name: getattr(self, field.name) for field in dataclasses.fields(self)}
        )


DEFAULT_VAULT = KeyVault()

__all__ = ["KeyVault", "DEFAULT_VAULT"]
