"""Synthetic container encoders shared by the test modules.

The keystreams here are written out the slow, obvious way so the tests do not
simply compare the production ciphers with themselves.
"""

import base64
import json
import struct

from ncmdump.blockcipher import aes_ecb_encrypt
from ncmdump.keyvault import DEFAULT_VAULT

NCM_KEY = b"1234567890123E7fT49x7dof9OKCgg9cdvhEuezy3iZCL1nFvBFd1T4uSktAJKmwZXsijPbijliionVUXXg9plTbXEclAE9Lb"

FLAC_HEAD = b"fLaC" + bytes([0x80, 0x00, 0x00, 0x22]) + bytes.fromhex(
    "1000" "1000" "000000" "000000" "0ac4" "42" "f000000000"
) + bytes(16)
MP3_HEAD = b"\xff\xfb\x90\x64" + bytes(28)
OGG_HEAD = b"OggS\x00\x02" + bytes(22)


def sample_audio(head: bytes = FLAC_HEAD, length: int = 20000) -> bytes:
    body = bytes((i * 31 + 7) & 0xFF for i in range(max(0, length - len(head))))
    return head + body


# ----------------------------------------------------------------------------
# Reference keystreams
# ----------------------------------------------------------------------------

def reference_ncm_keystream(key: bytes, length: int) -> bytes:
    box = list(range(256))
    last = 0
    key_offset = 0
    for i in range(256):
        swap = box[i]
        c = (swap + last + key[key_offset]) & 0xFF
        key_offset = (key_offset + 1) % len(key)
        box[i] = box[c]
        box[c] = swap
        last = c
    out = bytearray()
    for n in range(length):
        j = (n + 1) & 0xFF
        out.append(box[(box[j] + box[(box[j] + j) & 0xFF]) & 0xFF])
    return bytes(out)


def reference_static_keystream(offset: int, length: int, vault=DEFAULT_VAULT) -> bytes:
    out = bytearray()
    for pos in range(offset, offset + length):
        v = pos % 0x7FFF if pos > 0x7FFF else pos
        out.append(vault.qmc_static_box[(v * v + 80923) % 256])
    return bytes(out)


def reference_map_keystream(key: bytes, offset: int, length: int) -> bytes:
    out = bytearray()
    for pos in range(offset, offset + length):
        if pos > 0x7FFF:
            pos %= 0x7FFF
        idx = (pos * pos + 71214) % len(key)
        value = key[idx]
        rotate = ((idx & 0x7) + 4) % 8
        out.append(((value << rotate) | (value >> rotate)) & 0xFF)
    return bytes(out)


def reference_rc4_keystream(key: bytes, length: int) -> bytes:
    """Segmented RC4: 128 key-indexed bytes, then a fresh PRGA per 5120 bytes."""
    n = len(key)
    box = [i & 0xFF for i in range(n)]
    j = 0
    for i in range(n):
        j = (j + box[i] + key[i]) % n
        box[i], box[j] = box[j], box[i]

    seed_hash = 1
    for value in key:
        if value == 0:
            continue
        product = (seed_hash * value) % 2 ** 32
        if product == 0 or product <= seed_hash:
            break
        seed_hash = product

    def segment_key(segment: int) -> int:
        return int(seed_hash / ((segment + 1) * key[segment % n]) * 100.0) % n

    out = bytearray(key[segment_key(pos)] for pos in range(min(length, 128)))
    segment = 0
    while len(out) < length:
        state = list(box)
        a = b = 0
        discard = segment_key(segment)
        stream = bytearray()
        for step in range(discard + 5120):
            a = (a + 1) % n
            b = (b + state[a]) % n
            state[a], state[b] = state[b], state[a]
            if step >= discard:
                stream.append(state[(state[a] + state[b]) % n])
        start = len(out) - segment * 5120
        out += stream[start:start + length - len(out)]
        segment += 1
    return bytes(out)


def xor_bytes(data: bytes, stream: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, stream))


# ----------------------------------------------------------------------------
# NCM
# ----------------------------------------------------------------------------

def ncm_key_block(key: bytes = NCM_KEY, marker: bytes = DEFAULT_VAULT.key_marker, vault=DEFAULT_VAULT) -> bytes:
    encrypted = aes_ecb_encrypt(vault.core_key, marker + key)
    return bytes(b ^ vault.key_block_xor for b in encrypted)


def ncm_meta_block(record, kind: str = "music", vault=DEFAULT_VAULT) -> bytes:
    text = f"{kind}:{json.dumps(record, ensure_ascii=False)}".encode("utf-8")
    encrypted = aes_ecb_encrypt(vault.meta_key, text)
    wrapped = vault.meta_marker + base64.b64encode(encrypted)
    return bytes(b ^ vault.meta_block_xor for b in wrapped)


def sample_record(fmt: str = "flac") -> dict:
    return {
        "musicId": 1407551413,
        "musicName": "Test Song",
        "artist": [["Artist One", 12138269], ["Artist Two", 1050282]],
        "albumId": 84232416,
        "album": "Test Album",
        "albumPic": "https://p1.music.126.net/cover.jpg",
        "bitrate": 923000,
        "duration": 215000,
        "alias": ["Alias A"],
        "format": fmt,
    }


def build_ncm(
    audio: bytes,
    *,
    key: bytes = NCM_KEY,
    record=None,
    meta_block: bytes = None,
    key_block: bytes = None,
    cover: bytes = b"",
    frame_padding: int = 0,
    vault=DEFAULT_VAULT
) -> bytes:
    if key_block is None:
        key_block = ncm_key_block(key, vault=vault)
    if meta_block is None:
        meta_block = ncm_meta_block(record, vault=vault) if record is not None else b""
    parts = [
        vault.ncm_magic,
        b"\x01\x70",
        struct.pack("<I", len(key_block)),
        key_block,
        struct.pack("<I", len(meta_block)),
        meta_block,
        b"\x00\x00\x00\x00",
        b"\x01",
        struct.pack("<I", len(cover) + frame_padding),
        struct.pack("<I", len(cover)),
        cover,
        bytes(frame_padding),
        xor_bytes(audio, reference_ncm_keystream(key, len(audio))),
    ]
    return b"".join(parts)


# ----------------------------------------------------------------------------
# Reference tc-TEA
# ----------------------------------------------------------------------------

def reference_tea_encrypt(block: bytes, key: bytes, cycles: int = 16) -> bytes:
    v0 = int.from_bytes(block[:4], "big")
    v1 = int.from_bytes(block[4:], "big")
    k = [int.from_bytes(key[i:i + 4], "big") for i in range(0, 16, 4)]
    total = 0
    for _ in range(cycles):
        total = (total + 0x9E3779B9) % 2 ** 32
        v0 = (v0 + ((((v1 << 4) + k[0]) ^ (v1 + total) ^ ((v1 >> 5) + k[1])) % 2 ** 32)) % 2 ** 32
        v1 = (v1 + ((((v0 << 4) + k[2]) ^ (v0 + total) ^ ((v0 >> 5) + k[3])) % 2 ** 32)) % 2 ** 32
    return v0.to_bytes(4, "big") + v1.to_bytes(4, "big")


def reference_tc_tea_encrypt(
    plain: bytes,
    key: bytes,
    header_bits: int = 0xA8,
    filler: bytes = b"\xc3\x5e\x17\x90\x2d\xb4\x61\x08\xfa\x3c"
) -> bytes:
    """Tencent framing: header, pad + 2 salt bytes, payload, 7 zeros, chained TEA."""
    pad = (8 - (len(plain) + 10) % 8) % 8
    framed = bytes([header_bits & 0xF8 | pad]) + filler[:pad + 2] + plain + bytes(7)
    out = b""
    prev_cipher = 0
    prev_mixed = 0
    for i in range(0, len(framed), 8):
        mixed = int.from_bytes(framed[i:i + 8], "big") ^ prev_cipher
        encrypted = int.from_bytes(reference_tea_encrypt(mixed.to_bytes(8, "big"), key), "big")
        prev_cipher = encrypted ^ prev_mixed
        prev_mixed = mixed
        out += prev_cipher.to_bytes(8, "big")
    return out


# ----------------------------------------------------------------------------
# QMC
# ----------------------------------------------------------------------------

def build_qmc_static(audio: bytes, vault=DEFAULT_VAULT) -> bytes:
    return xor_bytes(audio, reference_static_keystream(0, len(audio), vault))


def wrap_ekey_v1(key: bytes, vault=DEFAULT_VAULT) -> bytes:
    tea_key = bytearray(16)
    for i in range(8):
        tea_key[i << 1] = vault.ekey_simple_key[i]
        tea_key[(i << 1) + 1] = key[i]
    return key[:8] + reference_tc_tea_encrypt(key[8:], bytes(tea_key))


def ekey_record(key: bytes, version: int = 1, vault=DEFAULT_VAULT) -> bytes:
    ekey = wrap_ekey_v1(key, vault)
    if version == 2:
        inner = base64.b64encode(ekey)
        wrapped = reference_tc_tea_encrypt(
            reference_tc_tea_encrypt(inner, vault.ekey_v2_key_2, header_bits=0x50),
            vault.ekey_v2_key_1,
            header_bits=0x18,
        )
        ekey = vault.ekey_v2_prefix + wrapped
    return base64.b64encode(ekey)


def map_key(length: int = 256) -> bytes:
    return bytes((i * 73 + 41) & 0xFF or 1 for i in range(length))


def build_qmc_embedded(
    audio: bytes,
    *,
    key: bytes = None,
    form: str = "qtag",
    version: int = 1,
    vault=DEFAULT_VAULT
) -> bytes:
    """Encrypt ``audio`` under ``key`` and append a key trailer.

    Keys longer than 300 bytes use the segmented RC4 reference, shorter ones
    the map reference.
    """
    key = key if key is not None else map_key()
    if len(key) > 300:
        stream = reference_rc4_keystream(key, len(audio))
    else:
        stream = reference_map_keystream(key, 0, len(audio))
    payload = xor_bytes(audio, stream)
    record = ekey_record(key, version, vault)
    if form == "qtag":
        body = record + b",1407551413,2"
        return payload + body + struct.pack(">I", len(body)) + b"QTag"
    if form == "raw":
        return payload + record + struct.pack("<I", len(record))
    if form == "stag":
        return payload + struct.pack(">I", 12) + b"0123456789ab" + b"STag"
    if form == "musicex":
        return payload + bytes(16) + b"musicex\x00"
    raise ValueError(form)
