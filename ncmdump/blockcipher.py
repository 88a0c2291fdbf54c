"""Block cipher primitives used to unwrap key and metadata blocks."""

import struct
import typing

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AES_BLOCK_BITS = 128

TEA_DELTA = 0x9E3779B9
TEA_ROUNDS = 16
TEA_SALT_LEN = 2
TEA_ZERO_LEN = 7
_U32 = 0xFFFFFFFF


def aes_ecb_decrypt(key: bytes, data: bytes) -> bytes:
    """AES-ECB decrypt and strip PKCS#7 padding; ValueError on bad input."""
    if not data or len(data) % (AES_BLOCK_BITS // 8):
        raise ValueError("AES-ECB ciphertext is not a whole number of blocks")
    decryptor = Cipher(algorithms.AES(key), modes.ECB()).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()
    unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


def aes_ecb_encrypt(key: bytes, data: bytes) -> bytes:
    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _tea_key_words(key: bytes) -> "typing.Tuple[int, int, int, int]":
    if len(key) != 16:
        raise ValueError("TEA key must be 16 bytes")
    return struct.unpack(">4I", key)


def tea_decrypt_block(block: bytes, key: bytes, rounds: int = TEA_ROUNDS) -> bytes:
    k0, k1, k2, k3 = _tea_key_words(key)
    y, z = struct.unpack(">2I", block)
    total = (TEA_DELTA * rounds) & _U32
    for _ in range(rounds):
        z = (z - ((((y << 4) + k2) ^ (y + total) ^ ((y >> 5) + k3)) & _U32)) & _U32
        y = (y - ((((z << 4) + k0) ^ (z + total) ^ ((z >> 5) + k1)) & _U32)) & _U32
        total = (total - TEA_DELTA) & _U32
    return struct.pack(">2I", y, z)


def tea_encrypt_block(block: bytes, key: bytes, rounds: int = TEA_ROUNDS) -> bytes:
    """Big-endian TEA; Tencent uses 16 cycles where classic TEA uses 32."""
    k0, k1, k2, k3 = _tea_key_words(key)
    y, z = struct.unpack(">2I", block)
    total = 0
    for _ in range(rounds):
        total = (total + TEA_DELTA) & _U32
        y = (y + ((((z << 4) + k0) ^ (z + total) ^ ((z >> 5) + k1)) & _U32)) & _U32
        z = (z + ((((y << 4) + k2) ^ (y + total) ^ ((y >> 5) + k3)) & _U32)) & _U32
    return struct.pack(">2I", y, z)


def _xor8(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def tc_tea_decrypt(data: bytes, key: bytes) -> bytes:
    """Decrypt Tencent's chained TEA framing.

    Plain layout: one header byte (low 3 bits = pad length), the random
    padding, two salt bytes, the payload and seven zero bytes.
    """
    if len(data) % 8 or len(data) < 16:
        raise ValueError("tc-TEA ciphertext must be a multiple of 8 and at least 16 bytes")
    plain = bytearray()
    prev_state = bytes(8)
    prev_cipher = bytes(8)
    for pos in range(0, len(data), 8):
        block = data[pos:pos + 8]
        state = tea_decrypt_block(_xor8(block, prev_state), key)
        plain += _xor8(state, prev_cipher)
        prev_state, prev_cipher = state, block
    start = 1 + (plain[0] & 0x7) + TEA_SALT_LEN
    end = len(plain) - TEA_ZERO_LEN
    if start > end:
        raise ValueError("tc-TEA header declares more padding than the data holds")
    if any(plain[end:]):
        raise ValueError("tc-TEA zero check failed")
    return bytes(plain[start:end])


def tc_tea_encrypt(data: bytes, key: bytes, salt: bytes = b"") -> bytes:
    """Inverse of ``tc_tea_decrypt``; deterministic when ``salt`` is fixed."""
    pad_len = (8 - (len(data) + 1 + TEA_SALT_LEN + TEA_ZERO_LEN) % 8) % 8
    filler = (salt or bytes(range(1, 16)))[:pad_len + TEA_SALT_LEN]
    filler = filler.ljust(pad_len + TEA_SALT_LEN, b"\x5a")
    plain = bytes([pad_len | 0xF8]) + filler + data + bytes(TEA_ZERO_LEN)
    out = bytearray()
    prev_state = bytes(8)
    prev_cipher = bytes(8)
    for pos in range(0, len(plain), 8):
        state = _xor8(plain[pos:pos + 8], prev_cipher)
        block = _xor8(tea_encrypt_block(state, key), prev_state)
        out += block
        prev_state, prev_cipher = state, block
    return bytes(out)


__all__ = [
    "aes_ecb_decrypt",
    "aes_ecb_encrypt",
    "tea_decrypt_block",
    "tea_encrypt_block",
    "tc_tea_decrypt",
    "tc_tea_encrypt",
]
