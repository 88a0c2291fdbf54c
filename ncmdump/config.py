"""Runtime tunables, read once from the environment at import time."""

import os
import typing


def _env_int(name: str) -> "typing.Optional[int]":
    value = os.getenv(name)
    if not value:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    if parsed <= 0:
        return None
    return parsed


DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_INPUT_BYTES = 4 * 1024 * 1024 * 1024  # 4 GiB per container
MAX_WORKERS = 8
CPU_COUNT = max(1, os.cpu_count() or 1)

CHUNK_SIZE = _env_int("NCMDUMP_CHUNK_SIZE") or DEFAULT_CHUNK_SIZE
WORKERS = min(_env_int("NCMDUMP_WORKERS") or 1, MAX_WORKERS)
CHUNK_WORKERS = min(_env_int("NCMDUMP_CHUNK_WORKERS") or 1, CPU_COUNT)
MAX_INPUT_BYTES = _env_int("NCMDUMP_MAX_INPUT_BYTES") or DEFAULT_MAX_INPUT_BYTES

DEFAULT_EXTENSION = "mp3"
MAX_RECURSIVE_DEPTH = 8
