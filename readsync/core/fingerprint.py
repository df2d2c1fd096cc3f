"""Content fingerprint and document type detection.

The fingerprint samples 1 KiB blocks at exponentially spaced offsets and
hashes them with MD5. It must stay bit-compatible with the server's
implementation or hash lookups silently miss.
"""

from __future__ import annotations

import hashlib
import os
from typing import BinaryIO

SAMPLE_SIZE = 1024
# Offsets use 32-bit shift semantics: step << (2*i & 31), truncated to 32 bits.
# For i = -1 that wraps to 0, so the first block is always the file start.
SAMPLE_INDEXES = range(-1, 11)

BOOK_TYPES = {
    ".pdf": "PDF",
    ".cbz": "CBX",
    ".cbr": "CBX",
    ".cb7": "CBX",
}
DEFAULT_BOOK_TYPE = "EPUB"


def sample_offsets(size: int) -> list[int]:
    """Offsets sampled from a file of ``size`` bytes, in read order."""
    offsets = []
    for i in SAMPLE_INDEXES:
        offset = (SAMPLE_SIZE << ((2 * i) & 31)) & 0xFFFFFFFF
        if offset >= size:
            break
        offsets.append(offset)
    return offsets


def fingerprint_stream(stream: BinaryIO, size: int) -> str:
    md5 = hashlib.md5()
    for offset in sample_offsets(size):
        stream.seek(offset)
        md5.update(stream.read(SAMPLE_SIZE))
    return md5.hexdigest()


def content_fingerprint(path: str) -> str:
    """Fingerprint of a file on disk.

    Raises:
        OSError: If the file cannot be read
    """
    with open(path, "rb") as f:
        return fingerprint_stream(f, os.fstat(f.fileno()).st_size)


def fingerprint_bytes(data: bytes) -> str:
    md5 = hashlib.md5()
    for offset in sample_offsets(len(data)):
        md5.update(data[offset:offset + SAMPLE_SIZE])
    return md5.hexdigest()


def detect_book_type(name: str | None) -> str:
    """Server book type from a file name or title ending in an extension."""
    if not name:
        return DEFAULT_BOOK_TYPE
    ext = os.path.splitext(name.strip().lower())[1]
    return BOOK_TYPES.get(ext, DEFAULT_BOOK_TYPE)
