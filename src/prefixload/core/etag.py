"""Local reproduction of the S3 ETag for single-part and multipart uploads.

S3 reports the MD5 hex digest of the content for objects written with a
single PUT. For objects committed from a multipart upload it reports the MD5
of the concatenated binary part digests, hex encoded and suffixed with
``-<part count>``. Both depend on the exact part boundaries, so the same
part size must be used here and for the upload itself.
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Sequence, Tuple, Union

from .exceptions import LocalFileError


READ_BUFFER_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ChunkPart:
    """Byte range of one multipart part; part numbers start at 1."""

    part_number: int
    offset: int
    length: int


ChunkPlan = Tuple[ChunkPart, ...]


def build_chunk_plan(size: int, chunk_size: int) -> ChunkPlan:
    """Split ``size`` bytes into ``ceil(size / chunk_size)`` parts.

    Every part but the last is exactly ``chunk_size`` bytes. An empty file
    is the one case with an empty part.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if size < 0:
        raise ValueError("size must not be negative")

    if size == 0:
        return (ChunkPart(part_number=1, offset=0, length=0),)

    count = -(-size // chunk_size)
    return tuple(
        ChunkPart(
            part_number=index + 1,
            offset=index * chunk_size,
            length=min(chunk_size, size - index * chunk_size),
        )
        for index in range(count)
    )


def uses_multipart(size: int, chunk_size: int) -> bool:
    return size > chunk_size


@dataclass(frozen=True)
class Fingerprint:
    """Predicted ETag; ``part_count`` is None for the single-PUT form."""

    hex_digest: str
    part_count: Optional[int] = None

    @property
    def is_composite(self) -> bool:
        return self.part_count is not None

    @property
    def value(self) -> str:
        if self.part_count is None:
            return self.hex_digest
        return f"{self.hex_digest}-{self.part_count}"

    def matches(self, etag: str) -> bool:
        return self.value == etag

    def __str__(self) -> str:
        return self.value


def _md5(data: bytes = b""):
    return hashlib.md5(data, usedforsecurity=False)


def _digest_exactly(stream: BinaryIO, length: int):
    digest = _md5()
    remaining = length
    while remaining > 0:
        block = stream.read(min(READ_BUFFER_SIZE, remaining))
        if not block:
            name = getattr(stream, "name", "<stream>")
            raise LocalFileError(name, f"unexpected end of data, {remaining} bytes short")
        digest.update(block)
        remaining -= len(block)
    return digest


def combine_part_digests(digests: Sequence[bytes]) -> Fingerprint:
    """Composite ETag from binary part digests given in part order."""
    if not digests:
        raise ValueError("At least one part digest is required")
    combined = _md5()
    for digest in digests:
        combined.update(digest)
    return Fingerprint(combined.hexdigest(), len(digests))


def part_digest(data: bytes) -> bytes:
    """Binary MD5 of one part's bytes."""
    return _md5(data).digest()


def fingerprint_stream(stream: BinaryIO, size: int, chunk_size: int) -> Fingerprint:
    """Fingerprint ``size`` bytes read sequentially from ``stream``."""
    plan = build_chunk_plan(size, chunk_size)

    if len(plan) == 1:
        return Fingerprint(_digest_exactly(stream, size).hexdigest())

    return combine_part_digests([
        _digest_exactly(stream, part.length).digest()
        for part in plan
    ])


def calculate_fingerprint(
    path: Union[str, Path],
    chunk_size: int,
    expected_size: Optional[int] = None
) -> Fingerprint:
    """Fingerprint a file on disk.

    Args:
        path: File to hash
        chunk_size: Part size the object is (or would be) uploaded with
        expected_size: Size seen at scan time; a different size now fails

    Raises:
        LocalFileError: If the file cannot be read or changed size
    """
    try:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            if expected_size is not None and size != expected_size:
                raise LocalFileError(path, f"size changed from {expected_size} to {size} bytes")
            return fingerprint_stream(f, size, chunk_size)
    except OSError as e:
        raise LocalFileError(path, e.strerror or str(e))


def verify_size(path: Union[str, Path], expected_size: int) -> None:
    """Raise ``LocalFileError`` unless the file still has ``expected_size`` bytes."""
    try:
        size = os.stat(path).st_size
    except OSError as e:
        raise LocalFileError(path, e.strerror or str(e))

    if size != expected_size:
        raise LocalFileError(path, f"size changed from {expected_size} to {size} bytes")


def read_range(path: Union[str, Path], offset: int, length: int) -> bytes:
    """Read exactly ``length`` bytes at ``offset``.

    Raises:
        LocalFileError: On read errors or if the file is shorter than expected
    """
    try:
        with open(path, "rb") as f:
            f.seek(offset)
            data = f.read(length)
    except OSError as e:
        raise LocalFileError(path, e.strerror or str(e))

    if len(data) != length:
        raise LocalFileError(path, f"expected {length} bytes at offset {offset}, got {len(data)}")
    return data
