"""Decides whether a local file needs uploading and how."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .etag import ChunkPlan, Fingerprint, build_chunk_plan, uses_multipart
from ..storage.base import RemoteObjectState


class UploadAction(str, Enum):
    """What to do with one candidate."""
    SKIP = "skip"
    PUT_WHOLE = "put_whole"
    PUT_CHUNKED = "put_chunked"


@dataclass(frozen=True)
class UploadDecision:
    """Planner output; ``chunk_plan`` is set only for chunked uploads."""

    action: UploadAction
    chunk_plan: Optional[ChunkPlan] = None
    reason: str = ""

    @property
    def part_count(self) -> int:
        return len(self.chunk_plan) if self.chunk_plan else 1


def requires_fingerprint(size: int, remote: Optional[RemoteObjectState]) -> bool:
    """Hashing is only needed when size alone cannot prove the object differs."""
    return remote is not None and remote.size_bytes == size


def _upload(size: int, chunk_size: int, reason: str) -> UploadDecision:
    if uses_multipart(size, chunk_size):
        return UploadDecision(UploadAction.PUT_CHUNKED, build_chunk_plan(size, chunk_size), reason)
    return UploadDecision(UploadAction.PUT_WHOLE, None, reason)


def plan_upload(
    size: int,
    remote: Optional[RemoteObjectState],
    chunk_size: int,
    fingerprint: Optional[Fingerprint] = None
) -> UploadDecision:
    """Compare local state against the remote snapshot.

    Args:
        size: Local file size in bytes
        remote: Remote object state, None if absent
        chunk_size: Configured part size
        fingerprint: Local fingerprint; required when sizes are equal

    Raises:
        ValueError: If sizes match and no fingerprint was supplied
    """
    if remote is None:
        return _upload(size, chunk_size, "absent")

    if remote.size_bytes != size:
        return _upload(size, chunk_size, "size_changed")

    if fingerprint is None:
        raise ValueError("A fingerprint is required when local and remote sizes match")

    if fingerprint.matches(remote.etag):
        return UploadDecision(UploadAction.SKIP, None, "unchanged")

    return _upload(size, chunk_size, "content_changed")
