"""Object storage client interface and common functionality."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Tuple

from ..utils.logging import get_logger


@dataclass(frozen=True)
class RemoteObjectState:
    """Snapshot of an existing object, as reported by a metadata lookup."""

    key: str
    etag: str
    size_bytes: int


def normalize_etag(etag: Optional[str]) -> str:
    """Strip the quotes S3 wraps around ETag values."""
    return (etag or "").strip().strip('"')


class BaseStorageClient(ABC):
    """Abstract base class for the object store the engine uploads into.

    Implementations are blocking-free from the caller's point of view: every
    method is a coroutine. All ETags returned are normalized (no quotes).
    """

    def __init__(self, bucket: str):
        self.bucket = bucket
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def head_object(self, key: str) -> Optional[RemoteObjectState]:
        """Look up an object's ETag and size.

        Returns:
            The object's state, or None if no object exists under ``key``
        """
        pass

    @abstractmethod
    async def put_object(self, key: str, body: BinaryIO, size: int) -> str:
        """Upload a whole object in one request.

        Returns:
            The ETag the service assigned
        """
        pass

    @abstractmethod
    async def create_multipart_upload(self, key: str) -> str:
        """Open a multipart session.

        Returns:
            The session's upload id
        """
        pass

    @abstractmethod
    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part of an open session.

        Returns:
            The part's ETag
        """
        pass

    @abstractmethod
    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: List[Tuple[int, str]]
    ) -> str:
        """Commit a session from ``(part_number, etag)`` pairs in ascending order.

        Returns:
            The composite ETag of the committed object
        """
        pass

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Discard a session and the parts uploaded into it."""
        pass

    @abstractmethod
    async def check_bucket_access(self) -> bool:
        """Return True if the bucket is reachable, False if access is denied."""
        pass


class StorageError(Exception):
    """Base class for errors reported by the object store."""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class TransientStorageError(StorageError):
    """Throttling, timeouts, 5xx responses and dropped connections; worth retrying."""
    pass


class PermanentStorageError(StorageError):
    """Authorization failures and malformed requests; retrying cannot help."""
    pass
