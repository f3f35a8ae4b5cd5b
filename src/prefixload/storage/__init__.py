"""Object storage clients."""

from .base import (
    BaseStorageClient,
    RemoteObjectState,
    StorageError,
    TransientStorageError,
    PermanentStorageError,
    normalize_etag
)

from .s3 import S3StorageClient, classify_error

__all__ = [
    # Base classes and exceptions
    "BaseStorageClient",
    "RemoteObjectState",
    "StorageError",
    "TransientStorageError",
    "PermanentStorageError",
    "normalize_etag",

    # Client implementations
    "S3StorageClient",
    "classify_error"
]
