"""S3 (and S3-compatible) storage client built on boto3."""

import asyncio
import functools
from concurrent.futures import Executor
from typing import Any, BinaryIO, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)

from .base import (
    BaseStorageClient,
    PermanentStorageError,
    RemoteObjectState,
    StorageError,
    TransientStorageError,
    normalize_etag,
)
from ..config.schema import PrefixloadConfig


DEFAULT_REGION = "us-east-1"

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
ACCESS_DENIED_CODES = {"403", "401", "AccessDenied", "Forbidden"}
TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestThrottled",
    "RequestThrottledException",
    "SlowDown",
    "TooManyRequests",
    "RequestLimitExceeded",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
    "BandwidthLimitExceeded",
}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _http_status(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def is_not_found(error: ClientError) -> bool:
    return _error_code(error) in NOT_FOUND_CODES or _http_status(error) == 404


def classify_error(operation: str, error: Exception) -> StorageError:
    """Map a boto error onto the transient/permanent split the engine retries on."""
    message = f"{operation} failed: {error}"

    if isinstance(error, ClientError):
        code = _error_code(error)
        status = _http_status(error)
        if code in TRANSIENT_ERROR_CODES or status >= 500 or status == 429:
            return TransientStorageError(message, code=code, status=status)
        return PermanentStorageError(message, code=code, status=status)

    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return TransientStorageError(message)

    return PermanentStorageError(message)


class S3StorageClient(BaseStorageClient):
    """Storage client for AWS S3 and S3-compatible services (MinIO, Ceph RGW, ...).

    boto3 is blocking, so each request runs in an executor thread; a boto3
    client is thread-safe and its connection pool is shared by all calls.
    """

    def __init__(self, client: Any, bucket: str, executor: Optional[Executor] = None):
        """Initialize the client.

        Args:
            client: A boto3 S3 client
            bucket: Bucket every call operates on
            executor: Thread pool for blocking calls (loop default when None)
        """
        super().__init__(bucket)
        self.client = client
        self.executor = executor

    @classmethod
    def from_config(
        cls,
        config: PrefixloadConfig,
        access_key: str,
        secret_key: str,
        max_pool_connections: int = 16,
        executor: Optional[Executor] = None
    ) -> "S3StorageClient":
        """Build a client for the bucket and endpoint named in ``config``."""
        boto_config = BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path" if config.force_path_style else "auto"},
            # Retries are driven by the engine's RetryPolicy
            retries={"max_attempts": 1, "mode": "standard"},
            max_pool_connections=max_pool_connections,
        )

        client = boto3.client(
            "s3",
            endpoint_url=config.endpoint,
            region_name=config.region or DEFAULT_REGION,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=boto_config,
        )
        return cls(client, config.bucket, executor=executor)

    async def _call(self, operation: str, **params) -> dict:
        loop = asyncio.get_running_loop()
        method = getattr(self.client, operation)
        return await loop.run_in_executor(self.executor, functools.partial(method, **params))

    async def _request(self, operation: str, **params) -> dict:
        try:
            return await self._call(operation, **params)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(operation, e) from e

    async def head_object(self, key: str) -> Optional[RemoteObjectState]:
        try:
            response = await self._call("head_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise classify_error("head_object", e) from e
        except BotoCoreError as e:
            raise classify_error("head_object", e) from e

        return RemoteObjectState(
            key=key,
            etag=normalize_etag(response.get("ETag")),
            size_bytes=int(response.get("ContentLength", 0)),
        )

    async def put_object(self, key: str, body: BinaryIO, size: int) -> str:
        response = await self._request(
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentLength=size,
        )
        return normalize_etag(response.get("ETag"))

    async def create_multipart_upload(self, key: str) -> str:
        response = await self._request("create_multipart_upload", Bucket=self.bucket, Key=key)
        return response["UploadId"]

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = await self._request(
            "upload_part",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
            ContentLength=len(data),
        )
        return normalize_etag(response.get("ETag"))

    async def complete_multipart_upload(
        self,
        key: str,
        upload_id: str,
        parts: List[Tuple[int, str]]
    ) -> str:
        response = await self._request(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [
                    {"PartNumber": part_number, "ETag": f'"{etag}"'}
                    for part_number, etag in parts
                ]
            },
        )
        return normalize_etag(response.get("ETag"))

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        await self._request(
            "abort_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
        )

    async def check_bucket_access(self) -> bool:
        """Probe the bucket with HEAD.

        Returns:
            True if the bucket exists and the credentials work, False on 401/403

        Raises:
            StorageError: For anything else (missing bucket, DNS, wrong region, ...)
        """
        try:
            await self._call("head_bucket", Bucket=self.bucket)
        except ClientError as e:
            if _error_code(e) in ACCESS_DENIED_CODES or _http_status(e) in (401, 403):
                self.logger.warning("Bucket access denied", bucket=self.bucket)
                return False
            raise classify_error("head_bucket", e) from e
        except BotoCoreError as e:
            raise classify_error("head_bucket", e) from e

        self.logger.info("Bucket access verified", bucket=self.bucket)
        return True
