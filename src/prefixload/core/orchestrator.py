"""Executes upload decisions: single PUT or a multipart session."""

import asyncio
import functools
from concurrent.futures import Executor
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .etag import (
    ChunkPart,
    ChunkPlan,
    Fingerprint,
    calculate_fingerprint,
    combine_part_digests,
    part_digest,
    read_range,
    verify_size,
)
from .exceptions import IntegrityError, LocalFileError, PrefixloadError
from .planner import UploadAction, UploadDecision
from .rules import LocalCandidate
from ..storage.base import BaseStorageClient, TransientStorageError
from ..utils.logging import get_logger
from ..utils.retry import RetryPolicy, retry_async


RETRYABLE = (TransientStorageError,)


class SessionState(str, Enum):
    """Lifecycle of a multipart session."""
    INITIATED = "initiated"
    PARTS_IN_FLIGHT = "parts_in_flight"
    COMPLETING = "completing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"


@dataclass
class MultipartSession:
    """Server-side upload session plus the parts confirmed so far.

    Each part number is written by exactly one worker, so the mappings need
    no locking.
    """

    key: str
    upload_id: str
    chunk_plan: ChunkPlan
    state: SessionState = SessionState.INITIATED
    completed_parts: Dict[int, str] = field(default_factory=dict)
    part_digests: Dict[int, bytes] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return len(self.completed_parts) == len(self.chunk_plan)

    def record_part(self, part_number: int, etag: str, digest: bytes):
        self.completed_parts[part_number] = etag
        self.part_digests[part_number] = digest

    def ordered_parts(self) -> List[Tuple[int, str]]:
        """Confirmed parts sorted by part number, whatever order they finished in."""
        return sorted(self.completed_parts.items())

    def local_fingerprint(self) -> Fingerprint:
        return combine_part_digests([digest for _, digest in sorted(self.part_digests.items())])


class UploadOrchestrator:
    """Uploads one file per call and verifies the ETag the service reports."""

    def __init__(
        self,
        client: BaseStorageClient,
        chunk_size: int,
        max_concurrent_parts: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        executor: Optional[Executor] = None
    ):
        """Initialize the orchestrator.

        Args:
            client: Storage client shared by all uploads
            chunk_size: Part size; must match the size fingerprints were computed with
            max_concurrent_parts: Ceiling on parts in flight per file
            retry_policy: Backoff for transient storage errors
            executor: Thread pool for file reads (loop default when None)
        """
        if max_concurrent_parts < 1:
            raise ValueError("max_concurrent_parts must be at least 1")

        self.client = client
        self.chunk_size = chunk_size
        self.max_concurrent_parts = max_concurrent_parts
        self.retry_policy = retry_policy or RetryPolicy()
        self.executor = executor
        self.logger = get_logger(self.__class__.__name__)

    async def upload(
        self,
        candidate: LocalCandidate,
        decision: UploadDecision,
        fingerprint: Optional[Fingerprint] = None
    ) -> Fingerprint:
        """Carry out ``decision`` for ``candidate``.

        Returns:
            The fingerprint the service confirmed

        Raises:
            LocalFileError: If the file cannot be read
            StorageError: If the service rejects the upload or retries run out
            IntegrityError: If the confirmed ETag differs from the local one
        """
        if decision.action == UploadAction.PUT_WHOLE:
            return await self.put_whole(candidate, fingerprint)
        if decision.action == UploadAction.PUT_CHUNKED:
            return await self.put_chunked(candidate, decision.chunk_plan)
        raise ValueError(f"Nothing to upload for decision {decision.action.value}")

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    async def put_whole(
        self,
        candidate: LocalCandidate,
        fingerprint: Optional[Fingerprint] = None
    ) -> Fingerprint:
        """Single PUT; the returned ETag must equal the simple fingerprint."""
        key = candidate.remote_key

        if fingerprint is None:
            fingerprint = await self._run_blocking(
                calculate_fingerprint, candidate.path, self.chunk_size, candidate.size_bytes
            )
        if fingerprint.is_composite:
            raise ValueError("A single PUT is verified against a simple fingerprint")

        async def attempt() -> str:
            try:
                body = open(candidate.path, "rb")
            except OSError as e:
                raise LocalFileError(candidate.path, e.strerror or str(e))
            with body:
                return await self.client.put_object(key, body, candidate.size_bytes)

        self.logger.debug("Uploading object", key=key, size=candidate.size_bytes)
        etag = await retry_async(
            attempt, self.retry_policy, RETRYABLE, operation="put_object", key=key
        )

        if not fingerprint.matches(etag):
            raise IntegrityError(key, fingerprint.value, etag)

        self.logger.info("Object uploaded", key=key, etag=etag)
        return fingerprint

    async def put_chunked(self, candidate: LocalCandidate, chunk_plan: ChunkPlan) -> Fingerprint:
        """Multipart upload; the session is always completed or aborted before returning."""
        key = candidate.remote_key

        upload_id = await retry_async(
            lambda: self.client.create_multipart_upload(key),
            self.retry_policy,
            RETRYABLE,
            operation="create_multipart_upload",
            key=key
        )
        session = MultipartSession(key=key, upload_id=upload_id, chunk_plan=chunk_plan)
        self.logger.info(
            "Multipart session opened",
            key=key,
            upload_id=upload_id,
            parts=len(chunk_plan)
        )

        async with self.session_scope(session):
            await self._upload_parts(candidate, session)
            return await self._complete(session)

    @asynccontextmanager
    async def session_scope(self, session: MultipartSession):
        """Abort ``session`` on every exit that is not a commit, cancellation included."""
        try:
            yield session
        except BaseException as e:
            if session.state != SessionState.COMMITTED:
                await asyncio.shield(self._abort(session, e))
            raise

    async def _upload_parts(self, candidate: LocalCandidate, session: MultipartSession):
        self._transition(session, SessionState.PARTS_IN_FLIGHT)

        # Parts are read by offset; a file that changed size would commit a truncated object
        await self._run_blocking(verify_size, candidate.path, candidate.size_bytes)

        # Workers claim parts from one shared iterator; each part is taken once
        pending = iter(session.chunk_plan)

        async def worker():
            for part in pending:
                await self._upload_part(candidate, session, part)

        worker_count = min(self.max_concurrent_parts, len(session.chunk_plan))
        workers = [asyncio.create_task(worker()) for _ in range(worker_count)]

        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        await self._run_blocking(verify_size, candidate.path, candidate.size_bytes)

    async def _upload_part(self, candidate: LocalCandidate, session: MultipartSession, part: ChunkPart):
        data = await self._run_blocking(read_range, candidate.path, part.offset, part.length)
        digest = part_digest(data)

        etag = await retry_async(
            lambda: self.client.upload_part(session.key, session.upload_id, part.part_number, data),
            self.retry_policy,
            RETRYABLE,
            operation="upload_part",
            key=session.key,
            part_number=part.part_number
        )

        if etag != digest.hex():
            raise IntegrityError(session.key, digest.hex(), etag, part_number=part.part_number)

        session.record_part(part.part_number, etag, digest)
        self.logger.debug(
            "Part uploaded",
            key=session.key,
            part_number=part.part_number,
            completed=len(session.completed_parts),
            total=len(session.chunk_plan)
        )

    async def _complete(self, session: MultipartSession) -> Fingerprint:
        self._transition(session, SessionState.COMPLETING)

        if not session.is_complete:
            missing = sorted(
                p.part_number for p in session.chunk_plan
                if p.part_number not in session.completed_parts
            )
            raise PrefixloadError(f"Cannot complete {session.key}: parts {missing} not confirmed")

        expected = session.local_fingerprint()
        etag = await retry_async(
            lambda: self.client.complete_multipart_upload(
                session.key, session.upload_id, session.ordered_parts()
            ),
            self.retry_policy,
            RETRYABLE,
            operation="complete_multipart_upload",
            key=session.key
        )
        self._transition(session, SessionState.COMMITTED)

        if not expected.matches(etag):
            raise IntegrityError(session.key, expected.value, etag)

        self.logger.info("Multipart upload committed", key=session.key, etag=etag)
        return expected

    async def _abort(self, session: MultipartSession, cause: BaseException):
        self._transition(session, SessionState.ABORTING, cause=repr(cause))
        try:
            await retry_async(
                lambda: self.client.abort_multipart_upload(session.key, session.upload_id),
                self.retry_policy,
                RETRYABLE,
                operation="abort_multipart_upload",
                key=session.key
            )
        except Exception as e:
            # Leaves the session in ABORTING; the upload id is logged for manual cleanup
            self.logger.error(
                "Failed to abort multipart session",
                key=session.key,
                upload_id=session.upload_id,
                error=str(e)
            )
            return

        self._transition(session, SessionState.ABORTED)

    def _transition(self, session: MultipartSession, state: SessionState, **context):
        self.logger.debug(
            "Multipart session state change",
            key=session.key,
            upload_id=session.upload_id,
            previous=session.state.value,
            state=state.value,
            **context
        )
        session.state = state
