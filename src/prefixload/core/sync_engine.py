"""Core sync engine: mirrors prefix-matched local files into the bucket."""

import asyncio
import functools
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set, Union

from .etag import calculate_fingerprint
from .exceptions import IntegrityError, LocalFileError
from .orchestrator import UploadOrchestrator
from .planner import UploadAction, UploadDecision, plan_upload, requires_fingerprint
from .report import FailureCategory, FileOutcome, FileStatus, SyncReport
from .rules import LocalCandidate, match_candidates
from ..config.schema import PrefixloadConfig, PrefixRule
from ..config.settings import SyncSettings
from ..storage.base import BaseStorageClient, RemoteObjectState, StorageError
from ..utils.logging import get_logger, log_async_execution_time
from ..utils.retry import RetryPolicy


class ProgressStage(str, Enum):
    STARTED = "started"
    DECIDED = "decided"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressEvent:
    """Emitted to the optional progress callback; purely informational."""

    stage: ProgressStage
    candidate: LocalCandidate
    decision: Optional[UploadDecision] = None
    outcome: Optional[FileOutcome] = None


ProgressCallback = Callable[[ProgressEvent], None]


class SyncEngine:
    """Runs one best-effort pass over every candidate.

    Candidates are independent: a failure is recorded in the report and the
    run continues. Only cancellation of ``run`` itself propagates.
    """

    def __init__(
        self,
        client: BaseStorageClient,
        chunk_size: int,
        max_concurrent_files: int = 4,
        max_concurrent_parts: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        progress_callback: Optional[ProgressCallback] = None,
        executor: Optional[Executor] = None
    ):
        """Initialize sync engine.

        Args:
            client: Storage client
            chunk_size: Multipart part size in bytes
            max_concurrent_files: Ceiling on candidates processed at once
            max_concurrent_parts: Ceiling on parts in flight per file
            retry_policy: Backoff for transient storage errors
            progress_callback: Called at candidate start, decision and completion
            executor: Thread pool for hashing and file reads
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be at least 1")

        self.client = client
        self.chunk_size = chunk_size
        self.max_concurrent_files = max_concurrent_files
        self.progress_callback = progress_callback
        self.executor = executor
        self.orchestrator = UploadOrchestrator(
            client,
            chunk_size=chunk_size,
            max_concurrent_parts=max_concurrent_parts,
            retry_policy=retry_policy,
            executor=executor,
        )
        self.logger = get_logger(self.__class__.__name__)

        self._stop_requested = False
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        client: BaseStorageClient,
        config: PrefixloadConfig,
        settings: SyncSettings,
        progress_callback: Optional[ProgressCallback] = None,
        executor: Optional[Executor] = None
    ) -> "SyncEngine":
        return cls(
            client,
            chunk_size=config.part_size,
            max_concurrent_files=settings.max_concurrent_files,
            max_concurrent_parts=settings.max_concurrent_parts,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            progress_callback=progress_callback,
            executor=executor,
        )

    def request_stop(self):
        """Stop scheduling new candidates and cancel the ones in flight.

        In-flight multipart sessions are aborted; ``run`` then returns the
        partial report with the interrupted candidates marked cancelled.
        """
        if self._stop_requested:
            return
        self._stop_requested = True
        self.logger.warning("Stop requested", in_flight=len(self._tasks))
        for task in list(self._tasks):
            task.cancel()

    @log_async_execution_time
    async def run(self, rules: Sequence[PrefixRule], directory: Union[str, Path]) -> SyncReport:
        """Sync every file in ``directory`` that matches one of ``rules``.

        Raises:
            LocalFileError: If ``directory`` cannot be listed
        """
        # A stop only applies to the run it interrupted
        self._stop_requested = False
        report = SyncReport.for_rules(rules)
        candidates = match_candidates(rules, directory)

        self.logger.info(
            "Starting sync",
            directory=str(directory),
            rules=len(rules),
            candidates=len(candidates),
            chunk_size=self.chunk_size
        )

        semaphore = asyncio.Semaphore(self.max_concurrent_files)

        async def process(candidate: LocalCandidate):
            try:
                async with semaphore:
                    if self._stop_requested:
                        raise asyncio.CancelledError()
                    outcome = await self.sync_candidate(candidate)
            except asyncio.CancelledError:
                report.record(candidate.rule, self._outcome(candidate, FileStatus.CANCELLED))
                if not self._stop_requested:
                    raise
                return
            report.record(candidate.rule, outcome)

        tasks = [asyncio.create_task(process(candidate)) for candidate in candidates]
        self._tasks.update(tasks)
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self._tasks.difference_update(tasks)
            report.finish()

        self.logger.info(
            "Sync completed",
            uploaded=report.uploaded,
            skipped=report.skipped,
            failed=report.failed,
            cancelled=report.cancelled,
            duration=f"{report.duration:.2f}s"
        )
        return report

    async def resolve_remote_state(self, key: str) -> Optional[RemoteObjectState]:
        """One metadata lookup; None means no object exists under ``key``."""
        return await self.client.head_object(key)

    async def sync_candidate(self, candidate: LocalCandidate) -> FileOutcome:
        """Resolve, plan and upload one candidate. Never raises except on cancellation."""
        start_time = time.monotonic()
        key = candidate.remote_key
        decision: Optional[UploadDecision] = None
        self._emit(ProgressStage.STARTED, candidate)

        try:
            remote = await self.resolve_remote_state(key)

            fingerprint = None
            if requires_fingerprint(candidate.size_bytes, remote):
                fingerprint = await self._run_blocking(
                    calculate_fingerprint, candidate.path, self.chunk_size, candidate.size_bytes
                )

            decision = plan_upload(candidate.size_bytes, remote, self.chunk_size, fingerprint)
            self.logger.debug(
                "Upload decision",
                key=key,
                action=decision.action.value,
                reason=decision.reason,
                parts=decision.part_count
            )
            self._emit(ProgressStage.DECIDED, candidate, decision)

            if decision.action == UploadAction.SKIP:
                outcome = self._outcome(
                    candidate, FileStatus.SKIPPED, decision, etag=fingerprint.value
                )
            else:
                confirmed = await self.orchestrator.upload(
                    candidate,
                    decision,
                    fingerprint if decision.action == UploadAction.PUT_WHOLE else None
                )
                outcome = self._outcome(
                    candidate, FileStatus.UPLOADED, decision, etag=confirmed.value
                )

        except LocalFileError as e:
            self.logger.error("Cannot read local file", key=key, path=str(candidate.path), error=str(e))
            outcome = self._failure(candidate, decision, FailureCategory.LOCAL_IO, e)

        except StorageError as e:
            self.logger.error("Storage request failed", key=key, code=e.code, error=str(e))
            outcome = self._failure(candidate, decision, FailureCategory.REMOTE, e)

        except IntegrityError as e:
            self.logger.critical(
                "Integrity check failed",
                key=key,
                expected=e.expected,
                actual=e.actual,
                part_number=e.part_number
            )
            outcome = self._failure(candidate, decision, FailureCategory.INTEGRITY, e)

        except Exception as e:
            self.logger.exception("Unexpected error while syncing file", key=key)
            outcome = self._failure(candidate, decision, FailureCategory.INTERNAL, e)

        outcome.duration = time.monotonic() - start_time
        self._emit(ProgressStage.COMPLETED, candidate, decision, outcome)
        return outcome

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    def _emit(
        self,
        stage: ProgressStage,
        candidate: LocalCandidate,
        decision: Optional[UploadDecision] = None,
        outcome: Optional[FileOutcome] = None
    ):
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(ProgressEvent(stage, candidate, decision, outcome))
        except Exception as e:
            self.logger.warning("Progress callback failed", stage=stage.value, error=str(e))

    @staticmethod
    def _outcome(
        candidate: LocalCandidate,
        status: FileStatus,
        decision: Optional[UploadDecision] = None,
        **fields
    ) -> FileOutcome:
        return FileOutcome(
            file_name=candidate.file_name,
            remote_key=candidate.remote_key,
            size_bytes=candidate.size_bytes,
            status=status,
            action=decision.action if decision else None,
            **fields
        )

    def _failure(
        self,
        candidate: LocalCandidate,
        decision: Optional[UploadDecision],
        category: FailureCategory,
        error: Exception
    ) -> FileOutcome:
        return self._outcome(
            candidate, FileStatus.FAILED, decision, category=category, error=str(error)
        )


async def run_sync(
    client: BaseStorageClient,
    config: PrefixloadConfig,
    settings: Optional[SyncSettings] = None,
    progress_callback: Optional[ProgressCallback] = None
) -> SyncReport:
    """Convenience wrapper: build an engine from config and run it once."""
    engine = SyncEngine.from_settings(client, config, settings or SyncSettings(), progress_callback)
    directory = Path(config.local_directory_path).expanduser()
    return await engine.run(config.directory_struct, directory)


__all__: List[str] = [
    "ProgressCallback",
    "ProgressEvent",
    "ProgressStage",
    "SyncEngine",
    "run_sync",
]
