"""Core sync logic package."""

from .exceptions import PrefixloadError, LocalFileError, IntegrityError
from .etag import Fingerprint, ChunkPart, build_chunk_plan, calculate_fingerprint
from .rules import LocalCandidate, match_candidates
from .planner import UploadAction, UploadDecision, plan_upload
from .orchestrator import UploadOrchestrator, MultipartSession, SessionState
from .report import SyncReport, RuleReport, FileOutcome, FileStatus, FailureCategory
from .sync_engine import SyncEngine, ProgressEvent, ProgressStage, run_sync

__all__ = [
    # Exceptions
    "PrefixloadError",
    "LocalFileError",
    "IntegrityError",

    # Fingerprints and planning
    "Fingerprint",
    "ChunkPart",
    "build_chunk_plan",
    "calculate_fingerprint",
    "LocalCandidate",
    "match_candidates",
    "UploadAction",
    "UploadDecision",
    "plan_upload",

    # Execution
    "UploadOrchestrator",
    "MultipartSession",
    "SessionState",
    "SyncEngine",
    "ProgressEvent",
    "ProgressStage",
    "run_sync",

    # Reporting
    "SyncReport",
    "RuleReport",
    "FileOutcome",
    "FileStatus",
    "FailureCategory",
]
