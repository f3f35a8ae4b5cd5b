"""Per-rule, per-file outcomes of one sync run."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .planner import UploadAction
from ..config.schema import PrefixRule


class FileStatus(str, Enum):
    UPLOADED = "uploaded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureCategory(str, Enum):
    """Why a candidate failed; integrity failures are reported apart from transport errors."""
    LOCAL_IO = "local_io"
    REMOTE = "remote"
    INTEGRITY = "integrity"
    INTERNAL = "internal"


@dataclass
class FileOutcome:
    """Result for one candidate."""

    file_name: str
    remote_key: str
    size_bytes: int
    status: FileStatus
    action: Optional[UploadAction] = None
    etag: Optional[str] = None
    category: Optional[FailureCategory] = None
    error: Optional[str] = None
    duration: float = 0.0


@dataclass
class RuleReport:
    """Counters and outcomes for one prefix rule."""

    rule: PrefixRule
    uploaded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    files: List[FileOutcome] = field(default_factory=list)

    def record(self, outcome: FileOutcome):
        self.files.append(outcome)
        if outcome.status == FileStatus.UPLOADED:
            self.uploaded += 1
        elif outcome.status == FileStatus.SKIPPED:
            self.skipped += 1
        elif outcome.status == FileStatus.FAILED:
            self.failed += 1
        else:
            self.cancelled += 1

    @property
    def total(self) -> int:
        return len(self.files)


@dataclass
class SyncReport:
    """Accumulated during a run and read once it finishes."""

    per_rule: Dict[PrefixRule, RuleReport] = field(default_factory=dict)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @classmethod
    def for_rules(cls, rules: Iterable[PrefixRule]) -> "SyncReport":
        """Report with an (empty) entry for every rule, in rule order."""
        report = cls()
        for rule in rules:
            report.per_rule.setdefault(rule, RuleReport(rule=rule))
        return report

    def record(self, rule: PrefixRule, outcome: FileOutcome):
        if rule not in self.per_rule:
            self.per_rule[rule] = RuleReport(rule=rule)
        self.per_rule[rule].record(outcome)

    def finish(self):
        self.finished_at = datetime.now(timezone.utc)

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def uploaded(self) -> int:
        return sum(r.uploaded for r in self.per_rule.values())

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in self.per_rule.values())

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.per_rule.values())

    @property
    def cancelled(self) -> int:
        return sum(r.cancelled for r in self.per_rule.values())

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def outcomes(self) -> List[FileOutcome]:
        return [outcome for r in self.per_rule.values() for outcome in r.files]

    def failures(self, category: Optional[FailureCategory] = None) -> List[FileOutcome]:
        return [
            o for o in self.outcomes()
            if o.status == FileStatus.FAILED and (category is None or o.category == category)
        ]

    @property
    def integrity_failures(self) -> List[FileOutcome]:
        return self.failures(FailureCategory.INTEGRITY)

    def summary_lines(self) -> List[str]:
        """Human-readable summary, one line per rule plus totals."""
        lines = []
        for rule_report in self.per_rule.values():
            rule = rule_report.rule
            destination = rule.cloud_dir.strip("/") or "/"
            line = (
                f"{rule.prefix_file} -> {destination}: "
                f"{rule_report.uploaded} uploaded, {rule_report.skipped} skipped, "
                f"{rule_report.failed} failed"
            )
            if rule_report.cancelled:
                line += f", {rule_report.cancelled} cancelled"
            lines.append(line)

        lines.append(
            f"Total: {self.uploaded} uploaded, {self.skipped} skipped, "
            f"{self.failed} failed in {self.duration:.1f}s"
        )
        return lines
