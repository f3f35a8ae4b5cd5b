"""Tests for the sync engine and its report."""

import asyncio

import pytest

from prefixload.config.schema import PrefixloadConfig, PrefixRule
from prefixload.config.settings import SyncSettings
from prefixload.core.exceptions import LocalFileError
from prefixload.core.planner import UploadAction
from prefixload.core.report import FailureCategory, FileOutcome, FileStatus, SyncReport
from prefixload.core.sync_engine import ProgressStage, SyncEngine, run_sync
from prefixload.storage.base import PermanentStorageError, TransientStorageError

from conftest import FAST_RETRY, MIB, random_bytes, reference_etag, write_file


CHUNK = 1024
DB_RULE = PrefixRule(prefix_file="db_", cloud_dir="database")
WEB_RULE = PrefixRule(prefix_file="web_", cloud_dir="web/")


def make_engine(storage, chunk_size=CHUNK, **kwargs):
    kwargs.setdefault("retry_policy", FAST_RETRY)
    return SyncEngine(storage, chunk_size, **kwargs)


class TestScenarios:
    """End-to-end runs against the in-memory store."""

    @pytest.mark.asyncio
    async def test_small_file_uploaded_then_skipped(self, storage, backup_dir):
        data = random_bytes(10 * MIB, seed=1)
        write_file(backup_dir, "db_backup_2025-09-21.sql", data)
        rule = PrefixRule(prefix_file="db_backup_", cloud_dir="database/")
        engine = make_engine(storage, chunk_size=15 * MIB)

        first = await engine.run([rule], backup_dir)

        outcome = first.outcomes()[0]
        assert outcome.status == FileStatus.UPLOADED
        assert outcome.action == UploadAction.PUT_WHOLE
        assert outcome.remote_key == "database/db_backup_2025-09-21.sql"
        assert storage.objects[outcome.remote_key][1] == reference_etag(data)
        assert outcome.etag == reference_etag(data)

        second = await engine.run([rule], backup_dir)

        assert second.uploaded == 0
        assert second.skipped == 1
        assert storage.calls["put_object"] == 1

    @pytest.mark.asyncio
    async def test_large_file_uploaded_in_three_parts(self, storage, backup_dir):
        data = random_bytes(40 * MIB, seed=2)
        write_file(backup_dir, "db_large.sql", data)
        engine = make_engine(storage, chunk_size=15 * MIB)

        report = await engine.run([DB_RULE], backup_dir)

        outcome = report.outcomes()[0]
        assert outcome.status == FileStatus.UPLOADED
        assert outcome.action == UploadAction.PUT_CHUNKED
        assert outcome.etag == reference_etag(data, 15 * MIB)
        assert outcome.etag.endswith("-3")
        assert storage.objects["database/db_large.sql"][1] == outcome.etag
        assert storage.completed_with == [[1, 2, 3]]

    @pytest.mark.asyncio
    async def test_same_size_different_content_is_reuploaded(self, storage, backup_dir):
        data = random_bytes(500, seed=3)
        write_file(backup_dir, "db_changed", data)
        storage.seed("database/db_changed", random_bytes(500, seed=99))
        engine = make_engine(storage)

        report = await engine.run([DB_RULE], backup_dir)

        assert report.uploaded == 1
        assert report.skipped == 0
        assert storage.objects["database/db_changed"] == (data, reference_etag(data))

    @pytest.mark.asyncio
    async def test_failing_part_aborts_and_run_continues(self, storage, backup_dir):
        write_file(backup_dir, "db_big", random_bytes(3 * CHUNK, seed=4))
        write_file(backup_dir, "db_small", random_bytes(100, seed=5))
        write_file(backup_dir, "web_index", random_bytes(700, seed=6))
        storage.fail_always("upload_part", TransientStorageError("InternalError"), part_number=2)
        engine = make_engine(storage, max_concurrent_files=1)

        report = await engine.run([DB_RULE, WEB_RULE], backup_dir)

        statuses = {o.file_name: o.status for o in report.outcomes()}
        assert statuses == {
            "db_big": FileStatus.FAILED,
            "db_small": FileStatus.UPLOADED,
            "web_index": FileStatus.UPLOADED,
        }
        assert report.failures(FailureCategory.REMOTE)[0].file_name == "db_big"
        assert storage.calls["abort_multipart_upload"] == 1
        assert storage.calls["complete_multipart_upload"] == 0
        assert storage.open_sessions == []
        assert report.has_failures

    @pytest.mark.asyncio
    async def test_unchanged_directory_is_idempotent(self, storage, backup_dir):
        for index, size in enumerate([0, 10, CHUNK, CHUNK + 1, 5 * CHUNK]):
            write_file(backup_dir, f"db_{index}", random_bytes(size, seed=index))
        engine = make_engine(storage)

        first = await engine.run([DB_RULE], backup_dir)
        calls_after_first = dict(storage.calls)
        second = await engine.run([DB_RULE], backup_dir)

        assert first.uploaded == 5
        assert second.uploaded == 0
        assert second.skipped == 5
        assert storage.calls["put_object"] == calls_after_first["put_object"]
        assert storage.calls["upload_part"] == calls_after_first["upload_part"]

    @pytest.mark.asyncio
    async def test_file_matching_two_rules_goes_to_both(self, storage, backup_dir):
        write_file(backup_dir, "db_web_dump", b"both")
        rules = [DB_RULE, PrefixRule(prefix_file="db_web", cloud_dir="mirror")]

        report = await make_engine(storage).run(rules, backup_dir)

        assert report.uploaded == 2
        assert {"database/db_web_dump", "mirror/db_web_dump"} <= set(storage.objects)
        assert [r.uploaded for r in report.per_rule.values()] == [1, 1]


class TestFailureCategories:

    @pytest.mark.asyncio
    async def test_lookup_failure_skips_upload(self, storage, backup_dir):
        write_file(backup_dir, "db_x", b"data")
        storage.fail_always("head_object", PermanentStorageError("AccessDenied", code="AccessDenied"))

        report = await make_engine(storage).run([DB_RULE], backup_dir)

        outcome = report.outcomes()[0]
        assert outcome.status == FileStatus.FAILED
        assert outcome.category == FailureCategory.REMOTE
        assert outcome.action is None
        assert storage.calls["put_object"] == 0

    @pytest.mark.asyncio
    async def test_unreadable_file(self, storage, backup_dir, monkeypatch):
        write_file(backup_dir, "db_x", b"data")
        storage.seed("database/db_x", b"more")

        def unreadable(path, chunk_size, expected_size=None):
            raise LocalFileError(path, "Permission denied")

        monkeypatch.setattr("prefixload.core.sync_engine.calculate_fingerprint", unreadable)

        report = await make_engine(storage).run([DB_RULE], backup_dir)

        assert report.failures(FailureCategory.LOCAL_IO)[0].file_name == "db_x"

    @pytest.mark.asyncio
    async def test_integrity_failure_reported_separately(self, storage, backup_dir):
        write_file(backup_dir, "db_x", b"data")
        storage.corrupt_put = True

        report = await make_engine(storage).run([DB_RULE], backup_dir)

        assert len(report.integrity_failures) == 1
        assert report.failures(FailureCategory.REMOTE) == []
        assert storage.calls["put_object"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, storage, backup_dir, monkeypatch):
        write_file(backup_dir, "db_x", b"data")

        def broken(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr("prefixload.core.sync_engine.plan_upload", broken)

        report = await make_engine(storage).run([DB_RULE], backup_dir)

        assert report.failures(FailureCategory.INTERNAL)[0].error == "bug"

    @pytest.mark.asyncio
    async def test_missing_directory_raises(self, storage, tmp_path):
        with pytest.raises(LocalFileError):
            await make_engine(storage).run([DB_RULE], tmp_path / "missing")


class TestProgressAndCancellation:

    @pytest.mark.asyncio
    async def test_progress_events(self, storage, backup_dir):
        write_file(backup_dir, "db_x", b"data")
        events = []

        await make_engine(storage, progress_callback=events.append).run([DB_RULE], backup_dir)

        assert [e.stage for e in events] == [
            ProgressStage.STARTED,
            ProgressStage.DECIDED,
            ProgressStage.COMPLETED,
        ]
        assert events[1].decision.action == UploadAction.PUT_WHOLE
        assert events[2].outcome.status == FileStatus.UPLOADED

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_change_outcome(self, storage, backup_dir):
        write_file(backup_dir, "db_x", b"data")

        def explode(event):
            raise RuntimeError("display broke")

        report = await make_engine(storage, progress_callback=explode).run([DB_RULE], backup_dir)

        assert report.uploaded == 1

    @pytest.mark.asyncio
    async def test_request_stop_aborts_and_returns_partial_report(self, storage, backup_dir):
        write_file(backup_dir, "db_a", random_bytes(3 * CHUNK, seed=1))
        write_file(backup_dir, "db_b", random_bytes(3 * CHUNK, seed=2))
        storage.part_gate = asyncio.Event()
        engine = make_engine(storage, max_concurrent_files=1)

        task = asyncio.create_task(engine.run([DB_RULE], backup_dir))
        while storage.in_flight == 0:
            await asyncio.sleep(0)
        engine.request_stop()
        report = await task

        assert report.cancelled == 2
        assert report.uploaded == 0
        assert not report.has_failures
        assert storage.calls["create_multipart_upload"] == 1
        assert storage.calls["abort_multipart_upload"] == 1
        assert storage.open_sessions == []

    @pytest.mark.asyncio
    async def test_engine_runs_again_after_stop(self, storage, backup_dir):
        write_file(backup_dir, "db_a", b"first")
        engine = make_engine(storage)
        engine.request_stop()

        report = await engine.run([DB_RULE], backup_dir)

        assert report.uploaded == 1
        assert report.cancelled == 0

    @pytest.mark.asyncio
    async def test_cancelling_run_propagates(self, storage, backup_dir):
        write_file(backup_dir, "db_a", random_bytes(3 * CHUNK, seed=1))
        storage.part_gate = asyncio.Event()
        engine = make_engine(storage)

        task = asyncio.create_task(engine.run([DB_RULE], backup_dir))
        while storage.in_flight == 0:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert storage.calls["abort_multipart_upload"] == 1
        assert storage.open_sessions == []

    def test_invalid_limits(self, storage):
        with pytest.raises(ValueError):
            SyncEngine(storage, 0)
        with pytest.raises(ValueError):
            SyncEngine(storage, CHUNK, max_concurrent_files=0)


class TestSyncReport:

    def test_for_rules_keeps_empty_rules(self):
        report = SyncReport.for_rules([DB_RULE, WEB_RULE])

        assert list(report.per_rule) == [DB_RULE, WEB_RULE]
        assert report.uploaded == report.skipped == report.failed == 0

    def test_summary_lines(self):
        report = SyncReport.for_rules([DB_RULE, WEB_RULE])
        report.record(DB_RULE, FileOutcome("db_1", "database/db_1", 1, FileStatus.UPLOADED))
        report.record(DB_RULE, FileOutcome("db_2", "database/db_2", 1, FileStatus.SKIPPED))
        report.record(WEB_RULE, FileOutcome(
            "web_1", "web/web_1", 1, FileStatus.FAILED, category=FailureCategory.INTEGRITY, error="ETag mismatch"
        ))
        report.record(WEB_RULE, FileOutcome("web_2", "web/web_2", 1, FileStatus.CANCELLED))
        report.finish()

        lines = report.summary_lines()

        assert lines[0] == "db_ -> database: 1 uploaded, 1 skipped, 0 failed"
        assert lines[1] == "web_ -> web: 0 uploaded, 0 skipped, 1 failed, 1 cancelled"
        assert lines[2].startswith("Total: 1 uploaded, 1 skipped, 1 failed in ")
        assert [o.file_name for o in report.integrity_failures] == ["web_1"]


class TestRunSync:

    @pytest.mark.asyncio
    async def test_runs_config_rules(self, storage, backup_dir):
        write_file(backup_dir, "db_1", random_bytes(2500, seed=1))
        write_file(backup_dir, "web_1", b"index")
        config = PrefixloadConfig(
            bucket="test-bucket",
            part_size=CHUNK,
            local_directory_path=str(backup_dir),
            directory_struct=[DB_RULE, WEB_RULE],
        )

        report = await run_sync(storage, config, SyncSettings(max_attempts=1))

        assert report.uploaded == 2
        assert storage.objects["database/db_1"][1].endswith("-3")
        assert "web/web_1" in storage.objects
