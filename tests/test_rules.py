"""Tests for prefix rules and candidate matching."""

import os

import pytest

from prefixload.config.schema import PrefixRule
from prefixload.core.exceptions import LocalFileError
from prefixload.core.rules import match_candidates, scan_directory

from conftest import write_file


class TestPrefixRule:

    @pytest.mark.parametrize("cloud_dir,expected", [
        ("database", "database/db.sql"),
        ("database/", "database/db.sql"),
        ("/nested/dir/", "nested/dir/db.sql"),
        ("", "db.sql"),
        ("/", "db.sql"),
    ])
    def test_remote_key(self, cloud_dir, expected):
        rule = PrefixRule(prefix_file="db", cloud_dir=cloud_dir)

        assert rule.remote_key("db.sql") == expected

    def test_empty_prefix_rejected(self):
        with pytest.raises(ValueError):
            PrefixRule(prefix_file="", cloud_dir="x")

    def test_rules_are_hashable(self):
        rule = PrefixRule(prefix_file="db", cloud_dir="x")

        assert {rule: 1}[PrefixRule(prefix_file="db", cloud_dir="x")] == 1


class TestMatchCandidates:

    def test_rule_order_then_name_order(self, backup_dir):
        for name in ["web_2", "db_2", "web_1", "db_1", "other"]:
            write_file(backup_dir, name, b"x")
        rules = [
            PrefixRule(prefix_file="web_", cloud_dir="web"),
            PrefixRule(prefix_file="db_", cloud_dir="db"),
        ]

        candidates = match_candidates(rules, backup_dir)

        assert [c.remote_key for c in candidates] == ["web/web_1", "web/web_2", "db/db_1", "db/db_2"]

    def test_prefix_compares_file_name_only(self, backup_dir):
        write_file(backup_dir, "backup.sql", b"x")

        assert match_candidates([PrefixRule(prefix_file="backups", cloud_dir="")], backup_dir) == []

    def test_file_matching_two_rules_yields_two_candidates(self, backup_dir):
        write_file(backup_dir, "db_backup_1.sql", b"abc")
        rules = [
            PrefixRule(prefix_file="db_", cloud_dir="all"),
            PrefixRule(prefix_file="db_backup_", cloud_dir="backups"),
        ]

        candidates = match_candidates(rules, backup_dir)

        assert [c.remote_key for c in candidates] == ["all/db_backup_1.sql", "backups/db_backup_1.sql"]
        assert [c.rule for c in candidates] == rules
        assert all(c.size_bytes == 3 for c in candidates)

    def test_subdirectories_and_symlinks_ignored(self, backup_dir):
        target = write_file(backup_dir, "db_real", b"data")
        (backup_dir / "db_dir").mkdir()
        write_file(backup_dir / "db_dir", "db_nested", b"nested")
        os.symlink(target, backup_dir / "db_link")

        names = [entry.name for entry in scan_directory(backup_dir)]

        assert names == ["db_real"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(LocalFileError, match="cannot list directory"):
            match_candidates([PrefixRule(prefix_file="db", cloud_dir="")], tmp_path / "missing")

    def test_no_rules(self, backup_dir):
        write_file(backup_dir, "db", b"x")

        assert match_candidates([], backup_dir) == []

    def test_unstattable_file_is_local_error(self, backup_dir, monkeypatch):
        monkeypatch.setattr(
            "prefixload.core.rules.scan_directory",
            lambda directory: [UnreadableEntry(backup_dir / "db_locked", PermissionError(13, "Permission denied"))],
        )

        with pytest.raises(LocalFileError, match="cannot stat file: Permission denied"):
            match_candidates([PrefixRule(prefix_file="db_", cloud_dir="")], backup_dir)

    def test_vanished_file_is_dropped(self, backup_dir, monkeypatch):
        monkeypatch.setattr(
            "prefixload.core.rules.scan_directory",
            lambda directory: [UnreadableEntry(backup_dir / "db_gone", FileNotFoundError(2, "No such file"))],
        )

        assert match_candidates([PrefixRule(prefix_file="db_", cloud_dir="")], backup_dir) == []


class UnreadableEntry:
    """Directory entry whose stat call fails."""

    def __init__(self, path, error):
        self.path = str(path)
        self.name = path.name
        self.error = error

    def stat(self, follow_symlinks=True):
        raise self.error
