"""Matches files in the backup directory against prefix rules."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Union

from .exceptions import LocalFileError
from ..config.schema import PrefixRule


@dataclass(frozen=True)
class LocalCandidate:
    """One file routed by one rule; a file matching two rules yields two candidates."""

    path: Path
    size_bytes: int
    file_name: str
    rule: PrefixRule

    @property
    def remote_key(self) -> str:
        return self.rule.remote_key(self.file_name)


def scan_directory(directory: Union[str, Path]) -> List[os.DirEntry]:
    """List regular files directly inside ``directory``, sorted by name.

    Symlinks and subdirectories are skipped; nothing below the top level is
    visited.

    Raises:
        LocalFileError: If the directory cannot be listed
    """
    try:
        with os.scandir(directory) as it:
            entries = [
                entry for entry in it
                if entry.is_file(follow_symlinks=False)
            ]
    except OSError as e:
        raise LocalFileError(directory, f"cannot list directory: {e.strerror or e}")

    return sorted(entries, key=lambda entry: entry.name)


def match_candidates(
    rules: Sequence[PrefixRule],
    directory: Union[str, Path]
) -> List[LocalCandidate]:
    """Build upload candidates in rule order, then listing order.

    A file that vanishes between listing and stat is left out, the same as
    a file no rule matches.
    """
    entries = scan_directory(directory)
    candidates = []

    for rule in rules:
        for entry in entries:
            if not entry.name.startswith(rule.prefix_file):
                continue
            try:
                size = entry.stat(follow_symlinks=False).st_size
            except FileNotFoundError:
                continue
            except OSError as e:
                raise LocalFileError(entry.path, f"cannot stat file: {e.strerror or e}")
            candidates.append(LocalCandidate(
                path=Path(entry.path),
                size_bytes=size,
                file_name=entry.name,
                rule=rule,
            ))

    return candidates
