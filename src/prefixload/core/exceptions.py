"""Exceptions raised by the sync engine."""

from pathlib import Path
from typing import Optional, Union


class PrefixloadError(Exception):
    """Base exception for sync engine errors."""
    pass


class LocalFileError(PrefixloadError):
    """A local file could not be read (missing, unreadable, truncated mid-read)."""

    def __init__(self, path: Union[str, Path], message: str):
        super().__init__(f"{path}: {message}")
        self.path = Path(path)


class IntegrityError(PrefixloadError):
    """The service confirmed an ETag that differs from the locally computed one."""

    def __init__(self, key: str, expected: str, actual: str, part_number: Optional[int] = None):
        where = f"part {part_number} of {key}" if part_number is not None else key
        super().__init__(f"ETag mismatch for {where}: expected {expected}, service reported {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual
        self.part_number = part_number
