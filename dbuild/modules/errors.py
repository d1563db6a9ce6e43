# dbuild/modules/errors.py
"""
Error taxonomy for dbuild.

Every fatal condition aborts the current top-level operation. The CLI maps each
class to its own exit code; locally recoverable conditions (missing strip
tool, non-empty directory on removal, failing postremove) are logged as
warnings instead of raised.
"""

from __future__ import annotations

from typing import Optional


class DBuildError(Exception):
    exit_code = 1


class ParseError(DBuildError):
    """Malformed or incomplete recipe."""
    exit_code = 2

    def __init__(self, message: str, path: Optional[str] = None, line: Optional[int] = None):
        where = ""
        if path:
            where = f"{path}:{line}: " if line else f"{path}: "
        elif line:
            where = f"line {line}: "
        super().__init__(where + message)
        self.message = message
        self.path = path
        self.line = line


class FetchError(DBuildError):
    exit_code = 3


class ChecksumError(DBuildError):
    exit_code = 4

    def __init__(self, file: str, expected: str, actual: str):
        super().__init__(f"SHA256 mismatch for {file}: expected {expected}, got {actual}")
        self.file = file
        self.expected = expected
        self.actual = actual


class ExtractError(DBuildError):
    exit_code = 5


class ResolveError(DBuildError):
    exit_code = 6


class ApplyError(DBuildError):
    exit_code = 6


class StageError(DBuildError):
    exit_code = 7

    def __init__(self, stage: str, log_path: str, returncode: Optional[int] = None):
        rc = f" (exit {returncode})" if returncode is not None else ""
        super().__init__(f"stage '{stage}' failed{rc}, see log: {log_path}")
        self.stage = stage
        self.log_path = log_path
        self.returncode = returncode


class InstallError(DBuildError):
    exit_code = 8


class ManifestMissingError(DBuildError):
    exit_code = 9


class LockError(DBuildError):
    exit_code = 10


class RecipeNotFoundError(DBuildError):
    exit_code = 11


class SyncError(DBuildError):
    exit_code = 12
