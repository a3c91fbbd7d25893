"""Exception hierarchy shared by the codecs and archive formats."""

from typing import Optional


class ArchiveError(Exception):
    """Base class for every error raised by pso_toolkit."""


class ArchiveIOError(ArchiveError, OSError):
    """An open/read/write/seek on an archive or input file failed.

    Wraps the underlying OSError so that errno and strerror survive.
    """

    def __init__(self, message: str, cause: Optional[OSError] = None):
        if cause is not None and cause.errno is not None:
            super().__init__(cause.errno, f"{message}: {cause.strerror}")
        else:
            super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        if self.strerror is not None:
            return self.strerror
        return super().__str__()

    @classmethod
    def wrap(cls, message: str, exc: OSError) -> "ArchiveIOError":
        if isinstance(exc, ArchiveIOError):
            return exc
        return cls(message, exc)


class FormatError(ArchiveError, ValueError):
    """Bad magic, implausible offsets or inconsistent endianness."""


class UnknownFormatError(FormatError):
    """A PRSD header did not make sense in either byte order."""


class CorruptStreamError(ArchiveError, ValueError):
    """A PRS stream is malformed (bad back-reference or missing end marker)."""


class SizeMismatchError(ArchiveError, ValueError):
    """Decoded data length differs from the length declared for it."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Size mismatch: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class EntryNotFoundError(ArchiveError, LookupError):
    """No archive entry matches the requested name or index."""


class CapacityExceededError(ArchiveError):
    """An archive would hold more entries than its table allows."""


class InvalidArgumentError(ArchiveError, ValueError):
    """A caller-supplied value (key, name, index) is unusable."""
