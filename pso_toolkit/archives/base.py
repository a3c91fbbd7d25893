"""Shared archive machinery: entry model, reader base and rewrite engine.

All three container formats (AFS, GSL, BML) share one shape: a table of
contents at the front of the file followed by aligned payloads. Readers
expose a restartable scan() generator; mutations never touch the source
archive in place but stream every surviving entry into a fresh temporary
file that replaces the original on success.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PureWindowsPath
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Type, Union

from ..compression import prs, prsd
from ..errors import (
    ArchiveIOError,
    CapacityExceededError,
    EntryNotFoundError,
    FormatError,
    InvalidArgumentError,
)
from ..utils.binary import copy_stream, pad_stream

logger = logging.getLogger(__name__)

# Encoding for fixed-width name fields; latin-1 round-trips any byte value.
NAME_ENCODING = "latin-1"

Target = Union[int, str]


@dataclass
class AuxiliaryPayload:
    """A secondary blob stored right after an entry's primary payload."""

    offset: int
    size: int
    uncompressed_size: int = 0


@dataclass
class ArchiveEntry:
    """One member of an archive's table of contents."""

    index: int
    offset: int  # Absolute position of the payload in the archive
    size: int  # Stored (possibly compressed) size
    name: Optional[str] = None  # None for index-only AFS archives
    uncompressed_size: int = 0  # 0 when the payload is stored raw
    flags: int = 0
    auxiliary: Optional[AuxiliaryPayload] = None
    mtime: Optional[datetime] = None

    @property
    def end_offset(self) -> int:
        return self.offset + self.size

    @property
    def display_name(self) -> str:
        return self.name if self.name is not None else f"#{self.index}"

    def matches(self, target: Target) -> bool:
        if isinstance(target, int):
            return self.index == target
        return self.name == target


def encode_name(name: str, width: int, allow_full: bool = False) -> bytes:
    """Encode a name into a NUL-padded fixed-width field."""
    try:
        raw = name.encode(NAME_ENCODING)
    except UnicodeEncodeError as e:
        raise InvalidArgumentError(f"File name {name!r} cannot be stored in an archive") from e

    limit = width if allow_full else width - 1
    if len(raw) > limit:
        raise InvalidArgumentError(
            f'File name "{name}" too long (must be {limit} or less chars)'
        )
    return raw.ljust(width, b"\x00")


def decode_name(raw: bytes) -> str:
    return raw.decode(NAME_ENCODING)


def parse_index(target: Target) -> int:
    """Turn a CLI-style index ("3", "0x10") into an int."""
    if isinstance(target, int):
        return target
    try:
        if target.lower().startswith("0x"):
            return int(target, 16)
        return int(target)
    except ValueError as e:
        raise InvalidArgumentError(f"{target} is not a valid file number") from e


def check_filename(filename: str, index: int, archive: Path) -> None:
    """Reject stored names that would escape the output directory."""
    if (
        filename in ("", ".", "..")
        or "/" in filename
        or "\\" in filename
        or PureWindowsPath(filename).drive
    ):
        raise FormatError(f"File {index} in {archive} has an unsafe name: {filename!r}")


def digits(n: int) -> int:
    return len(str(n))


class ArchiveReader(ABC):
    """Base reader for PSO archive containers."""

    FORMAT = "archive"

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file: Optional[BinaryIO] = None
        self._file_size = 0
        self._entry_count = 0
        self._header_size = 0

    def __enter__(self) -> "ArchiveReader":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> None:
        """Open the archive and validate its header."""
        try:
            self._file = open(self.path, "rb")
            self._file_size = os.fstat(self._file.fileno()).st_size
        except OSError as e:
            self.close()
            raise ArchiveIOError.wrap(f"Cannot open {self.path}", e) from e

        try:
            self._read_header()
        except EOFError as e:
            self.close()
            raise FormatError(f"{self.path} is not a {self.FORMAT} archive (truncated header)") from e
        except BaseException:
            self.close()
            raise

    def close(self) -> None:
        """Close the archive file."""
        if self._file:
            self._file.close()
            self._file = None

    @property
    def stream(self) -> BinaryIO:
        if not self._file:
            raise RuntimeError("Archive not opened")
        return self._file

    @property
    def file_size(self) -> int:
        return self._file_size

    @property
    def entry_count(self) -> int:
        return self._entry_count

    @property
    def header_size(self) -> int:
        return self._header_size

    @property
    def has_names(self) -> bool:
        return True

    @abstractmethod
    def _read_header(self) -> None:
        """Validate the file and read the entry count."""

    @abstractmethod
    def scan(self) -> Iterator[Tuple[ArchiveEntry, BinaryIO]]:
        """Yield (entry, stream) with the stream positioned at the payload.

        The consumer may move the stream; scanning resumes from the table.
        Raising inside the loop aborts the scan.
        """

    @abstractmethod
    def builder(self, fp: BinaryIO, entry_count: int) -> "ArchiveBuilder":
        """Return a builder writing an archive with this archive's settings."""

    @abstractmethod
    def describe(self, entry: ArchiveEntry) -> str:
        """Human readable listing line(s) for an entry."""

    @property
    def entries(self) -> List[ArchiveEntry]:
        return [entry for entry, _ in self.scan()]

    def _check_bounds(self, index: int, offset: int, size: int, what: str = "File") -> None:
        if offset + size > self._file_size:
            raise FormatError(
                f"{what} {index} in {self.path} lies outside the archive "
                f"(offset {offset:#x}, size {size}, archive size {self._file_size})"
            )

    def normalize_target(self, target: Target) -> Target:
        """Index-only archives address entries by number."""
        if self.has_names:
            return target
        return parse_index(target)

    def find(self, target: Target) -> ArchiveEntry:
        """Find an entry by name (or index for index-only archives)."""
        target = self.normalize_target(target)
        for entry, _ in self.scan():
            if entry.matches(target):
                return entry
        raise self._not_found(target)

    def find_all(self, targets: Sequence[Target]) -> Set[int]:
        """Indexes of every entry matching any of targets.

        Names may repeat, so one target can match several entries. Every
        target has to match at least once.
        """
        wanted = [self.normalize_target(t) for t in targets]
        matched: Set[int] = set()
        indexes: Set[int] = set()
        for entry, _ in self.scan():
            for i, target in enumerate(wanted):
                if entry.matches(target):
                    indexes.add(entry.index)
                    matched.add(i)
        for i, target in enumerate(wanted):
            if i not in matched:
                raise self._not_found(target)
        return indexes

    def _not_found(self, target: Target) -> EntryNotFoundError:
        if isinstance(target, int):
            return EntryNotFoundError(f"Item out of range: {target}")
        return EntryNotFoundError(f"No file named '{target}' in {self.path}")

    def _read_at(self, offset: int, size: int) -> bytes:
        self.stream.seek(offset)
        data = self.stream.read(size)
        if len(data) != size:
            raise ArchiveIOError(f"Error reading {self.path}: expected {size} bytes, got {len(data)}")
        return data

    def read_entry(self, entry: ArchiveEntry) -> bytes:
        """Read an entry's stored payload bytes."""
        return self._read_at(entry.offset, entry.size)

    def read_auxiliary(self, entry: ArchiveEntry) -> Optional[bytes]:
        """Read the auxiliary payload attached to an entry, if any."""
        if entry.auxiliary is None:
            return None
        return self._read_at(entry.auxiliary.offset, entry.auxiliary.size)

    def decompress_entry(self, entry: ArchiveEntry) -> bytes:
        """Read and decompress an entry stored as PRS or PRSD."""
        data = self.read_entry(entry)
        if not entry.uncompressed_size and prsd.is_prsd(data):
            return prsd.decompress(data)
        return prs.decompress(data, entry.uncompressed_size or None)

    def entry_filename(self, entry: ArchiveEntry, decompress: bool) -> str:
        """File name used when extracting an entry."""
        if entry.name:
            return entry.name
        return f"{self.path.name}.{entry.index:0{digits(self._entry_count)}d}"

    def _extract_items(self, entry: ArchiveEntry, decompress: bool) -> List[Tuple[str, bytes]]:
        data = self.decompress_entry(entry) if decompress else self.read_entry(entry)
        return [(self.entry_filename(entry, decompress), data)]

    def list_entries(self) -> Iterator[str]:
        """Yield listing lines for every entry."""
        for entry, _ in self.scan():
            yield self.describe(entry)

    def extract_all(
        self,
        output_dir: Path,
        decompress: bool = False,
        targets: Optional[Sequence[Target]] = None,
    ) -> Iterator[Tuple[str, Path]]:
        """Extract entries to output_dir.

        Yields (filename, output_path) for each file written. With targets,
        only matching entries are extracted.
        """
        output_dir = Path(output_dir)
        wanted = None
        if targets is not None:
            wanted = [self.normalize_target(t) for t in targets]

        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError.wrap(f"Cannot create {output_dir}", e) from e

        for entry, _ in self.scan():
            if wanted is not None and not any(entry.matches(t) for t in wanted):
                continue
            for filename, data in self._extract_items(entry, decompress):
                check_filename(filename, entry.index, self.path)
                output_path = output_dir / filename
                try:
                    output_path.write_bytes(data)
                except OSError as e:
                    raise ArchiveIOError.wrap(f"Cannot open file {output_path} for write", e) from e
                logger.debug("Extracted %s (%d bytes)", output_path, len(data))
                yield filename, output_path


@dataclass
class InputFile:
    """A file on disk about to be stored in an archive."""

    path: Path
    size: int
    mtime: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @classmethod
    def from_path(cls, path: Path) -> "InputFile":
        path = Path(path)
        try:
            st = path.stat()
        except OSError as e:
            raise ArchiveIOError.wrap(f"Cannot open file '{path}'", e) from e
        return cls(path=path, size=st.st_size, mtime=datetime.fromtimestamp(st.st_mtime))

    def read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise ArchiveIOError.wrap(f"Cannot open file '{self.path}'", e) from e

    @contextmanager
    def open(self) -> Iterator[BinaryIO]:
        try:
            fp = open(self.path, "rb")
        except OSError as e:
            raise ArchiveIOError.wrap(f"Cannot open file '{self.path}'", e) from e
        with fp:
            yield fp


class ArchiveBuilder(ABC):
    """Writes a new archive: payloads first, table last.

    The header size depends on the final entry count, so it is fixed up
    front and the payload region starts right after it.
    """

    ALIGNMENT = 2048

    def __init__(self, fp: BinaryIO, entry_count: int):
        self.fp = fp
        self.entry_count = entry_count
        self.records: List[ArchiveEntry] = []
        self.header_size = self.compute_header_size(entry_count)
        fp.seek(0)
        fp.write(b"\x00" * self.header_size)

    @abstractmethod
    def compute_header_size(self, entry_count: int) -> int:
        """Size of the header/table region for entry_count entries."""

    @abstractmethod
    def write_table(self) -> None:
        """Write the header and table from self.records."""

    def _write_stream(self, src: BinaryIO, size: int) -> int:
        offset = self.fp.tell()
        copy_stream(self.fp, src, size)
        pad_stream(self.fp, self.ALIGNMENT)
        return offset

    def _write_bytes(self, data: bytes) -> int:
        offset = self.fp.tell()
        self.fp.write(data)
        pad_stream(self.fp, self.ALIGNMENT)
        return offset

    def _record(self, entry: ArchiveEntry) -> None:
        if len(self.records) >= self.entry_count:
            raise CapacityExceededError(
                f"Archive table was sized for {self.entry_count} entries"
            )
        entry.index = len(self.records)
        self.records.append(entry)
        logger.debug("Stored %s at %#x (%d bytes)", entry.display_name, entry.offset, entry.size)

    def copy_entry(self, entry: ArchiveEntry, stream: BinaryIO) -> None:
        """Re-stream an entry of the source archive unchanged."""
        stream.seek(entry.offset)
        offset = self._write_stream(stream, entry.size)
        self._record(
            ArchiveEntry(
                index=entry.index,
                offset=offset,
                size=entry.size,
                name=entry.name,
                uncompressed_size=entry.uncompressed_size,
                flags=entry.flags,
                mtime=entry.mtime,
            )
        )

    def add_file(self, source: InputFile, compress: bool = False) -> None:
        """Store a file from disk as a new entry."""
        self._store(source, name=source.name, compress=compress)

    def replace_entry(
        self, entry: ArchiveEntry, stream: BinaryIO, source: InputFile, compress: bool = False
    ) -> None:
        """Store source in place of entry, keeping its name."""
        self._store(source, name=entry.name, compress=compress)

    def _store(self, source: InputFile, name: Optional[str], compress: bool) -> None:
        if compress:
            data = prs.compress(source.read())
            offset = self._write_bytes(data)
            size = len(data)
        else:
            with source.open() as fp:
                offset = self._write_stream(fp, source.size)
            size = source.size
        self._record(ArchiveEntry(index=0, offset=offset, size=size, name=name, mtime=source.mtime))

    def finish(self) -> None:
        if len(self.records) != self.entry_count:
            raise RuntimeError(
                f"Archive table sized for {self.entry_count} entries but {len(self.records)} were written"
            )
        self.write_table()


@contextmanager
def atomic_output(path: Path) -> Iterator[BinaryIO]:
    """Build a file next to path and move it into place on success.

    The temporary file is removed on every failure path, so the original
    file is never left partially written.
    """
    path = Path(path)
    directory = path.parent if str(path.parent) else Path(".")
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=directory)
    except OSError as e:
        raise ArchiveIOError.wrap("Cannot create temporary file", e) from e

    try:
        with os.fdopen(fd, "w+b") as fp:
            yield fp
        mask = os.umask(0)
        os.umask(mask)
        os.chmod(tmp_path, 0o666 & ~mask)
        os.replace(tmp_path, path)
    except BaseException as e:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        if isinstance(e, OSError) and not isinstance(e, ArchiveIOError):
            raise ArchiveIOError(f"Cannot write {path}", e) from e
        raise

    logger.info("Wrote %s", path)


def check_capacity(count: int, limit: Optional[int]) -> None:
    if limit is not None and count > limit:
        raise CapacityExceededError(
            f"Cowardly refusing to make an archive with > {limit} files ({count} requested)"
        )


def create_archive(
    path: Path,
    files: Iterable[Path],
    builder_cls: Type[ArchiveBuilder],
    max_entries: Optional[int] = None,
    **builder_options,
) -> None:
    """Create a new archive from input files."""
    sources = [InputFile.from_path(f) for f in files]
    check_capacity(len(sources), max_entries)

    with atomic_output(path) as fp:
        builder = builder_cls(fp, len(sources), **builder_options)
        for source in sources:
            builder.add_file(source)
        builder.finish()


def append_to_archive(
    path: Path,
    files: Iterable[Path],
    reader_cls: Type[ArchiveReader],
    max_entries: Optional[int] = None,
    **reader_options,
) -> None:
    """Add files to the end of an existing archive."""
    sources = [InputFile.from_path(f) for f in files]
    with reader_cls(path, **reader_options) as archive:
        existing = archive.entry_count
    check_capacity(existing + len(sources), max_entries)

    with atomic_output(path) as fp, reader_cls(path, **reader_options) as archive:
        builder = archive.builder(fp, existing + len(sources))
        for entry, stream in archive.scan():
            builder.copy_entry(entry, stream)
        for source in sources:
            builder.add_file(source)
        builder.finish()


def update_archive(
    path: Path,
    target: Target,
    replacement: Path,
    reader_cls: Type[ArchiveReader],
    reader_options: Optional[dict] = None,
    **replace_options,
) -> ArchiveEntry:
    """Replace one entry's payload with the contents of a file.

    Returns the entry that was replaced (as it was in the old archive).
    """
    reader_options = reader_options or {}
    source = InputFile.from_path(replacement)

    with atomic_output(path) as fp, reader_cls(path, **reader_options) as archive:
        found = archive.find(target)
        builder = archive.builder(fp, archive.entry_count)
        for entry, stream in archive.scan():
            if entry.index == found.index:
                builder.replace_entry(entry, stream, source, **replace_options)
            else:
                builder.copy_entry(entry, stream)
        builder.finish()
    return found


def delete_from_archive(
    path: Path,
    targets: Sequence[Target],
    reader_cls: Type[ArchiveReader],
    **reader_options,
) -> int:
    """Remove entries from an archive. Returns the surviving entry count."""
    if not targets:
        raise InvalidArgumentError("No files given to delete")

    with atomic_output(path) as fp, reader_cls(path, **reader_options) as archive:
        doomed = archive.find_all(targets)
        remaining = archive.entry_count - len(doomed)
        builder = archive.builder(fp, remaining)
        for entry, stream in archive.scan():
            if entry.index in doomed:
                logger.debug("Dropping %s", entry.display_name)
                continue
            builder.copy_entry(entry, stream)
        builder.finish()
    return remaining
