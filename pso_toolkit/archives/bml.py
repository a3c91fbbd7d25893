"""BML archive support.

BML archives hold PRS-compressed files, each optionally followed by a
PRS-compressed PVM texture set. Everything is little-endian.

Header (64 bytes):

    0x00  u32  0
    0x04  u32  entry count
    0x08  50 01 00 00
    0x0C  zero padding

Each entry then has a 64-byte record:

    0x00  char[32]  name
    0x20  u32       compressed size
    0x24  u32       flags (meaning unknown, carried through)
    0x28  u32       uncompressed size
    0x2C  u32       PVM compressed size (0 if none)
    0x30  u32       PVM uncompressed size
    0x34  12 bytes  padding

Payloads start at the first 2048-byte boundary after the records. Each
payload and each PVM starts on a 32-byte boundary, so offsets are not
stored but accumulated while walking the table.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..compression import prs
from ..errors import FormatError
from ..utils.binary import BinaryReader, Endian, align, read_u32, write_u32
from .base import (
    ArchiveBuilder,
    ArchiveEntry,
    ArchiveReader,
    AuxiliaryPayload,
    InputFile,
    Target,
    atomic_output,
    decode_name,
    delete_from_archive,
    encode_name,
    update_archive,
)

logger = logging.getLogger(__name__)

BML_MAGIC = b"\x50\x01\x00\x00"
BML_HEADER_SIZE = 64
BML_RECORD_SIZE = 64
BML_NAME_SIZE = 32
BML_DATA_ALIGNMENT = 2048
BML_PAYLOAD_ALIGNMENT = 32

PVM_SUFFIX = ".pvm"
PRS_SUFFIX = ".prs"


def header_size(entry_count: int) -> int:
    return align((entry_count + 1) * BML_RECORD_SIZE, BML_DATA_ALIGNMENT)


def companion_path(path: Path) -> Path:
    """Path of the PVM texture file that goes with path."""
    return path.with_name(path.name + PVM_SUFFIX)


class BMLBuilder(ArchiveBuilder):
    """Writes BML archives, compressing new payloads with PRS."""

    ALIGNMENT = BML_PAYLOAD_ALIGNMENT

    def compute_header_size(self, entry_count: int) -> int:
        return header_size(entry_count)

    def _copy_auxiliary(self, entry: ArchiveEntry, stream: BinaryIO) -> AuxiliaryPayload:
        aux = entry.auxiliary
        stream.seek(aux.offset)
        offset = self._write_stream(stream, aux.size)
        return AuxiliaryPayload(offset=offset, size=aux.size, uncompressed_size=aux.uncompressed_size)

    def _compress_auxiliary(self, source: InputFile) -> AuxiliaryPayload:
        data = source.read()
        packed = prs.compress(data)
        offset = self._write_bytes(packed)
        return AuxiliaryPayload(offset=offset, size=len(packed), uncompressed_size=len(data))

    def _compress(self, source: InputFile) -> Tuple[int, int, int]:
        data = source.read()
        packed = prs.compress(data)
        offset = self._write_bytes(packed)
        return offset, len(packed), len(data)

    def copy_entry(self, entry: ArchiveEntry, stream: BinaryIO) -> None:
        stream.seek(entry.offset)
        offset = self._write_stream(stream, entry.size)
        auxiliary = None
        if entry.auxiliary is not None:
            auxiliary = self._copy_auxiliary(entry, stream)
        self._record(
            ArchiveEntry(
                index=entry.index,
                offset=offset,
                size=entry.size,
                name=entry.name,
                uncompressed_size=entry.uncompressed_size,
                flags=entry.flags,
                auxiliary=auxiliary,
            )
        )

    def add_file(self, source: InputFile, companion: Optional[InputFile] = None) -> None:
        offset, size, usize = self._compress(source)
        auxiliary = None
        if companion is not None:
            auxiliary = self._compress_auxiliary(companion)
        self._record(
            ArchiveEntry(
                index=0,
                offset=offset,
                size=size,
                name=source.name,
                uncompressed_size=usize,
                auxiliary=auxiliary,
            )
        )

    def replace_entry(
        self,
        entry: ArchiveEntry,
        stream: BinaryIO,
        source: InputFile,
        auxiliary: bool = False,
    ) -> None:
        """Replace the entry's file, or with auxiliary=True its PVM."""
        if auxiliary:
            stream.seek(entry.offset)
            offset = self._write_stream(stream, entry.size)
            size, usize = entry.size, entry.uncompressed_size
            aux = self._compress_auxiliary(source)
        else:
            offset, size, usize = self._compress(source)
            aux = None
            if entry.auxiliary is not None:
                aux = self._copy_auxiliary(entry, stream)

        self._record(
            ArchiveEntry(
                index=entry.index,
                offset=offset,
                size=size,
                name=entry.name,
                uncompressed_size=usize,
                flags=entry.flags,
                auxiliary=aux,
            )
        )

    def write_table(self) -> None:
        le = Endian.LITTLE
        table = [
            write_u32(0, le),
            write_u32(len(self.records), le),
            BML_MAGIC,
            b"\x00" * (BML_HEADER_SIZE - 12),
        ]
        for entry in self.records:
            aux = entry.auxiliary
            table.append(encode_name(entry.name or "", BML_NAME_SIZE))
            table.append(write_u32(entry.size, le))
            table.append(write_u32(entry.flags, le))
            table.append(write_u32(entry.uncompressed_size, le))
            table.append(write_u32(aux.size if aux else 0, le))
            table.append(write_u32(aux.uncompressed_size if aux else 0, le))
            table.append(b"\x00" * 12)
        self.fp.seek(0)
        self.fp.write(b"".join(table))


class BMLArchive(ArchiveReader):
    """Reader for BML archives."""

    FORMAT = "BML"

    def _read_header(self) -> None:
        reader = BinaryReader(self.stream, Endian.LITTLE)
        head = reader.read_bytes(12)
        if head[0:4] != b"\x00\x00\x00\x00" or head[8:12] != BML_MAGIC:
            raise FormatError(f"{self.path} is not a BML archive")
        self._entry_count = read_u32(head, 4, Endian.LITTLE)
        self._header_size = header_size(self._entry_count)
        if BML_HEADER_SIZE + self._entry_count * BML_RECORD_SIZE > self.file_size:
            raise FormatError(
                f"{self.path}: table of {self._entry_count} entries does not fit in the file"
            )

    def scan(self) -> Iterator[Tuple[ArchiveEntry, BinaryIO]]:
        reader = BinaryReader(self.stream, Endian.LITTLE)
        offset = self._header_size
        for index in range(self._entry_count):
            reader.seek(BML_HEADER_SIZE + index * BML_RECORD_SIZE)
            name = decode_name(reader.read_name(BML_NAME_SIZE))
            size = reader.read_u32()
            flags = reader.read_u32()
            usize = reader.read_u32()
            pvm_size = reader.read_u32()
            pvm_usize = reader.read_u32()

            self._check_bounds(index, offset, size)
            entry = ArchiveEntry(
                index=index,
                offset=offset,
                size=size,
                name=name,
                uncompressed_size=usize,
                flags=flags,
            )
            next_offset = align(offset + size, BML_PAYLOAD_ALIGNMENT)
            if pvm_size:
                self._check_bounds(index, next_offset, pvm_size, what="PVM of file")
                entry.auxiliary = AuxiliaryPayload(
                    offset=next_offset, size=pvm_size, uncompressed_size=pvm_usize
                )
                next_offset = align(next_offset + pvm_size, BML_PAYLOAD_ALIGNMENT)

            self.stream.seek(offset)
            yield entry, self.stream
            offset = next_offset

    def builder(self, fp: BinaryIO, entry_count: int) -> BMLBuilder:
        return BMLBuilder(fp, entry_count)

    def decompress_auxiliary(self, entry: ArchiveEntry) -> bytes:
        """Read and decompress the PVM attached to an entry."""
        if entry.auxiliary is None:
            raise FormatError(f"File '{entry.name}' has no PVM data")
        return prs.decompress(self.read_auxiliary(entry), entry.auxiliary.uncompressed_size or None)

    def entry_filename(self, entry: ArchiveEntry, decompress: bool) -> str:
        return entry.name if decompress else entry.name + PRS_SUFFIX

    def _extract_items(self, entry: ArchiveEntry, decompress: bool) -> List[Tuple[str, bytes]]:
        items = super()._extract_items(entry, decompress)
        if entry.auxiliary is not None:
            if decompress:
                items.append((entry.name + PVM_SUFFIX, self.decompress_auxiliary(entry)))
            else:
                items.append((entry.name + PVM_SUFFIX + PRS_SUFFIX, self.read_auxiliary(entry)))
        return items

    def describe(self, entry: ArchiveEntry) -> str:
        lines = [
            f"File {entry.index:4d} '{entry.name}'",
            f"    compressed size: {entry.size} uncompressed size: {entry.uncompressed_size}"
            f" Unknown: {entry.flags:#010x}",
            f"    offset: {entry.offset:#010x}",
        ]
        aux = entry.auxiliary
        if aux is not None:
            lines.append(f"    PVM size: {aux.size} PVM uncompressed size: {aux.uncompressed_size}")
            lines.append(f"    PVM offset: {aux.offset:#010x}")
        return "\n".join(lines)


def open_archive(path: Path) -> BMLArchive:
    return BMLArchive(path)


def _collect_sources(files: Iterable[Path]) -> List[Tuple[InputFile, Optional[InputFile]]]:
    """Pair each input with its PVM companion, if there is one.

    A .pvm file whose base file is also an input is only stored as that
    file's companion.
    """
    paths = [Path(f) for f in files]
    given = {p.resolve() for p in paths}
    sources = []
    for path in paths:
        if path.suffix == PVM_SUFFIX and path.with_suffix("").resolve() in given:
            continue
        companion = companion_path(path)
        sources.append(
            (InputFile.from_path(path), InputFile.from_path(companion) if companion.is_file() else None)
        )
    return sources


def _add_sources(builder: BMLBuilder, sources: List[Tuple[InputFile, Optional[InputFile]]]) -> None:
    for source, companion in sources:
        if companion is not None:
            logger.debug("Attaching %s to %s", companion.name, source.name)
        builder.add_file(source, companion=companion)


def create(path: Path, files: Iterable[Path]) -> None:
    """Create a BML archive, PRS-compressing every file.

    A file named <input>.pvm next to an input is stored as its PVM.
    """
    sources = _collect_sources(files)
    with atomic_output(path) as fp:
        builder = BMLBuilder(fp, len(sources))
        _add_sources(builder, sources)
        builder.finish()


def append(path: Path, files: Iterable[Path]) -> None:
    """Append files (and their PVM companions) to a BML archive."""
    sources = _collect_sources(files)
    with BMLArchive(path) as archive:
        total = archive.entry_count + len(sources)

    with atomic_output(path) as fp, BMLArchive(path) as archive:
        builder = archive.builder(fp, total)
        for entry, stream in archive.scan():
            builder.copy_entry(entry, stream)
        _add_sources(builder, sources)
        builder.finish()


def update(path: Path, target: Target, replacement: Path, auxiliary: bool = False) -> ArchiveEntry:
    """Replace a file in the archive, or its PVM with auxiliary=True.

    The replacement is read uncompressed and PRS-compressed on the way in.
    """
    return update_archive(path, target, replacement, BMLArchive, auxiliary=auxiliary)


def delete(path: Path, targets: Sequence[Target]) -> int:
    """Delete the named entries; returns the number of entries left."""
    return delete_from_archive(path, targets, BMLArchive)
