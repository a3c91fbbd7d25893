"""Binary reading/writing utilities for PSO archive data.

PSO shipped on both little-endian (PC, Xbox, Blue Burst) and big-endian
(GameCube) platforms, so every integer access takes an explicit byte order.
"""

import struct
from enum import Enum
from io import BytesIO
from typing import BinaryIO, Union

from ..errors import ArchiveIOError

COPY_CHUNK_SIZE = 0x8000


class Endian(Enum):
    """Byte order of an on-disk structure."""

    BIG = "big"
    LITTLE = "little"
    AUTO = "auto"

    @property
    def prefix(self) -> str:
        if self is Endian.BIG:
            return ">"
        if self is Endian.LITTLE:
            return "<"
        raise ValueError("AUTO endianness has no concrete byte order")


class BinaryReader:
    """Helper for reading binary data in a fixed byte order."""

    def __init__(self, data: Union[bytes, BinaryIO], endian: Endian = Endian.LITTLE):
        if isinstance(data, (bytes, bytearray)):
            self._stream = BytesIO(data)
        else:
            self._stream = data
        self._prefix = endian.prefix

    @property
    def stream(self) -> BinaryIO:
        return self._stream

    def tell(self) -> int:
        return self._stream.tell()

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._stream.seek(offset, whence)

    def read_bytes(self, size: int) -> bytes:
        data = self._stream.read(size)
        if len(data) < size:
            raise EOFError(f"Expected {size} bytes, got {len(data)}")
        return data

    def read_u8(self) -> int:
        return self.read_bytes(1)[0]

    def read_u16(self) -> int:
        return struct.unpack(self._prefix + "H", self.read_bytes(2))[0]

    def read_u32(self) -> int:
        return struct.unpack(self._prefix + "I", self.read_bytes(4))[0]

    def read_name(self, length: int) -> bytes:
        """Read a fixed-width, NUL-padded name field.

        Only the bytes before the first NUL are significant, matching how
        the game's tools fill these fields with strncpy.
        """
        return self.read_bytes(length).split(b"\x00", 1)[0]

    def skip(self, count: int) -> None:
        """Skip forward by count bytes."""
        self._stream.seek(count, 1)

    def remaining(self) -> int:
        """Return number of bytes remaining in stream."""
        current = self.tell()
        self._stream.seek(0, 2)
        end = self.tell()
        self._stream.seek(current)
        return end - current


def read_u32(data: bytes, offset: int = 0, endian: Endian = Endian.LITTLE) -> int:
    """Read a 32-bit unsigned integer from bytes."""
    return struct.unpack_from(endian.prefix + "I", data, offset)[0]


def read_u16(data: bytes, offset: int = 0, endian: Endian = Endian.LITTLE) -> int:
    """Read a 16-bit unsigned integer from bytes."""
    return struct.unpack_from(endian.prefix + "H", data, offset)[0]


def write_u32(value: int, endian: Endian = Endian.LITTLE) -> bytes:
    """Write a 32-bit unsigned integer."""
    return struct.pack(endian.prefix + "I", value)


def write_u16(value: int, endian: Endian = Endian.LITTLE) -> bytes:
    """Write a 16-bit unsigned integer."""
    return struct.pack(endian.prefix + "H", value)


def align(value: int, boundary: int) -> int:
    """Round value up to a power-of-two boundary."""
    if boundary <= 1:
        return value
    return (value + boundary - 1) & ~(boundary - 1)


def copy_stream(dst: BinaryIO, src: BinaryIO, size: int, chunk_size: int = COPY_CHUNK_SIZE) -> None:
    """Copy exactly size bytes from src to dst in chunks."""
    remaining = size
    while remaining > 0:
        chunk = src.read(min(chunk_size, remaining))
        if not chunk:
            raise ArchiveIOError(f"Unexpected end of file: {remaining} of {size} bytes missing")
        dst.write(chunk)
        remaining -= len(chunk)


def pad_stream(fp: BinaryIO, boundary: int) -> int:
    """Write zero bytes until the stream position is aligned.

    Returns the new (aligned) position.
    """
    pos = fp.tell()
    target = align(pos, boundary)
    if target != pos:
        fp.write(b"\x00" * (target - pos))
    return target
