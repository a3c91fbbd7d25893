"""PRSD (a.k.a. PRC) codec: PRS data behind a keyed stream cipher.

Layout (all fields in the container's byte order):

    0x00  u32  tag ("PRSD" as an integer)
    0x04  u32  key
    0x08  u32  PRS stream length (before padding)
    0x0C  u32  decompressed length
    0x10  ...  PRS stream, zero padded to a multiple of 4, encrypted

The cipher is the subtractive (lagged Fibonacci) keystream PSO PC used for
its network traffic. Each 4-byte word of the body is XORed with the next key
word, so the same routine encrypts and decrypts.
"""

import logging
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import ArchiveIOError, InvalidArgumentError, UnknownFormatError
from ..utils.binary import Endian, align, read_u32, write_u32
from . import prs

logger = logging.getLogger(__name__)

PRSD_TAG = 0x50525344
HEADER_SIZE = 16

_MASK = 0xFFFFFFFF
_KEY_COUNT = 56


class KeyStream:
    """PSO PC keystream generator seeded with a 32-bit key."""

    def __init__(self, seed: int):
        self._keys: List[int] = [0] * (_KEY_COUNT + 1)
        self._position = _KEY_COUNT
        self._create_keys(seed & _MASK)

    def _create_keys(self, seed: int) -> None:
        keys = self._keys
        esi = 1
        ebx = seed
        keys[56] = ebx
        keys[55] = ebx
        for edi in range(0x15, 0x46F, 0x15):
            slot = edi % 55
            ebx = (ebx - esi) & _MASK
            keys[slot] = esi
            esi = ebx
            ebx = keys[slot]
        for _ in range(4):
            self._mix()

    def _mix(self) -> None:
        keys = self._keys
        for i in range(1, 0x19):
            keys[i] = (keys[i] - keys[i + 0x1F]) & _MASK
        for i in range(0x19, 0x38):
            keys[i] = (keys[i] - keys[i - 0x18]) & _MASK

    def next_key(self) -> int:
        if self._position == _KEY_COUNT:
            self._mix()
            self._position = 1
        key = self._keys[self._position]
        self._position += 1
        return key


def crypt(data: bytes, key: int, endian: Endian) -> bytes:
    """XOR data (length a multiple of 4) with the keystream for key."""
    if len(data) % 4:
        raise InvalidArgumentError(f"PRSD body length {len(data)} is not a multiple of 4")
    stream = KeyStream(key)
    out = bytearray(len(data))
    for pos in range(0, len(data), 4):
        word = read_u32(data, pos, endian) ^ stream.next_key()
        out[pos:pos + 4] = write_u32(word, endian)
    return bytes(out)


@dataclass
class PRSDHeader:
    """PRSD container header (16 bytes)."""

    key: int
    compressed_size: int
    decompressed_size: int
    endian: Endian

    @property
    def padded_size(self) -> int:
        return align(self.compressed_size, 4)

    def to_bytes(self) -> bytes:
        return b"".join(
            write_u32(value, self.endian)
            for value in (PRSD_TAG, self.key, self.compressed_size, self.decompressed_size)
        )


def _parse_header(src: bytes, endian: Endian) -> Optional[PRSDHeader]:
    """Parse a header in the given byte order; None if it doesn't fit src."""
    if len(src) < HEADER_SIZE or read_u32(src, 0, endian) != PRSD_TAG:
        return None
    header = PRSDHeader(
        key=read_u32(src, 4, endian),
        compressed_size=read_u32(src, 8, endian),
        decompressed_size=read_u32(src, 12, endian),
        endian=endian,
    )
    if HEADER_SIZE + header.padded_size != len(src):
        return None
    if header.compressed_size > prs.max_compressed_size(header.decompressed_size):
        return None
    return header


def read_header(src: bytes, endian: Endian = Endian.AUTO) -> PRSDHeader:
    """Parse and validate a PRSD header.

    With Endian.AUTO big-endian is tried first, then little-endian.

    Raises:
        UnknownFormatError: if no requested byte order gives a consistent header
    """
    if endian is Endian.AUTO:
        candidates = (Endian.BIG, Endian.LITTLE)
    else:
        candidates = (endian,)

    for candidate in candidates:
        header = _parse_header(src, candidate)
        if header is not None:
            return header

    raise UnknownFormatError(
        f"Not a PRSD file ({len(src)} bytes, tried {', '.join(c.value for c in candidates)} endian)"
    )


def is_prsd(src: bytes) -> bool:
    """True if src parses as a PRSD container in either byte order."""
    return any(_parse_header(src, endian) is not None for endian in (Endian.BIG, Endian.LITTLE))


def generate_key() -> int:
    """Pick a random 32-bit encryption key."""
    return secrets.randbits(32)


def compress(src: bytes, key: Optional[int] = None, endian: Endian = Endian.LITTLE) -> bytes:
    """PRS-compress src and wrap it in an encrypted PRSD container."""
    if endian is Endian.AUTO:
        endian = Endian.LITTLE
    if key is None:
        key = generate_key()
    if not 0 <= key <= _MASK:
        raise InvalidArgumentError(f"PRSD key {key:#x} does not fit in 32 bits")

    stream = prs.compress(src)
    header = PRSDHeader(
        key=key,
        compressed_size=len(stream),
        decompressed_size=len(src),
        endian=endian,
    )
    body = stream + b"\x00" * (header.padded_size - len(stream))
    logger.debug("PRSD: key %#010x, %s endian, %d -> %d bytes", key, endian.value, len(src), len(stream))
    return header.to_bytes() + crypt(body, key, endian)


def decompress(src: bytes, endian: Endian = Endian.AUTO) -> bytes:
    """Decrypt and decompress a PRSD container."""
    src = bytes(src)
    header = read_header(src, endian)
    body = crypt(src[HEADER_SIZE:], header.key, header.endian)
    return prs.decompress(body[: header.compressed_size], header.decompressed_size)


def compress_file(
    input_path: Path,
    output_path: Path,
    key: Optional[int] = None,
    endian: Endian = Endian.LITTLE,
) -> int:
    """Compress a file into a PRSD container. Returns the output size."""
    input_path = Path(input_path)
    try:
        data = compress(input_path.read_bytes(), key, endian)
        Path(output_path).write_bytes(data)
    except OSError as e:
        raise ArchiveIOError.wrap(f"Cannot compress {input_path}", e) from e
    return len(data)


def decompress_file(
    input_path: Path,
    output_path: Optional[Path] = None,
    endian: Endian = Endian.AUTO,
) -> Path:
    """Extract a PRSD file, defaulting the output name to <input name>.bin."""
    input_path = Path(input_path)
    if output_path is None:
        output_path = Path(input_path.name + ".bin")
    try:
        data = decompress(input_path.read_bytes(), endian)
        Path(output_path).write_bytes(data)
    except OSError as e:
        raise ArchiveIOError.wrap(f"Cannot extract {input_path}", e) from e
    return Path(output_path)
