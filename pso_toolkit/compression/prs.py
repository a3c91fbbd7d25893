"""PRS compression codec.

PRS is the LZ77 variant Sega used throughout Phantasy Star Online. A stream
is a sequence of tokens selected by control bits. Control bits are packed
LSB-first into control bytes that are interleaved with the payload: each
control byte sits right before the first payload byte of the token whose bit
needed it.

Token encoding:

    1               literal      one raw byte follows
    0 0 b1 b0       short match  one byte d follows
                                 length = (b1 b0) + 2 (2..5)
                                 distance = 256 - d (1..256)
    0 1             long match   u16 LE w follows
                                 distance = 0x2000 - (w >> 3) (1..8192)
                                 length = (w & 7) + 2 (3..9), or when
                                 w & 7 == 0 one more byte n: length = n + 1
    0 1 + w == 0    end of stream
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Union

from ..errors import ArchiveIOError, CorruptStreamError, SizeMismatchError

logger = logging.getLogger(__name__)

MIN_MATCH = 2
MAX_MATCH = 0x100
MAX_DISTANCE = 0x2000
SHORT_MAX_DISTANCE = 0x100
SHORT_MAX_LENGTH = 5
LONG_INLINE_MAX_LENGTH = 9

# Hash chain search depth for the greedy matcher
MAX_CHAIN = 64


@dataclass(frozen=True)
class Literal:
    """A single byte copied verbatim to the output."""

    value: int


@dataclass(frozen=True)
class Match:
    """A back-reference into already decoded output."""

    distance: int
    length: int


class _ControlReader:
    """Pulls control bits and payload bytes from a PRS stream."""

    __slots__ = ("src", "pos", "_flags", "_bits")

    def __init__(self, src: bytes):
        self.src = src
        self.pos = 0
        self._flags = 0
        self._bits = 0

    def byte(self) -> int:
        if self.pos >= len(self.src):
            raise CorruptStreamError(
                f"PRS stream ended at byte {self.pos} without an end marker"
            )
        value = self.src[self.pos]
        self.pos += 1
        return value

    def bit(self) -> int:
        if self._bits == 0:
            self._flags = self.byte()
            self._bits = 8
        bit = self._flags & 1
        self._flags >>= 1
        self._bits -= 1
        return bit


class _ControlWriter:
    """Builds a PRS stream, allocating control bytes as bits are needed."""

    def __init__(self):
        self.out = bytearray()
        self._flag_pos = 0
        self._bits = 8

    def bit(self, value: int) -> None:
        if self._bits == 8:
            self._flag_pos = len(self.out)
            self.out.append(0)
            self._bits = 0
        if value:
            self.out[self._flag_pos] |= 1 << self._bits
        self._bits += 1

    def literal(self, value: int) -> None:
        self.bit(1)
        self.out.append(value)

    def match(self, distance: int, length: int) -> None:
        if length <= SHORT_MAX_LENGTH and distance <= SHORT_MAX_DISTANCE:
            size = length - 2
            self.bit(0)
            self.bit(0)
            self.bit((size >> 1) & 1)
            self.bit(size & 1)
            self.out.append((SHORT_MAX_DISTANCE - distance) & 0xFF)
            return

        offset = (MAX_DISTANCE - distance) << 3
        self.bit(0)
        self.bit(1)
        if length <= LONG_INLINE_MAX_LENGTH:
            word = offset | (length - 2)
            self.out += bytes((word & 0xFF, word >> 8))
        else:
            self.out += bytes((offset & 0xFF, offset >> 8, length - 1))

    def end(self) -> bytes:
        self.bit(0)
        self.bit(1)
        self.out += b"\x00\x00"
        return bytes(self.out)


def _decode(src: bytes, expected_len: Optional[int], out: Optional[bytearray]) -> int:
    """Walk a PRS stream, appending to out when given.

    Returns the decoded length.
    """
    reader = _ControlReader(src)
    produced = 0

    while True:
        if reader.bit():
            value = reader.byte()
            if expected_len is not None and produced >= expected_len:
                raise SizeMismatchError(expected_len, produced + 1)
            if out is not None:
                out.append(value)
            produced += 1
            continue

        if reader.bit():
            word = reader.byte()
            word |= reader.byte() << 8
            if word == 0:
                break
            distance = MAX_DISTANCE - (word >> 3)
            length = word & 7
            if length:
                length += 2
            else:
                length = reader.byte() + 1
        else:
            length = reader.bit() << 1
            length |= reader.bit()
            length += 2
            distance = SHORT_MAX_DISTANCE - reader.byte()

        if distance > produced:
            raise CorruptStreamError(
                f"PRS match distance {distance} exceeds the {produced} bytes "
                f"decoded so far (stream offset {reader.pos})"
            )
        if expected_len is not None and produced + length > expected_len:
            raise SizeMismatchError(expected_len, produced + length)

        if out is not None:
            # Overlapping copy: distance < length repeats the pattern.
            start = produced - distance
            for i in range(length):
                out.append(out[start + i])
        produced += length

    if expected_len is not None and produced != expected_len:
        raise SizeMismatchError(expected_len, produced)
    return produced


def decompress(src: bytes, expected_len: Optional[int] = None) -> bytes:
    """Decompress a PRS stream.

    Args:
        src: Compressed data
        expected_len: Declared decompressed size, if known

    Raises:
        CorruptStreamError: on a bad back-reference or a missing end marker
        SizeMismatchError: if expected_len is given and not matched
    """
    out = bytearray()
    _decode(bytes(src), expected_len, out)
    logger.debug("PRS: %d bytes -> %d bytes", len(src), len(out))
    return bytes(out)


def decompressed_size(src: bytes) -> int:
    """Return the length a PRS stream expands to, without keeping the output."""
    return _decode(bytes(src), None, None)


def max_compressed_size(length: int) -> int:
    """Size of archive() output for an input of the given length.

    Every byte costs one control bit plus itself; the end marker costs two
    control bits plus two bytes.
    """
    return length + 2 + (length + 2 + 7) // 8


def _match_length(src: bytes, candidate: int, pos: int, limit: int) -> int:
    length = 0
    while length < limit and src[candidate + length] == src[pos + length]:
        length += 1
    return length


def tokenize(src: bytes) -> Iterator[Union[Literal, Match]]:
    """Greedy LZ77 parse of src into PRS tokens.

    Matches of three bytes and up are found through a hash chain keyed on
    3-byte prefixes. Two-byte matches only pay off in the short form, so
    they are searched for in the last 256 bytes only.
    """
    src = bytes(src)
    n = len(src)
    head = {}
    prev: List[int] = [-1] * n

    def insert(p: int) -> None:
        if p + 2 < n:
            key = src[p] | (src[p + 1] << 8) | (src[p + 2] << 16)
            prev[p] = head.get(key, -1)
            head[key] = p

    pos = 0
    while pos < n:
        limit = min(MAX_MATCH, n - pos)
        best_len = 0
        best_dist = 0

        if limit >= 3:
            key = src[pos] | (src[pos + 1] << 8) | (src[pos + 2] << 16)
            candidate = head.get(key, -1)
            chain = MAX_CHAIN
            while candidate != -1 and chain > 0:
                distance = pos - candidate
                if distance > MAX_DISTANCE:
                    break
                # An extended length at the farthest distance would encode as
                # the end marker.
                cap = limit if distance < MAX_DISTANCE else min(limit, LONG_INLINE_MAX_LENGTH)
                if best_len < cap and src[candidate + best_len] == src[pos + best_len]:
                    length = _match_length(src, candidate, pos, cap)
                    if length > best_len:
                        best_len = length
                        best_dist = distance
                        if length == limit:
                            break
                candidate = prev[candidate]
                chain -= 1

        if best_len < 3 and limit >= MIN_MATCH:
            found = src.rfind(src[pos:pos + 2], max(0, pos - SHORT_MAX_DISTANCE), pos + 1)
            if 0 <= found < pos:
                best_len = 2
                best_dist = pos - found

        if best_len >= MIN_MATCH:
            yield Match(best_dist, best_len)
            for p in range(pos, pos + best_len):
                insert(p)
            pos += best_len
        else:
            yield Literal(src[pos])
            insert(pos)
            pos += 1


def encode_tokens(tokens) -> bytes:
    """Serialize a token sequence into a terminated PRS stream."""
    writer = _ControlWriter()
    for token in tokens:
        if isinstance(token, Literal):
            writer.literal(token.value)
        else:
            writer.match(token.distance, token.length)
    return writer.end()


def compress(src: bytes) -> bytes:
    """Compress a buffer with PRS.

    The output never exceeds max_compressed_size(len(src)).
    """
    data = encode_tokens(tokenize(src))
    if len(data) > max_compressed_size(len(src)):
        data = archive(src)
    logger.debug("PRS: compressed %d bytes -> %d bytes", len(src), len(data))
    return data


def archive(src: bytes) -> bytes:
    """Store a buffer as PRS literals only (no matching)."""
    return encode_tokens(Literal(b) for b in bytes(src))


def compress_file(input_path: Path, output_path: Path) -> int:
    """Compress a file. Returns the compressed size."""
    input_path = Path(input_path)
    try:
        data = compress(input_path.read_bytes())
        Path(output_path).write_bytes(data)
    except OSError as e:
        raise ArchiveIOError.wrap(f"Cannot compress {input_path}", e) from e
    return len(data)


def decompress_file(input_path: Path, output_path: Optional[Path] = None) -> Path:
    """Decompress a PRS file.

    Without an explicit output path the result is written into the
    current directory as <input name>.bin.
    """
    input_path = Path(input_path)
    if output_path is None:
        output_path = Path(input_path.name + ".bin")
    try:
        data = decompress(input_path.read_bytes())
        Path(output_path).write_bytes(data)
    except OSError as e:
        raise ArchiveIOError.wrap(f"Cannot extract {input_path}", e) from e
    return Path(output_path)
