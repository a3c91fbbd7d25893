"""Tests for the PRSD codec."""

import pytest

from pso_toolkit.compression import prs, prsd
from pso_toolkit.errors import FormatError, InvalidArgumentError, UnknownFormatError
from pso_toolkit.utils.binary import Endian, align

SAMPLE = b"Episode I & II quest data " * 40


class TestCrypt:
    """Tests for the keyed stream cipher."""

    def test_involution(self):
        data = bytes(range(64))
        encrypted = prsd.crypt(data, 0xDEADBEEF, Endian.LITTLE)
        assert encrypted != data
        assert prsd.crypt(encrypted, 0xDEADBEEF, Endian.LITTLE) == data

    def test_key_changes_output(self):
        data = b"\x00" * 32
        assert prsd.crypt(data, 1, Endian.LITTLE) != prsd.crypt(data, 2, Endian.LITTLE)

    def test_byte_order_matters(self):
        data = b"\x00" * 8
        little = prsd.crypt(data, 0x1234, Endian.LITTLE)
        big = prsd.crypt(data, 0x1234, Endian.BIG)
        assert little[:4] == big[3::-1]

    def test_keystream_spans_refills(self):
        # More than 55 words forces the state to be re-mixed.
        data = bytes(range(256)) * 2
        assert prsd.crypt(prsd.crypt(data, 99, Endian.BIG), 99, Endian.BIG) == data

    def test_unaligned_length(self):
        with pytest.raises(InvalidArgumentError):
            prsd.crypt(b"abc", 1, Endian.LITTLE)


class TestPRSD:
    """Round trips and header detection."""

    def test_round_trip_default(self):
        data = prsd.compress(SAMPLE)
        assert prsd.decompress(data) == SAMPLE

    def test_little_endian_tag(self):
        data = prsd.compress(SAMPLE, key=0x11223344)
        assert data[:4] == b"DSRP"
        header = prsd.read_header(data)
        assert header.endian is Endian.LITTLE
        assert header.key == 0x11223344
        assert header.decompressed_size == len(SAMPLE)

    def test_big_endian(self):
        data = prsd.compress(SAMPLE, key=0x11223344, endian=Endian.BIG)
        assert data[:4] == b"PRSD"
        assert prsd.read_header(data).endian is Endian.BIG
        assert prsd.decompress(data) == SAMPLE
        assert prsd.decompress(data, Endian.BIG) == SAMPLE

    def test_auto_creates_little_endian(self):
        data = prsd.compress(SAMPLE, key=5, endian=Endian.AUTO)
        assert prsd.read_header(data).endian is Endian.LITTLE

    def test_layout(self):
        data = prsd.compress(SAMPLE, key=1)
        header = prsd.read_header(data)
        assert len(data) == prsd.HEADER_SIZE + align(header.compressed_size, 4)
        assert header.compressed_size == len(prs.compress(SAMPLE))

    def test_same_key_is_deterministic(self):
        assert prsd.compress(SAMPLE, key=42) == prsd.compress(SAMPLE, key=42)

    def test_empty_input(self):
        data = prsd.compress(b"", key=7)
        assert prsd.decompress(data) == b""

    def test_wrong_byte_order(self):
        data = prsd.compress(SAMPLE, key=3, endian=Endian.LITTLE)
        with pytest.raises(UnknownFormatError):
            prsd.decompress(data, Endian.BIG)

    def test_garbage(self):
        with pytest.raises(FormatError):
            prsd.decompress(b"not a prsd file at all!!")

    def test_truncated(self):
        data = prsd.compress(SAMPLE, key=3)
        with pytest.raises(UnknownFormatError):
            prsd.decompress(data[:-4])

    def test_key_out_of_range(self):
        with pytest.raises(InvalidArgumentError):
            prsd.compress(SAMPLE, key=1 << 32)

    def test_generate_key(self):
        assert 0 <= prsd.generate_key() <= 0xFFFFFFFF


class TestFiles:
    """Tests for the file helpers."""

    def test_round_trip(self, tmp_path):
        src = tmp_path / "quest.bin"
        src.write_bytes(SAMPLE)
        packed = tmp_path / "quest.prc"
        out = tmp_path / "quest.out"

        prsd.compress_file(src, packed, key=0xCAFEBABE, endian=Endian.BIG)
        prsd.decompress_file(packed, out)
        assert out.read_bytes() == SAMPLE
