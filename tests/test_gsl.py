"""Tests for GSL archives."""

import logging

import pytest

from pso_toolkit.archives import gsl
from pso_toolkit.archives.gsl import GSLArchive
from pso_toolkit.errors import EntryNotFoundError, FormatError, InvalidArgumentError
from pso_toolkit.utils.binary import Endian


@pytest.fixture
def inputs(tmp_path):
    directory = tmp_path / "in"
    directory.mkdir()
    paths = []
    for i, name in enumerate(["map_city00.rel", "map_forest01.rel", "bm_ene_dragon.bml"]):
        path = directory / name
        path.write_bytes(bytes([0x40 + i]) * (3000 + i * 500))
        paths.append(path)
    return paths


def entry_data(path, endian=Endian.AUTO):
    with GSLArchive(path, endian=endian) as archive:
        return [archive.read_entry(entry) for entry in archive.entries]


class TestHeader:
    """Tests for header sizing."""

    def test_header_size(self):
        assert gsl.header_size(0) == 2048
        assert gsl.header_size(41) == 2048
        # 42 records plus the terminator no longer fit in one block.
        assert gsl.header_size(42) == 4096


class TestEndianness:
    """Tests for byte order selection and detection."""

    def test_big_endian_by_default(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)

        raw = path.read_bytes()
        assert raw[:14] == b"map_city00.rel"
        assert raw[32:36] == b"\x00\x00\x00\x01"
        assert raw[36:40] == (3000).to_bytes(4, "big")
        assert raw[40:48] == b"\x00" * 8

    def test_big_endian_explicit_and_auto(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs, endian=Endian.BIG)

        expected = [p.read_bytes() for p in inputs]
        assert entry_data(path, Endian.BIG) == expected
        assert entry_data(path, Endian.AUTO) == expected

        with GSLArchive(path) as archive:
            assert archive.endian is Endian.BIG

    def test_little_endian_detected(self, tmp_path, inputs, caplog):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs, endian=Endian.LITTLE)
        assert path.read_bytes()[32:36] == b"\x01\x00\x00\x00"

        with caplog.at_level(logging.INFO, logger="pso_toolkit.archives.gsl"):
            with GSLArchive(path) as archive:
                assert archive.endian is Endian.LITTLE
                assert [e.name for e in archive.entries] == [p.name for p in inputs]
        assert "little-endian" in caplog.text

    def test_implausible_in_both_orders(self, tmp_path):
        record = b"broken.bin".ljust(32, b"\x00") + b"\xff\xff\xff\x7f" + b"\x00" * 12
        path = tmp_path / "broken.gsl"
        path.write_bytes(record + b"\x00" * (4096 - len(record)))

        with pytest.raises(FormatError, match="byte order"):
            GSLArchive(path).open()

    def test_wrong_explicit_order(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs, endian=Endian.BIG)

        with GSLArchive(path, endian=Endian.LITTLE) as archive:
            with pytest.raises(FormatError):
                archive.entries

    def test_unterminated_table(self, tmp_path):
        record = b"a".ljust(32, b"\x00") + b"\x00\x00\x00\x00" + b"\x00" * 12
        path = tmp_path / "loop.gsl"
        path.write_bytes(record * 3)

        with pytest.raises(FormatError, match="not terminated"):
            GSLArchive(path).open()


class TestRead:
    """Tests for listing and extraction."""

    def test_list(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)
        before = path.read_bytes()

        with GSLArchive(path) as archive:
            lines = list(archive.list_entries())

        assert lines[0] == "File    0 'map_city00.rel' @ offset 0x00000800 size: 3000"
        assert lines[1] == "File    1 'map_forest01.rel' @ offset 0x00001800 size: 3500"
        assert path.read_bytes() == before

    def test_extract_all(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)

        with GSLArchive(path) as archive:
            results = list(archive.extract_all(tmp_path / "out"))

        assert [name for name, _ in results] == [p.name for p in inputs]
        for (_, output), source in zip(results, inputs):
            assert output.read_bytes() == source.read_bytes()

    def test_extract_by_name(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)

        with GSLArchive(path) as archive:
            results = list(archive.extract_all(tmp_path / "out", targets=["bm_ene_dragon.bml"]))
        assert len(results) == 1
        assert results[0][1].read_bytes() == inputs[2].read_bytes()

    @pytest.mark.parametrize("name", ["../escaped.bin", "/tmp/abs.bin", "..", "sub\\x.bin"])
    def test_extract_rejects_unsafe_names(self, tmp_path, name):
        record = name.encode("latin-1").ljust(32, b"\x00") + (1).to_bytes(4, "big") + (4).to_bytes(4, "big")
        path = tmp_path / "evil.gsl"
        path.write_bytes(record.ljust(2048, b"\x00") + b"data".ljust(2048, b"\x00"))
        out = tmp_path / "out"

        with GSLArchive(path) as archive:
            with pytest.raises(FormatError, match="unsafe name"):
                list(archive.extract_all(out))
        assert not (tmp_path / "escaped.bin").exists()
        assert list(out.iterdir()) == []

    def test_empty(self, tmp_path):
        path = tmp_path / "empty.gsl"
        gsl.create(path, [])
        assert path.stat().st_size == 2048
        with GSLArchive(path) as archive:
            assert archive.entry_count == 0


class TestMutate:
    """Tests for append, update and delete."""

    def test_name_too_long(self, tmp_path):
        src = tmp_path / ("x" * 32)
        src.write_bytes(b"data")
        with pytest.raises(InvalidArgumentError, match="too long"):
            gsl.create(tmp_path / "test.gsl", [src])
        assert not (tmp_path / "test.gsl").exists()

    def test_name_at_limit(self, tmp_path):
        src = tmp_path / ("x" * 31)
        src.write_bytes(b"data")
        path = tmp_path / "test.gsl"
        gsl.create(path, [src])
        with GSLArchive(path) as archive:
            assert archive.entries[0].name == "x" * 31

    def test_append_keeps_byte_order(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs[:1], endian=Endian.LITTLE)
        gsl.append(path, inputs[1:])

        with GSLArchive(path) as archive:
            assert archive.endian is Endian.LITTLE
        assert entry_data(path) == [p.read_bytes() for p in inputs]

    def test_update(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)
        replacement = tmp_path / "patched.rel"
        replacement.write_bytes(b"\x99" * 5000)

        before = entry_data(path)
        gsl.update(path, "map_forest01.rel", replacement)

        with GSLArchive(path) as archive:
            entries = archive.entries
            assert entries[1].name == "map_forest01.rel"
            assert entries[1].size == 5000
        after = entry_data(path)
        assert after[0] == before[0]
        assert after[2] == before[2]
        assert after[1] == replacement.read_bytes()

    def test_update_missing(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)
        with pytest.raises(EntryNotFoundError, match="nothing.rel"):
            gsl.update(path, "nothing.rel", inputs[0])

    def test_delete(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)

        assert gsl.delete(path, ["map_city00.rel"]) == 2
        with GSLArchive(path) as archive:
            assert [e.name for e in archive.entries] == ["map_forest01.rel", "bm_ene_dragon.bml"]
            assert archive.entries[0].offset == 2048

    def test_delete_duplicate_names(self, tmp_path):
        paths = []
        for directory, data in (("a", b"first"), ("b", b"second"), ("c", b"kept")):
            (tmp_path / directory).mkdir()
            name = "keep.rel" if directory == "c" else "map.rel"
            path = tmp_path / directory / name
            path.write_bytes(data * 100)
            paths.append(path)
        archive_path = tmp_path / "dupes.gsl"
        gsl.create(archive_path, paths)

        assert gsl.delete(archive_path, ["map.rel"]) == 1
        with GSLArchive(archive_path) as archive:
            assert [e.name for e in archive.entries] == ["keep.rel"]
        assert entry_data(archive_path) == [b"kept" * 100]

    def test_delete_one_missing_target(self, tmp_path, inputs):
        path = tmp_path / "test.gsl"
        gsl.create(path, inputs)
        before = path.read_bytes()

        with pytest.raises(EntryNotFoundError, match="nothing.rel"):
            gsl.delete(path, ["map_city00.rel", "nothing.rel"])
        assert path.read_bytes() == before
