"""Tests for the command line interface."""

import pytest
from click.testing import CliRunner

from pso_toolkit import __version__
from pso_toolkit.archives import afs, bml, gsl
from pso_toolkit.archives.gsl import GSLArchive
from pso_toolkit.cli import main
from pso_toolkit.compression import prs, prsd
from pso_toolkit.utils.binary import Endian


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def files(tmp_path):
    paths = []
    for name, data in (("alpha.bin", b"A" * 3000), ("beta.bin", b"Bb" * 700)):
        path = tmp_path / name
        path.write_bytes(data)
        paths.append(path)
    return paths


class TestMain:
    """Tests for the top-level group."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_formats(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("afs", "gsl", "bml", "prs", "prsd", "prc"):
            assert command in result.output


class TestCompression:
    """Tests for the prs and prsd commands."""

    def test_prs_round_trip(self, runner, tmp_path, files):
        packed = tmp_path / "alpha.prs"
        unpacked = tmp_path / "alpha.out"

        result = runner.invoke(main, ["prs", "compress", str(files[0]), str(packed)])
        assert result.exit_code == 0
        assert "Created" in result.output

        result = runner.invoke(main, ["prs", "decompress", str(packed), str(unpacked)])
        assert result.exit_code == 0
        assert unpacked.read_bytes() == files[0].read_bytes()

    def test_prs_corrupt_input(self, runner, tmp_path):
        bad = tmp_path / "bad.prs"
        bad.write_bytes(b"\x00\xff")

        result = runner.invoke(main, ["prs", "decompress", str(bad), str(tmp_path / "out")])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_prsd_key_and_endian(self, runner, tmp_path, files):
        packed = tmp_path / "beta.prc"

        result = runner.invoke(
            main,
            ["prsd", "compress", str(files[1]), str(packed), "--key", "deadbeef", "--endian", "big"],
        )
        assert result.exit_code == 0

        header = prsd.read_header(packed.read_bytes())
        assert header.key == 0xDEADBEEF
        assert header.endian is Endian.BIG

    def test_prc_alias(self, runner, tmp_path, files):
        packed = tmp_path / "beta.prc"
        packed.write_bytes(prsd.compress(files[1].read_bytes(), key=1))
        out = tmp_path / "beta.out"

        result = runner.invoke(main, ["prc", "decompress", str(packed), str(out)])
        assert result.exit_code == 0
        assert out.read_bytes() == files[1].read_bytes()

    def test_prsd_bad_key(self, runner, tmp_path, files):
        result = runner.invoke(
            main, ["prsd", "compress", str(files[0]), str(tmp_path / "x.prc"), "--key", "nothex"]
        )
        assert result.exit_code == 2
        assert not (tmp_path / "x.prc").exists()


class TestArchives:
    """Tests for the archive command groups."""

    def test_afs_create_and_list(self, runner, tmp_path, files):
        path = tmp_path / "test.afs"

        result = runner.invoke(main, ["afs", "create", str(path)] + [str(f) for f in files])
        assert result.exit_code == 0

        result = runner.invoke(main, ["afs", "list", str(path)])
        assert result.exit_code == 0
        assert "File 0 @ offset 0x00080000 size: 3000" in result.output

    def test_afs_names_option(self, runner, tmp_path, files):
        path = tmp_path / "named.afs"

        result = runner.invoke(main, ["afs", "--names", "create", str(path)] + [str(f) for f in files])
        assert result.exit_code == 0
        with afs.AFSArchive(path) as archive:
            assert [e.name for e in archive.entries] == ["alpha.bin", "beta.bin"]

    def test_afs_extract_one(self, runner, tmp_path, files):
        path = tmp_path / "test.afs"
        afs.create(path, files)
        out = tmp_path / "out"

        result = runner.invoke(main, ["afs", "extract", str(path), "-o", str(out), "-f", "1"])
        assert result.exit_code == 0
        assert [p.name for p in out.iterdir()] == ["test.afs.1"]

    def test_afs_delete_out_of_range(self, runner, tmp_path, files):
        path = tmp_path / "test.afs"
        afs.create(path, files)

        result = runner.invoke(main, ["afs", "delete", str(path), "5"])
        assert result.exit_code == 1
        assert "Error: Item out of range: 5" in result.output

    def test_afs_update_compressed(self, runner, tmp_path, files):
        path = tmp_path / "test.afs"
        afs.create(path, files)

        result = runner.invoke(main, ["afs", "update", str(path), "0", str(files[1]), "--compress"])
        assert result.exit_code == 0
        with afs.AFSArchive(path) as archive:
            assert archive.decompress_entry(archive.find(0)) == files[1].read_bytes()

    def test_gsl_little_endian(self, runner, tmp_path, files):
        path = tmp_path / "test.gsl"

        result = runner.invoke(
            main, ["gsl", "--endian", "little", "create", str(path)] + [str(f) for f in files]
        )
        assert result.exit_code == 0
        with GSLArchive(path) as archive:
            assert archive.endian is Endian.LITTLE

        result = runner.invoke(main, ["gsl", "list", str(path)])
        assert result.exit_code == 0
        assert "'beta.bin'" in result.output

    def test_gsl_append_and_delete(self, runner, tmp_path, files):
        path = tmp_path / "test.gsl"
        gsl.create(path, files[:1])

        result = runner.invoke(main, ["gsl", "append", str(path), str(files[1])])
        assert result.exit_code == 0
        result = runner.invoke(main, ["gsl", "delete", str(path), "alpha.bin"])
        assert result.exit_code == 0
        assert "1 files left" in result.output

    def test_bml_extract_decompressed(self, runner, tmp_path, files):
        path = tmp_path / "test.bml"
        bml.create(path, files)
        out = tmp_path / "out"

        result = runner.invoke(main, ["bml", "extract", "--decompress", str(path), "-o", str(out)])
        assert result.exit_code == 0
        assert (out / "alpha.bin").read_bytes() == files[0].read_bytes()
        assert (out / "beta.bin").read_bytes() == files[1].read_bytes()

    def test_bml_update_pvm(self, runner, tmp_path, files):
        path = tmp_path / "test.bml"
        bml.create(path, files)
        texture = tmp_path / "tex.pvm"
        texture.write_bytes(b"PVMH" * 64)

        result = runner.invoke(main, ["bml", "update", str(path), "beta.bin", str(texture), "--pvm"])
        assert result.exit_code == 0
        with bml.BMLArchive(path) as archive:
            entry = archive.find("beta.bin")
            assert prs.decompress(archive.read_auxiliary(entry)) == texture.read_bytes()

    def test_extract_no_match(self, runner, tmp_path, files):
        path = tmp_path / "test.bml"
        bml.create(path, files)

        result = runner.invoke(
            main, ["bml", "extract", str(path), "-o", str(tmp_path / "out"), "-f", "gamma.bin"]
        )
        assert result.exit_code == 1
        assert "No matching files" in result.output

    def test_wrong_format(self, runner, tmp_path, files):
        result = runner.invoke(main, ["bml", "list", str(files[0])])
        assert result.exit_code == 1
        assert "Error:" in result.output
