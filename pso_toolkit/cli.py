"""PSO Toolkit CLI."""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Optional, Tuple

import click

from . import __version__
from .errors import ArchiveError
from .utils.binary import Endian

ENDIAN_CHOICES = [e.value for e in Endian]


@dataclass
class ArchiveContext:
    """Format module plus the options given on the format's group."""

    module: ModuleType
    reader_options: dict = field(default_factory=dict)
    create_options: dict = field(default_factory=dict)


def _parse_key(ctx, param, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        key = int(value, 16)
    except ValueError:
        raise click.BadParameter(f"{value} is not a hexadecimal number")
    if not 0 <= key <= 0xFFFFFFFF:
        raise click.BadParameter(f"{value} does not fit in 32 bits")
    return key


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", count=True, help="Log progress (-v) or every entry (-vv)")
def main(verbose: int):
    """PSO Toolkit - Work with Phantasy Star Online archives.

    \b
    Containers:  AFS, GSL, BML
    Compression: PRS, PRSD (a.k.a. PRC)
    """
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(name)s: %(message)s")


# PRS


@main.group("prs")
def prs_group():
    """Compress or decompress raw PRS files."""


@prs_group.command("compress")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_file", type=click.Path(dir_okay=False, path_type=Path))
def prs_compress(input_file: Path, output_file: Path):
    """Compress INPUT_FILE into OUTPUT_FILE."""
    from .compression import prs

    try:
        size = prs.compress_file(input_file, output_file)
        click.echo(f"Created: {output_file} ({size} bytes)")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@prs_group.command("decompress")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_file", required=False, type=click.Path(dir_okay=False, path_type=Path))
def prs_decompress(input_file: Path, output_file: Optional[Path]):
    """Decompress INPUT_FILE.

    The output defaults to <input name>.bin in the current directory.
    """
    from .compression import prs

    try:
        output = prs.decompress_file(input_file, output_file)
        click.echo(f"Created: {output}")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# PRSD


@main.group("prsd")
def prsd_group():
    """Compress or decompress encrypted PRSD (PRC) files."""


main.add_command(prsd_group, "prc")


@prsd_group.command("compress")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--key",
    callback=_parse_key,
    help="Encryption key as 32-bit hex (default: random)",
)
@click.option(
    "--endian",
    type=click.Choice(["big", "little"]),
    default="little",
    help="Byte order of the header and cipher",
)
def prsd_compress(input_file: Path, output_file: Path, key: Optional[int], endian: str):
    """Compress and encrypt INPUT_FILE into OUTPUT_FILE."""
    from .compression import prsd

    try:
        size = prsd.compress_file(input_file, output_file, key=key, endian=Endian(endian))
        click.echo(f"Created: {output_file} ({size} bytes)")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@prsd_group.command("decompress")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_file", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--endian",
    type=click.Choice(ENDIAN_CHOICES),
    default="auto",
    help="Byte order (auto tries big-endian, then little-endian)",
)
def prsd_decompress(input_file: Path, output_file: Optional[Path], endian: str):
    """Decrypt and decompress INPUT_FILE.

    The output defaults to <input name>.bin in the current directory.
    """
    from .compression import prsd

    try:
        output = prsd.decompress_file(input_file, output_file, endian=Endian(endian))
        click.echo(f"Created: {output}")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


# Archives


@main.group("afs")
@click.option(
    "--names/--no-names",
    default=False,
    help="Create archives with a file name table",
)
@click.pass_context
def afs_group(ctx: click.Context, names: bool):
    """Work with AFS archives.

    Files in archives without a name table are addressed by index.
    """
    from .archives import afs

    ctx.obj = ArchiveContext(module=afs, create_options={"names": names})


@main.group("gsl")
@click.option(
    "--endian",
    type=click.Choice(ENDIAN_CHOICES),
    default="auto",
    help="Byte order (new archives default to big-endian)",
)
@click.pass_context
def gsl_group(ctx: click.Context, endian: str):
    """Work with GSL archives."""
    from .archives import gsl

    order = Endian(endian)
    ctx.obj = ArchiveContext(
        module=gsl,
        reader_options={"endian": order},
        create_options={"endian": Endian.BIG if order is Endian.AUTO else order},
    )


@main.group("bml")
@click.pass_context
def bml_group(ctx: click.Context):
    """Work with BML archives.

    Stored files are PRS-compressed, and may carry a PVM texture set.
    """
    from .archives import bml

    ctx.obj = ArchiveContext(module=bml)


archive_path = click.Path(exists=True, dir_okay=False, path_type=Path)
input_paths = click.Path(exists=True, dir_okay=False, path_type=Path)


def add_archive_commands(group: click.Group) -> None:
    """Attach the commands every archive format shares."""

    @group.command("list")
    @click.argument("archive", type=archive_path)
    @click.pass_obj
    def list_files(ctx: ArchiveContext, archive: Path):
        """List the files in ARCHIVE."""
        try:
            with ctx.module.open_archive(archive, **ctx.reader_options) as reader:
                for line in reader.list_entries():
                    click.echo(line)
        except (ArchiveError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    @group.command("extract")
    @click.argument("archive", type=archive_path)
    @click.option(
        "-o",
        "--output",
        type=click.Path(file_okay=False, path_type=Path),
        default=Path("."),
        help="Output directory (default: current directory)",
    )
    @click.option(
        "--decompress",
        is_flag=True,
        help="PRS-decompress extracted data",
    )
    @click.option(
        "-f",
        "--file",
        "files",
        multiple=True,
        help="Only extract this file (name, or index for unnamed AFS); repeatable",
    )
    @click.pass_obj
    def extract(ctx: ArchiveContext, archive: Path, output: Path, decompress: bool, files: Tuple[str, ...]):
        """Extract files from ARCHIVE.

        With --decompress, PRS data is expanded on the way out.
        """
        try:
            with ctx.module.open_archive(archive, **ctx.reader_options) as reader:
                targets = list(files) or None
                count = 0
                for filename, path in reader.extract_all(output, decompress=decompress, targets=targets):
                    click.echo(f"Extracted: {filename}")
                    count += 1
        except (ArchiveError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        if targets and count == 0:
            click.echo(f"Error: No matching files in {archive}", err=True)
            sys.exit(1)
        click.echo(f"Extracted {count} files to {output}")

    @group.command("create")
    @click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
    @click.argument("files", nargs=-1, type=input_paths)
    @click.pass_obj
    def create(ctx: ArchiveContext, archive: Path, files: Tuple[Path, ...]):
        """Create ARCHIVE from FILES."""
        try:
            ctx.module.create(archive, files, **ctx.create_options)
            click.echo(f"Created: {archive} ({len(files)} files)")
        except (ArchiveError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    @group.command("append")
    @click.argument("archive", type=archive_path)
    @click.argument("files", nargs=-1, required=True, type=input_paths)
    @click.pass_obj
    def append(ctx: ArchiveContext, archive: Path, files: Tuple[Path, ...]):
        """Add FILES to the end of ARCHIVE."""
        try:
            ctx.module.append(archive, files, **ctx.reader_options)
            click.echo(f"Updated: {archive}")
        except (ArchiveError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    @group.command("delete")
    @click.argument("archive", type=archive_path)
    @click.argument("targets", nargs=-1, required=True)
    @click.pass_obj
    def delete(ctx: ArchiveContext, archive: Path, targets: Tuple[str, ...]):
        """Delete TARGETS (names, or indexes for unnamed AFS) from ARCHIVE."""
        try:
            remaining = ctx.module.delete(archive, targets, **ctx.reader_options)
            click.echo(f"Updated: {archive} ({remaining} files left)")
        except (ArchiveError, OSError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


for archive_group in (afs_group, gsl_group, bml_group):
    add_archive_commands(archive_group)


@afs_group.command("update")
@click.argument("archive", type=archive_path)
@click.argument("target")
@click.argument("replacement", type=input_paths)
@click.option("--compress", is_flag=True, help="PRS-compress the replacement")
@click.pass_obj
def afs_update(ctx: ArchiveContext, archive: Path, target: str, replacement: Path, compress: bool):
    """Replace file TARGET (index, or name) in ARCHIVE with REPLACEMENT."""
    try:
        entry = ctx.module.update(archive, target, replacement, compress=compress)
        click.echo(f"Updated: {archive} (file {entry.display_name})")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@gsl_group.command("update")
@click.argument("archive", type=archive_path)
@click.argument("target")
@click.argument("replacement", type=input_paths)
@click.option("--compress", is_flag=True, help="PRS-compress the replacement")
@click.pass_obj
def gsl_update(ctx: ArchiveContext, archive: Path, target: str, replacement: Path, compress: bool):
    """Replace file TARGET in ARCHIVE with REPLACEMENT."""
    try:
        entry = ctx.module.update(
            archive, target, replacement, compress=compress, **ctx.reader_options
        )
        click.echo(f"Updated: {archive} (file {entry.display_name})")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@bml_group.command("update")
@click.argument("archive", type=archive_path)
@click.argument("target")
@click.argument("replacement", type=input_paths)
@click.option("--pvm", is_flag=True, help="Replace the file's PVM texture data instead")
@click.pass_obj
def bml_update(ctx: ArchiveContext, archive: Path, target: str, replacement: Path, pvm: bool):
    """Replace file TARGET in ARCHIVE with REPLACEMENT.

    REPLACEMENT is an uncompressed file; it is PRS-compressed on the way in.
    """
    try:
        entry = ctx.module.update(archive, target, replacement, auxiliary=pvm)
        click.echo(f"Updated: {archive} (file {entry.display_name})")
    except (ArchiveError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
