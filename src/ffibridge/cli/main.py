"""
ffibridge - Bindings and Scaffolding Generator
==============================================

Command-line front end for the generation pipeline. Every subcommand
takes an interface SOURCE, which is either a textual ``.idl`` file or a
compiled library carrying embedded metadata sections.

Commands
--------
- **generate**: foreign-language bindings, one directory per language
- **scaffolding**: the native-side Rust scaffolding module
- **print-json**: the resolved interface as versioned JSON IR
- **metadata encode**: turn a ``.idl`` file into an embeddable section
- **metadata list**: show the sections found in a compiled library

Usage Examples
--------------
Python and Kotlin bindings under ./out/python and ./out/kotlin:
    $ ffibridge generate arithmetic.idl -l python -l kotlin -o out

Bindings plus scaffolding, failing on any validator warning:
    $ ffibridge generate arithmetic.idl -l swift --scaffolding --warnings-as-errors

Bindings from a compiled library, selecting one namespace:
    $ ffibridge generate libarithmetic.so --crate arithmetic -l ruby

Textual definition merged with a library's metadata:
    $ ffibridge generate arithmetic.idl --lib-file libarithmetic.so -l python

Scaffolding only, without running rustfmt:
    $ ffibridge scaffolding arithmetic.idl -o src/ --no-format

Inspect the resolved interface:
    $ ffibridge print-json arithmetic.idl -o arithmetic.json

Configuration
-------------
``ffibridge.yaml`` beside SOURCE is applied automatically; ``-c`` names
another file. The ``FFIBRIDGE_CONFIG`` environment variable is consulted
before either.

Exit Codes
----------
- 0: Success
- 1: Generation error (syntax, metadata, interface, validation, emission)
- 2: Invalid arguments or missing files
- 3: Internal error
"""

import logging
from pathlib import Path
from typing import Optional

import click

from ffibridge import __version__
from ffibridge.backends import available_languages
from ffibridge.cli.errors import handle_cli_exception
from ffibridge.config import ConfigOverlay
from ffibridge.extractor import read_idl_file
from ffibridge.metadata import encode_section, scan_library
from ffibridge.pipeline import BindingsGenerator, GenerationOptions, GenerationReport

logger = logging.getLogger(__name__)


def _configure_logging(ctx: click.Context, verbose: bool) -> bool:
    """Combine the group and command -v flags and set up logging once."""
    verbose = verbose or bool(ctx.obj and ctx.obj.get("verbose"))
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    return verbose


def _load_config(config_file: Optional[Path]) -> Optional[ConfigOverlay]:
    return ConfigOverlay.from_file(config_file) if config_file is not None else None


def _print_report(report: GenerationReport, verbose: bool) -> None:
    for outcome in report.outcomes:
        for warning in outcome.warnings:
            click.echo(str(warning), err=True)
        if verbose:
            for path in outcome.files:
                click.echo(f"  {path}")
        click.echo(f"{outcome.language}: {len(outcome.files)} file(s) in {outcome.out_dir}")


# Shared option declarations
source_argument = click.argument(
    "source",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
verbose_option = click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable debug logging",
)
config_option = click.option(
    "-c", "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Configuration overlay (default: ffibridge.yaml beside SOURCE)",
)
no_format_option = click.option(
    "--no-format",
    is_flag=True,
    help="Do not run the language formatter over generated files",
)


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging for every command")
@click.version_option(version=__version__, prog_name="ffibridge")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """
    Generate foreign-language bindings and native scaffolding from one
    interface definition.

    \b
    Commands:
      generate     Bindings for one or more languages
      scaffolding  Native-side Rust scaffolding
      print-json   Resolved interface as JSON
      metadata     Encode or list embedded metadata sections

    \b
    Examples:
      ffibridge generate math.idl -l python -l swift -o out
      ffibridge scaffolding math.idl -o src/
      ffibridge print-json libmath.so --crate math
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


# =============================================================================
# Generate Command
# =============================================================================

@main.command("generate")
@source_argument
@click.option(
    "-l", "--language",
    "languages",
    multiple=True,
    required=True,
    type=click.Choice(available_languages()),
    help="Target language (repeatable)",
)
@click.option(
    "-o", "--out-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Base output directory; each language writes to <out-dir>/<language>",
)
@click.option(
    "--lib-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Compiled library whose metadata is merged after SOURCE",
)
@click.option(
    "--crate",
    default=None,
    help="Namespace to select inside a compiled library",
)
@config_option
@no_format_option
@click.option(
    "--warnings-as-errors",
    is_flag=True,
    help="Treat every validator warning as fatal",
)
@click.option(
    "--scaffolding",
    is_flag=True,
    help="Also write the native scaffolding to <out-dir>/scaffolding",
)
@verbose_option
@click.pass_context
def cmd_generate(
    ctx: click.Context,
    source: Path,
    languages: tuple[str, ...],
    out_dir: Path,
    lib_file: Optional[Path],
    crate: Optional[str],
    config_file: Optional[Path],
    no_format: bool,
    warnings_as_errors: bool,
    scaffolding: bool,
    verbose: bool,
) -> None:
    """
    Generate bindings for SOURCE.

    Languages are emitted in parallel. A language that fails writes
    nothing; the others still write their files and the command exits
    with status 1.

    \b
    Examples:
      ffibridge generate math.idl -l python
      ffibridge generate math.idl -l kotlin -l swift -o bindings --no-format
    """
    verbose = _configure_logging(ctx, verbose)
    try:
        options = GenerationOptions(
            languages=languages,
            out_dir=out_dir,
            format_output=not no_format,
            scaffolding=scaffolding,
            crate=crate,
            warnings_as_errors=warnings_as_errors,
        )
        generator = BindingsGenerator(options, _load_config(config_file))
        report = generator.generate(source, lib_file)
        _print_report(report, verbose)
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)


# =============================================================================
# Scaffolding Command
# =============================================================================

@main.command("scaffolding")
@source_argument
@click.option(
    "-o", "--out-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory for <namespace>_scaffolding.rs",
)
@click.option(
    "--crate",
    default=None,
    help="Namespace to select inside a compiled library",
)
@config_option
@no_format_option
@verbose_option
@click.pass_context
def cmd_scaffolding(
    ctx: click.Context,
    source: Path,
    out_dir: Path,
    crate: Optional[str],
    config_file: Optional[Path],
    no_format: bool,
    verbose: bool,
) -> None:
    """
    Generate the native-side scaffolding for SOURCE.

    \b
    Example:
      ffibridge scaffolding math.idl -o src/
    """
    verbose = _configure_logging(ctx, verbose)
    try:
        options = GenerationOptions(out_dir=out_dir, format_output=not no_format, crate=crate)
        generator = BindingsGenerator(options, _load_config(config_file))
        report = generator.generate_scaffolding(source)
        _print_report(report, verbose)
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)


# =============================================================================
# Print-JSON Command
# =============================================================================

@main.command("print-json")
@source_argument
@click.option(
    "--crate",
    default=None,
    help="Namespace to select inside a compiled library",
)
@click.option(
    "-o", "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write to a file instead of standard output",
)
@config_option
@verbose_option
@click.pass_context
def cmd_print_json(
    ctx: click.Context,
    source: Path,
    crate: Optional[str],
    output: Optional[Path],
    config_file: Optional[Path],
    verbose: bool,
) -> None:
    """
    Print the resolved interface of SOURCE as JSON IR.

    \b
    Example:
      ffibridge print-json math.idl | jq '.items[].name'
    """
    verbose = _configure_logging(ctx, verbose)
    try:
        generator = BindingsGenerator(GenerationOptions(crate=crate), _load_config(config_file))
        text = generator.interface_json(source)
        if output is None:
            click.echo(text)
        else:
            output.write_text(text + "\n", encoding="utf-8")
            if verbose:
                click.echo(f"Wrote {output}")
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)


# =============================================================================
# Metadata Commands
# =============================================================================

@main.group("metadata")
def metadata_group() -> None:
    """
    Work with binary metadata sections.

    \b
    Commands:
      encode  Encode a .idl file as an embeddable section
      list    List the sections embedded in a compiled library
    """


@metadata_group.command("encode")
@source_argument
@click.option(
    "-o", "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help="Output blob path (required)",
)
@verbose_option
@click.pass_context
def cmd_metadata_encode(ctx: click.Context, source: Path, output: Path, verbose: bool) -> None:
    """
    Encode the textual definition SOURCE as a metadata section.

    The blob can be linked into a native library; ``ffibridge generate``
    finds it again wherever it lands in the library's bytes.

    \b
    Example:
      ffibridge metadata encode math.idl -o math.ffibmeta
    """
    verbose = _configure_logging(ctx, verbose)
    try:
        batch = read_idl_file(source)
        blob = encode_section(batch)
        output.write_bytes(blob)
        click.echo(f"Wrote {len(blob)} bytes ({len(batch.items)} items, namespace '{batch.namespace}') to {output}")
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)


@metadata_group.command("list")
@click.argument(
    "library",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--crate",
    default=None,
    help="Only list sections for this namespace",
)
@verbose_option
@click.pass_context
def cmd_metadata_list(ctx: click.Context, library: Path, crate: Optional[str], verbose: bool) -> None:
    """
    List the metadata sections embedded in LIBRARY.

    \b
    Output format:
      NAMESPACE    KIND                NAME
      math         function            add
      math         object              Counter
    """
    verbose = _configure_logging(ctx, verbose)
    try:
        batches = scan_library(library, crate)
        click.echo(f"{'Namespace':<12} {'Kind':<19} {'Name'}")
        click.echo("-" * 44)
        for batch in batches:
            for item in batch.items:
                click.echo(f"{batch.namespace:<12} {item.kind:<19} {item.name}")
        if verbose:
            click.echo("-" * 44)
            click.echo(f"Total: {len(batches)} section(s)")
    except Exception as e:
        handle_cli_exception(e, verbose=verbose)


if __name__ == "__main__":
    main()
