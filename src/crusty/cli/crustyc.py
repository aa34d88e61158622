"""
crustyc - Crusty Transpiler Command-Line Interface
==================================================

This module implements the command-line interface for the Crusty
transpiler. It translates Crusty modules into Rust (or into canonical
Crusty) from the terminal.

Usage Examples
--------------
Translate one file to stdout:
    $ crustyc main.crst

Translate a project, mirroring the tree under out/:
    $ crustyc src -o out

Check a project without generating anything:
    $ crustyc --check src

Normalize Crusty sources:
    $ crustyc --target crusty src -o formatted

Verbose mode:
    $ crustyc -v src -o out
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import click

from crusty import __version__
from crusty.cli.errors import handle_cli_exception
from crusty.transpiler import CompilerOptions, ProjectCompiler, Target


logger = logging.getLogger(__name__)


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if verbose else "%(message)s",
    )


def default_root(inputs: List[Path]) -> Path:
    """Deepest directory that contains every input."""
    dirs = [str(p.resolve() if p.is_dir() else p.resolve().parent) for p in inputs]
    return Path(os.path.commonpath(dirs))


# =============================================================================
# CLI Definition
# =============================================================================

@click.command()
@click.argument(
    "inputs",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, path_type=Path),
)
@click.option(
    "-o", "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory for generated files (default: print to stdout)",
)
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Source root that import paths are resolved against "
         "(default: the directory common to all inputs)",
)
@click.option(
    "-t", "--target",
    type=click.Choice([t.value for t in Target], case_sensitive=False),
    default=Target.RUST.value,
    show_default=True,
    help="Output direction",
)
@click.option(
    "--check",
    is_flag=True,
    help="Stop after semantic analysis, generate nothing",
)
@click.option(
    "--ast",
    is_flag=True,
    help="Print the AST of the first input and exit (for debugging)",
)
@click.option(
    "-j", "--jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads for analysis (default: CPU count)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Verbose output",
)
@click.version_option(version=__version__, prog_name="crustyc")
def main(
    inputs: tuple[Path, ...],
    output_dir: Optional[Path],
    root: Optional[Path],
    target: str,
    check: bool,
    ast: bool,
    jobs: Optional[int],
    verbose: bool,
) -> None:
    """
    Transpile Crusty source code to Rust.

    INPUTS are Crusty files (.crst) or directories searched recursively
    for them. Modules they import are loaded from the source root even
    when they are not listed.

    Every diagnostic of the batch is reported before exiting. Nothing is
    written unless every module is free of errors.

    \b
    Examples:
        crustyc main.crst                 # Print Rust to stdout
        crustyc src -o out                # Writes out/**/*.rs
        crustyc --check src               # Diagnostics only
        crustyc --target crusty a.crst    # Canonical Crusty
        crustyc --ast main.crst           # Dump the tree

    \b
    Exit codes:
        0  success
        1  the sources have errors
        2  invalid arguments
        3  internal error
    """
    setup_logging(verbose)

    try:
        paths = list(inputs)
        options = CompilerOptions(
            source_root=root or default_root(paths),
            target=Target(target.lower()),
            jobs=jobs,
        )
        compiler = ProjectCompiler(options)

        # AST dump mode
        if ast:
            _print_ast(compiler, paths)
            return

        if verbose:
            click.echo(f"Source root: {options.source_root}", err=True)
            click.echo(f"Target: {options.target.value}", err=True)

        results = compiler.compile(paths, emit=not check)
        compiler.raise_if_failed()

        if check:
            click.echo(f"Checked {len(results)} modules, no errors")
            return

        if output_dir is None:
            for result in results.values():
                if len(results) > 1:
                    click.echo(f"// {result.name}")
                click.echo(result.output, nl=False)
            return

        written = compiler.write_outputs(output_dir)
        compiler.raise_if_failed()
        click.echo(f"Compiled {len(written)} modules -> {output_dir}")

    except Exception as e:
        handle_cli_exception(e, verbose)


def _print_ast(compiler: ProjectCompiler, paths: List[Path]) -> None:
    """Parse the first input file and print its tree."""
    from crusty.transpiler.ast import ASTPrinter
    from crusty.transpiler.errors import ParseError
    from crusty.transpiler.resolver import load_unit

    files = compiler.discover(paths)
    if not files:
        raise click.BadParameter(f"no {compiler.options.extension} files found")

    first = files[0]
    unit = load_unit(compiler.resolver.module_name_for(first), first, compiler.options.tab_width)
    if unit.tree is None:
        raise ParseError(unit.diagnostics)
    click.echo(ASTPrinter().print(unit.tree))


if __name__ == "__main__":
    main()
