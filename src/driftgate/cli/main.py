# Copyright (c) Syntropy Systems
"""Main CLI entry point for driftgate."""

import typer

from driftgate.cli.bench import bench
from driftgate.cli.capture import after, before
from driftgate.cli.common import setup_logging
from driftgate.cli.compare import compare
from driftgate.cli.doctor import doctor
from driftgate.cli.init_cmd import init
from driftgate.cli.refresh import refresh
from driftgate.cli.status import status

app = typer.Typer(
    name="driftgate",
    help=(
        "Quality regression gate for a retrieval engine. Capture before and "
        "after a change, compare, and fail the build on drift."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Quality regression gate for a retrieval engine."""
    setup_logging(verbose)


# Register commands
_ = app.command()(init)
_ = app.command()(before)
_ = app.command()(after)
_ = app.command()(compare)
_ = app.command()(refresh)
_ = app.command()(bench)
_ = app.command()(status)
_ = app.command()(doctor)


if __name__ == "__main__":
    app()
