"""
Root Typer application for the mapspine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from mapspine.core.logging import configure_logging

app = Typer(
    name="mapspine",
    help="mapspine: mapping execution engine tooling.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("mapspine")
        except PackageNotFoundError:
            from mapspine import __version__ as v
        typer.echo(f"mapspine {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option("WARNING", "--log-level", envvar="MAPSPINE_CLI_LOG_LEVEL"),
) -> None:
    """mapspine CLI: inspect dead-letter queues."""
    configure_logging(level=log_level)


# ── Sub-command registration ─────────────────────────────────────────────

from mapspine.cli.dlq import app as dlq_app  # noqa: E402

app.add_typer(dlq_app, name="dlq", help="Dead-letter queue inspection and maintenance.")


if __name__ == "__main__":
    app()
