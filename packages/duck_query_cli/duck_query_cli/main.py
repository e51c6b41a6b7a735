"""Main entry point for the duck-query CLI."""

import json
from typing import Any

import typer
from pydantic import ValidationError

from duck_query import __version__
from duck_query.config import QueryClientConfig, configure_logging
from duck_query.domain.exceptions import ConfigurationError

app = typer.Typer(help="Inspect the duck-query installation and its configuration.")


def _flatten(values: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    items: list[tuple[str, Any]] = []
    for name, value in values.items():
        path = f"{prefix}{name}"
        if isinstance(value, dict):
            items.extend(_flatten(value, f"{path}."))
        else:
            items.append((path, value))
    return items


def _load_config() -> QueryClientConfig:
    try:
        return QueryClientConfig()
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ConfigurationError(
            fields or "environment", f"{e.error_count()} invalid value(s)"
        ) from e


@app.callback()  # type: ignore[misc]
def main() -> None:
    """Apply the configured logging before any command runs."""
    try:
        configure_logging(_load_config())
    except ConfigurationError:
        # The config command reports invalid values itself
        return


@app.command()  # type: ignore[misc]
def version() -> None:
    """Show the duck-query version."""
    typer.echo(f"duck-query version {__version__}")


@app.command()  # type: ignore[misc]
def config(
    as_json: bool = typer.Option(False, "--json", help="Print the configuration as JSON"),
) -> None:
    """Show the effective configuration after environment overrides."""
    try:
        values = _load_config().model_dump(mode="json")
    except ConfigurationError as e:
        typer.echo(e.message, err=True)
        raise typer.Exit(code=1) from e

    if as_json:
        typer.echo(json.dumps(values, indent=2, sort_keys=True))
        return

    for path, value in _flatten(values):
        typer.echo(f"{path} = {value}")


if __name__ == "__main__":
    app()
