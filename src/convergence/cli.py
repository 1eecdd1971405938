"""Azure Resource Convergence CLI.

Usage:
    convergence validate --specs-dir ./specs    # Validate resource specs
    convergence run                             # Run the operator
"""

from __future__ import annotations

from pathlib import Path

import click
from pydantic import ValidationError

from .dependency import CyclicDependencyError, DependencyGraph
from .models import ResourceInstance, get_attributes_model
from .spec_loader import SpecLoadError, format_validation_error, load_instances

DEFAULT_SPECS_DIR = "./specs"


def validate_attributes(instances: list[ResourceInstance]) -> list[str]:
    """Validate the kind-specific attributes of every instance.

    Returns:
        One error message per invalid instance.
    """
    errors: list[str] = []
    for instance in instances:
        try:
            get_attributes_model(instance.kind).model_validate(instance.attributes)
        except ValidationError as e:
            errors.append(f"{instance.key}:\n{format_validation_error(e)}")
    return errors


@click.group()
@click.version_option(version="0.1.0", prog_name="convergence")
def cli() -> None:
    """Azure Resource Convergence CLI.

    \b
    Quick Start:
        convergence validate          # Check specs and show ordering
        convergence run               # Run the operator
    """
    pass


@cli.command()
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False),
    default=DEFAULT_SPECS_DIR,
    envvar="SPECS_DIR",
    help="Specs directory",
)
@click.option(
    "--attributes/--no-attributes",
    default=True,
    help="Validate kind-specific attributes (default: true)",
)
@click.option(
    "--subscription-id",
    default=None,
    envvar="AZURE_SUBSCRIPTION_ID",
    help="Managed subscription; instances naming another one are rejected",
)
def validate(specs_dir: str, attributes: bool, subscription_id: str | None) -> None:
    """Validate resource specs and print the creation and teardown order.

    \b
    Examples:
        convergence validate --specs-dir ./specs
        convergence validate --no-attributes
        convergence validate --subscription-id 00000000-0000-0000-0000-000000000001
    """
    try:
        instances = load_instances(Path(specs_dir), subscription_id=subscription_id)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    if attributes:
        errors = validate_attributes(instances)
        if errors:
            raise click.ClickException("Invalid attributes:\n" + "\n".join(errors))

    graph = DependencyGraph.from_instances(instances)
    try:
        creation = graph.creation_order()
    except CyclicDependencyError as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Validated {len(instances)} instance(s) in {specs_dir}")

    click.echo("\nCreation order:")
    for index, key in enumerate(creation, start=1):
        click.echo(f"  {index}. {key}")

    click.echo("\nTeardown order:")
    for index, key in enumerate(reversed(creation), start=1):
        click.echo(f"  {index}. {key}")

    undeclared = graph.undeclared()
    if undeclared:
        click.echo("\nReferenced but not declared:")
        for key in undeclared:
            click.echo(f"  - {key}")


@cli.command()
def run() -> None:
    """Run the operator with configuration from the environment.

    \b
    Required environment:
        AZURE_SUBSCRIPTION_ID   Subscription to converge
        SPECS_DIR               Directory holding resource specs
    """
    from .main import run as run_operator

    run_operator()


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
