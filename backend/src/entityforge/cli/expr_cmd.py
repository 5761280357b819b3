"""Expression CLI commands."""

import json

import click

from entityforge.expressions import Environment, ExpressionError, evaluate, parse


@click.group()
def expr():
    """Expression commands."""
    pass


@expr.command()
@click.argument("expression")
@click.option(
    "--record",
    "record_json",
    default=None,
    help="JSON object to evaluate the expression against.",
)
def check(expression: str, record_json: str | None):
    """Parse EXPRESSION and optionally evaluate it against a record."""
    try:
        ast = parse(expression)
    except ExpressionError as e:
        click.echo(click.style(f"Invalid expression: {e}", fg="red"), err=True)
        raise SystemExit(1)

    click.echo(f"OK: {type(ast).__name__}")
    if record_json is None:
        return

    try:
        record = json.loads(record_json)
    except json.JSONDecodeError as e:
        click.echo(f"Error: --record is not valid JSON: {e}", err=True)
        raise SystemExit(1)
    if not isinstance(record, dict):
        click.echo("Error: --record must be a JSON object", err=True)
        raise SystemExit(1)

    try:
        result = evaluate(expression, Environment(record=record))
    except ExpressionError as e:
        click.echo(click.style(f"Evaluation failed: {e}", fg="red"), err=True)
        raise SystemExit(1)
    click.echo(f"Result: {json.dumps(result, default=str)}")
