"""Validate command for the bounce CLI."""

import click

from bounce_protocol.models.validation import ValidationIssue
from bounce_protocol.services.session_service import load_session


def format_issue(issue: ValidationIssue) -> str:
    location = f"line {issue.line}" if issue.line is not None else "-"
    if issue.entry_id:
        location += f" entry {issue.entry_id}"
    return f"{issue.severity.value.upper():7} {issue.code.value:26} {location}: {issue.message}"


@click.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the validation result as JSON")
@click.pass_context
def validate(ctx, file, as_json):
    """Check a session file for protocol errors and warnings."""
    try:
        result = load_session(file)
    except OSError as e:
        raise click.ClickException(f"Cannot read {file}: {e}")

    validation = result.validation
    if as_json:
        click.echo(validation.model_dump_json(indent=2))
    else:
        for issue in validation.issues:
            click.echo(format_issue(issue))
        status = "valid" if validation.valid else "invalid"
        click.echo(
            f"{file}: {status} "
            f"({len(validation.errors)} errors, {len(validation.warnings)} warnings)"
        )

    if not validation.valid:
        ctx.exit(1)
