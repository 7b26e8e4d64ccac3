"""
trellis — CLI entrypoint.

Usage:
    trellis --help
    trellis generate [--dry-run] [--overwrite]
    trellis status
    trellis config check
    trellis migrations check
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from trellis import __version__
from trellis.core.observability.logging_config import resolve_level, setup_from_environment


@click.group()
@click.version_option(version=__version__, prog_name="trellis")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to trellis.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """trellis — generate project files and migrations, keep your edits."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_from_environment(resolve_level(debug=debug, verbose=verbose, quiet=quiet))


# ── generate ────────────────────────────────────────────────────────

_STATUS_STYLE = {
    "created": ("+", "green"),
    "written": ("✓", "green"),
    "conflict": ("!", "red"),
    "unresolved": ("!", "yellow"),
    "error": ("✗", "red"),
    "empty": ("⊘", "yellow"),
    "cancelled": ("⊘", "yellow"),
}


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--overwrite", is_flag=True, help="Discard local edits; write generated content.")
@click.option("--dry-run", is_flag=True, help="Show what would change; write nothing.")
@click.option("--workers", "-j", type=click.IntRange(min=1), default=None, help="Parallel workers.")
@click.option("--prune", is_flag=True, help="Delete orphaned files you have not edited.")
@click.option("--yes", "-y", is_flag=True, help="Don't ask before pruning.")
@click.pass_context
def generate(
    ctx: click.Context,
    as_json: bool,
    overwrite: bool,
    dry_run: bool,
    workers: int | None,
    prune: bool,
    yes: bool,
) -> None:
    """Generate files and migrations, merging with local edits.

    Examples:

        trellis generate

        trellis generate --dry-run

        trellis generate --prune --yes
    """
    from trellis.core.use_cases.generate import generate as run_generate

    def _confirm(paths: list[str]) -> bool:
        if yes or as_json:
            return yes
        click.echo("Orphaned files unchanged since they were generated:")
        for path in paths:
            click.echo(f"   • {path}")
        return click.confirm("Delete them?", default=False)

    result = run_generate(
        config_path=ctx.obj.get("config_path"),
        overwrite=overwrite,
        dry_run=dry_run,
        workers=workers,
        prune=prune,
        confirm_prune=_confirm,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.ok else 1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    report = result.report
    assert report is not None
    assert result.project is not None
    quiet = ctx.obj.get("quiet", False)
    verbose = ctx.obj.get("verbose", False)

    if report.aborted:
        click.secho(f"❌ Aborted: {report.aborted}", fg="red", bold=True)
        click.echo("   Nothing was committed.")
        sys.exit(1)

    mode_label = "[dry-run] " if dry_run else "[overwrite] " if overwrite else ""
    if not quiet:
        click.secho(f"\n🌱 {mode_label}{result.project.name}", fg="cyan", bold=True)
        click.echo(
            f"   Files: {len(report.outcomes)} | "
            f"Changed: {len(report.written)} | "
            f"Migrations: {len(report.migrations)}"
        )
        click.echo()

    for outcome in report.outcomes:
        if outcome.status == "unchanged" and not verbose:
            continue
        marker, color = _STATUS_STYLE.get(outcome.status, ("·", "white"))
        click.secho(f"   {marker} {outcome.path}", fg=color, nl=False)
        click.echo(f" ({outcome.status})")
        if outcome.error:
            click.echo(f"     │ {outcome.error}")
        for region in outcome.regions:
            click.echo(f"     │ conflict at line {region.output_line + 1}")
        if outcome.diff and outcome.diff.get("diff") and not quiet:
            for line in outcome.diff["diff"].split("\n"):
                click.echo(f"     │ {line}")

    for plan in report.migrations:
        label = "would write" if dry_run else "wrote"
        review = " — needs manual review" if plan.needs_manual_review else ""
        click.secho(f"   🗄  {label} migration {plan.slug}{review}", fg="cyan")
        for note in plan.review_notes:
            click.echo(f"     │ {note}")

    for error in report.synthesis_errors:
        click.secho(f"   ✗ migration for {error.model}: {error.entry}", fg="red")
        click.echo(f"     │ {error.detail}")

    if report.orphaned:
        click.echo()
        click.secho("⚠️  No longer generated (left on disk):", fg="yellow")
        for path in report.orphaned:
            mark = " (pruned)" if path in result.pruned else ""
            click.echo(f"   • {path}{mark}")

    click.echo()
    if report.cancelled:
        click.secho("   Cancelled — nothing committed", fg="yellow", bold=True)
    elif report.conflicts:
        click.secho(
            f"   Conflicts in {len(report.conflicts)} file(s) — resolve the markers and re-run",
            fg="red", bold=True,
        )
    elif report.ok:
        label = "nothing written" if dry_run else f"generation {report.generation}"
        click.secho(f"   Result: ok ({label})", fg="green", bold=True)

    if not result.ok:
        click.echo()
        sys.exit(1)

    click.echo()


# ── status ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, as_json: bool) -> None:
    """Show project status summary."""
    from trellis.core.use_cases.status import get_status

    result = get_status(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    project = result.project
    assert project is not None  # guaranteed after error check above
    quiet = ctx.obj.get("quiet", False)

    if not quiet:
        click.secho(f"\n📋 {project.name}", fg="cyan", bold=True)
        if project.description:
            click.echo(f"   {project.description}")
        click.echo()

    click.secho(f"   Models: {len(project.models)}", fg="white", bold=True)
    for model in project.models:
        parent = f" → {model.belongs_to.model}" if model.belongs_to else ""
        pending = " (schema changed)" if model.name in result.pending else ""
        click.echo(f"     • {model.name} [{model.table_name}]{parent}{pending}")

    click.echo()
    click.secho("   Generated state:", fg="white", bold=True)
    click.echo(f"     generation {result.state.get('generation', 0)}, "
               f"{result.state.get('files', 0)} files, {result.migration_count} migrations")

    if result.pending:
        click.echo()
        click.secho("   Pending schema changes:", fg="yellow", bold=True)
        for model, entries in result.pending.items():
            for entry in entries:
                click.echo(f"     • {model}: {entry}")

    if result.last_pass:
        entry = result.last_pass
        click.echo()
        click.secho("   Last pass:", fg="white", bold=True)
        status_color = {"ok": "green", "conflicts": "yellow"}.get(entry.status, "red")
        click.echo(f"     {entry.operation_id} — ", nl=False)
        click.secho(entry.status, fg=status_color)
        click.echo(f"     at {entry.timestamp}")
        for path in entry.conflicts:
            click.echo(f"     ! {path}")

    click.echo()


# ── config ──────────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Project configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate trellis.yml configuration."""
    from trellis.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)
        return

    if result.valid:
        assert result.project is not None  # guaranteed when valid
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Project: {result.project.name}")
        click.echo(f"   Models: {len(result.project.models)}")
        click.echo(f"   Outputs: {len(result.project.outputs)}")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


# ── migrations ──────────────────────────────────────────────────────


@cli.group()
def migrations() -> None:
    """Migration commands."""


@migrations.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def migrations_check(ctx: click.Context, as_json: bool) -> None:
    """Replay migrations and compare with the generated schema."""
    from trellis.core.use_cases.migrations_check import check_migrations

    result = check_migrations(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)
        return

    if result.valid:
        click.secho(
            f"✅ {len(result.migrations)} migration(s) reproduce the generated schema",
            fg="green", bold=True,
        )
    else:
        click.secho("❌ Migration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


if __name__ == "__main__":
    cli()
