"""
CLI: argument parsing, dry-run mode, and main migration pipeline.
"""

import sys
import argparse
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich import box

from pg2pg import (
    console, CONFIG_FILE, DEFAULT_JOBS, DEFAULT_MAX_PARALLEL, DEFAULT_REPORT,
    PG_CLIENT_IMAGE, PG_UTILITIES, default_dump_root,
)
from pg2pg.config import PGConnection, MigrationSettings, init_config, load_config, test_connection
from pg2pg.discovery import discover_databases
from pg2pg.errors import ConfigError, DiscoveryError
from pg2pg.orchestrator import MigrationOrchestrator
from pg2pg.reporting import print_summary, generate_html_report
from pg2pg.runner import LocalRunner, DockerRunner

# Built-in defaults, used when neither a flag nor the config file sets a value
DEFAULTS = {
    "from_host": "localhost",
    "from_port": 5432,
    "from_user": "postgres",
    "from_pass": "",
    "from_db": "postgres",
    "to_host": "localhost",
    "to_port": 5432,
    "to_user": "postgres",
    "to_pass": "",
    "to_db": "postgres",
    "jobs": DEFAULT_JOBS,
    "dump_jobs": None,
    "restore_jobs": None,
    "max_parallel": DEFAULT_MAX_PARALLEL,
    "dump_root": None,
    "migrate_globals": True,
    "tuning": True,
    "runner": "local",
    "cleanup_dumps": False,
    "report": DEFAULT_REPORT,
}


def parse_args(argv=None):
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="PostgreSQL → PostgreSQL Migration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python migrate.py --init                       Create config file template\n"
            "  python migrate.py --config migration_config.json --dry-run\n"
            "  python migrate.py --from-host old --to-host new -p 4 --jobs 8\n"
        ),
    )
    parser.add_argument("--init", action="store_true", help="Create migration_config.json template and exit")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate settings, test connections, list databases — no migration",
    )
    parser.add_argument("--config", type=Path, help="JSON config file with source/target/options")

    source = parser.add_argument_group("source server")
    source.add_argument("--from-host")
    source.add_argument("--from-port", type=int)
    source.add_argument("--from-user")
    source.add_argument("--from-pass")
    source.add_argument("--from-db", help="Initial database on the source (default: postgres)")

    target = parser.add_argument_group("target server")
    target.add_argument("--to-host")
    target.add_argument("--to-port", type=int)
    target.add_argument("--to-user")
    target.add_argument("--to-pass")
    target.add_argument("--to-db", help="Initial database on the target (default: postgres)")

    run = parser.add_argument_group("migration")
    run.add_argument("--jobs", "-j", type=int, help=f"pg_dump/pg_restore workers per database (default {DEFAULT_JOBS})")
    run.add_argument("--dump-jobs", type=int, help="pg_dump workers per database, load on the source (default --jobs)")
    run.add_argument(
        "--restore-jobs", type=int, help="pg_restore workers per database, load on the target (default --jobs)",
    )
    run.add_argument(
        "--max-parallel", "-p", type=int,
        help=f"Databases migrated at the same time (default {DEFAULT_MAX_PARALLEL})",
    )
    run.add_argument("--dump-root", help="Directory for dump artifacts (default $HOME/pg_dumps)")
    run.add_argument(
        "--migrate-globals", action=argparse.BooleanOptionalAction, default=None,
        help="Migrate roles and tablespaces first (default on)",
    )
    run.add_argument(
        "--no-tuning", dest="tuning", action="store_const", const=False, default=None,
        help="Leave target durability settings untouched",
    )
    run.add_argument("--runner", choices=("local", "docker"), help="Where to run pg_dump/pg_restore (default local)")
    run.add_argument(
        "--cleanup-dumps", action="store_const", const=True, default=None,
        help="Delete each dump after its database is verified",
    )
    run.add_argument("--report", help=f"HTML report path (default {DEFAULT_REPORT})")
    run.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("--verbose", action="store_true", help="Show full detailed tables in console")
    return parser.parse_args(argv)


def resolve_options(args, file_values: dict = None) -> dict:
    """Merge flag > config file > built-in default."""
    values = dict(DEFAULTS)
    values.update(file_values or {})
    for key in DEFAULTS:
        flag = getattr(args, key, None)
        if flag is not None:
            values[key] = flag
    return values


def build_settings(args, file_values: dict = None) -> MigrationSettings:
    values = resolve_options(args, file_values)
    source = PGConnection(
        host=values["from_host"], port=values["from_port"], user=values["from_user"],
        password=values["from_pass"], database=values["from_db"],
    )
    target = PGConnection(
        host=values["to_host"], port=values["to_port"], user=values["to_user"],
        password=values["to_pass"], database=values["to_db"],
    )
    return MigrationSettings(
        source=source,
        target=target,
        jobs=values["jobs"],
        dump_jobs=values["dump_jobs"],
        restore_jobs=values["restore_jobs"],
        max_parallel=values["max_parallel"],
        dump_root=Path(values["dump_root"]) if values["dump_root"] else default_dump_root(),
        migrate_globals=values["migrate_globals"],
        tuning=values["tuning"],
        runner=values["runner"],
        cleanup_dumps=values["cleanup_dumps"],
        report_path=Path(values["report"]),
        verbose=bool(getattr(args, "verbose", False)),
    )


def make_runner(settings: MigrationSettings):
    if settings.runner == "docker":
        from pg2pg.docker_utils import get_docker_client
        return DockerRunner(get_docker_client(), shared_dirs=[settings.dump_root])
    return LocalRunner()


def settings_panel(settings: MigrationSettings, title: str = None) -> Panel:
    return Panel(
        f"[bold]Source:[/bold]  {settings.source.safe_uri}\n"
        f"[bold]Target:[/bold]  {settings.target.safe_uri}\n"
        f"[bold]Jobs:[/bold] dump {settings.dump_jobs} / restore {settings.restore_jobs}   "
        f"[bold]Max parallel:[/bold] {settings.max_parallel}   "
        f"[bold]Runner:[/bold] {settings.runner}\n"
        f"[bold]Dumps:[/bold]   {settings.dump_root}\n"
        f"[bold]Globals:[/bold] {'yes' if settings.migrate_globals else 'no'}   "
        f"[bold]Fast-restore tuning:[/bold] {'yes' if settings.tuning else 'no'}",
        title=title,
        border_style="yellow" if title else "dim",
    )


def dry_run(settings: MigrationSettings, runner):
    """Validate settings and preview what would be migrated, without actually migrating."""
    console.print(
        Panel(
            "[bold white]PostgreSQL → PostgreSQL Migration Tool[/bold white]\n"
            "[dim]🔍 DRY RUN — No data will be migrated[/dim]",
            border_style="bright_magenta",
            padding=(1, 4),
        )
    )

    all_ok = True

    # ── 1. Settings ───────────────────────────────────────────
    console.print("[bold yellow][1/4][/bold yellow] Configuration")
    console.print(settings_panel(settings))
    console.print("  [green]✓[/green] Settings are valid\n")

    # ── 2. Connections ────────────────────────────────────────
    console.print("[bold yellow][2/4][/bold yellow] Connections")
    source_ok = test_connection(settings.source, "Source")
    if source_ok:
        console.print("  [green]✓[/green] Source is reachable")
    else:
        all_ok = False
    if test_connection(settings.target, "Target"):
        console.print("  [green]✓[/green] Target is reachable\n")
    else:
        all_ok = False

    # ── 3. Utilities ──────────────────────────────────────────
    console.print("[bold yellow][3/4][/bold yellow] PostgreSQL client utilities")
    if settings.runner == "docker":
        console.print(f"  [green]✓[/green] Utilities run inside [cyan]{PG_CLIENT_IMAGE}[/cyan]\n")
    else:
        missing = runner.missing_tools(PG_UTILITIES)
        if missing:
            console.print(f"  [red]✗ Not found on PATH:[/red] {', '.join(missing)}")
            console.print("  [dim]Install postgresql-client or use --runner docker[/dim]\n")
            all_ok = False
        else:
            console.print(f"  [green]✓[/green] {', '.join(PG_UTILITIES)} found\n")

    # ── 4. Database preview ───────────────────────────────────
    console.print("[bold yellow][4/4][/bold yellow] Source databases")
    if source_ok:
        try:
            infos = discover_databases(settings.source)
            if not infos:
                console.print("  [yellow]⚠ No user databases found on the source.[/yellow]\n")
            else:
                preview_table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
                preview_table.add_column("Database", style="cyan", min_width=20)
                preview_table.add_column("Size (bytes)", justify="right", style="yellow")
                for info in infos:
                    preview_table.add_row(escape(info.name), f"{info.size_bytes:,}")
                preview_table.add_section()
                preview_table.add_row(
                    f"[bold]{len(infos)} databases[/bold]",
                    f"[bold]{sum(i.size_bytes for i in infos):,}[/bold]",
                )
                console.print(preview_table)
                console.print(f"\n  [green]✓[/green] {len(infos)} databases ready to migrate\n")
        except DiscoveryError as e:
            console.print(f"  [red]✗ Could not list databases:[/red] {escape(str(e))}")
            all_ok = False
    else:
        console.print("  [dim]Skipped — source connection failed.[/dim]\n")

    # ── Summary ───────────────────────────────────────────────
    if all_ok:
        console.print(
            Panel(
                "[bold green]✓ Dry run passed — everything looks good![/bold green]\n\n"
                "[bold]Ready to migrate. Run the same command without[/bold] [cyan]--dry-run[/cyan]",
                border_style="green",
                padding=(1, 2),
            )
        )
    else:
        console.print(
            Panel(
                "[bold red]✗ Dry run found issues.[/bold red]\n"
                "[yellow]Fix the errors above before running the actual migration.[/yellow]",
                border_style="red",
                padding=(1, 2),
            )
        )

    return 0 if all_ok else 1


def main(argv=None):
    args = parse_args(argv)

    # ── Handle --init flag ────────────────────────────────────
    if args.init:
        console.print(
            Panel(
                "[bold white]PostgreSQL → PostgreSQL Migration Tool[/bold white]\n"
                "[dim]Configuration Setup[/dim]",
                border_style="bright_cyan",
                padding=(1, 4),
            )
        )
        init_config(args.config or CONFIG_FILE)
        return 0

    # ── Settings (needed for both dry-run and full migration) ──
    file_values = load_config(args.config) if args.config else None
    try:
        settings = build_settings(args, file_values)
    except ConfigError as e:
        console.print(f"\n[red]✗ Invalid settings:[/red] {escape(str(e))}\n")
        return 1

    runner = make_runner(settings)

    # ── Handle --dry-run flag ─────────────────────────────────
    if args.dry_run:
        return dry_run(settings, runner)

    # ── Banner ────────────────────────────────────────────────
    console.print(
        Panel(
            "[bold white]PostgreSQL → PostgreSQL Migration Tool[/bold white]\n"
            "[dim]Powered by pg_dump + pg_restore[/dim]",
            border_style="bright_cyan",
            padding=(1, 4),
        )
    )
    if args.config:
        console.print(f"  [green]✓[/green] Config loaded from [cyan]{args.config.name}[/cyan]\n")

    # ── Test connections ──────────────────────────────────────
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("[cyan]Testing connections...", total=1)
        connected = test_connection(settings.source, "Source") and test_connection(settings.target, "Target")
        progress.update(task, completed=1)

    if not connected:
        console.print("\n[red]Cannot connect. Please check your credentials and try again.[/red]\n")
        return 1

    console.print("  [green]✓[/green] Source and target are reachable\n")

    # ── Confirmation ──────────────────────────────────────────
    console.print(settings_panel(settings, title="Migration Summary"))
    if not args.yes and not Confirm.ask("\n  Proceed with migration?", default=True):
        console.print("[dim]Migration cancelled.[/dim]")
        return 0

    console.print("")

    # ── Run the pipeline ──────────────────────────────────────
    orchestrator = MigrationOrchestrator(settings, runner, show_progress=True)
    summary = orchestrator.run()

    console.print("")
    print_summary(summary, verbose=settings.verbose)

    try:
        html_path = generate_html_report(
            summary, settings.source.safe_uri, settings.target.safe_uri, settings.report_path,
        )
        console.print(f"  [green]✓[/green] Detailed report generated: [cyan]{html_path}[/cyan]")
    except OSError as e:
        console.print(f"  [red]✗ HTML report error: {escape(str(e))}[/red]")

    return summary.exit_code


def entrypoint():
    """Console-script wrapper: exit codes and Ctrl-C handling."""
    try:
        exit_code = main()
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print(
            "\n[dim]Migration interrupted. Completed steps are recorded; "
            "re-run the same command to resume.[/dim]"
        )
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Unexpected error: {escape(str(e))}[/red]")
        console.print("[dim]Please report this issue with the full traceback.[/dim]")
        import traceback
        traceback.print_exc()
        sys.exit(1)
