"""
Migration orchestrator: the resumable state machine.

    start → prepared → discovered → globals-done → tuning-applied →
    databases-created → databases-migrated → verified → tuning-reverted → done

On entry to a stage whose marker is already set the work is skipped;
otherwise the work runs and the marker is written afterwards. Tuning revert
runs on every exit path once tuning has been applied. Fatal stage errors
end the run in ``aborted``.
"""

from dataclasses import dataclass, field

from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich import box

from pg2pg import console, PG_UTILITIES
from pg2pg.database import DatabaseMigrator, DatabaseResult
from pg2pg.discovery import discover_databases
from pg2pg.errors import FatalStageError, DatabaseMigrationError
from pg2pg.global_objects import GlobalsMigrator
from pg2pg.scheduler import run_parallel
from pg2pg.state import (
    StateStore, db_key,
    PREPARED, DISCOVERED, TUNING_APPLIED, TUNING_REVERTED,
    DATABASES_CREATED, DATABASES_MIGRATED, VERIFIED, DONE,
)
from pg2pg.tuning import ServerTuner, tuning_disabled
from pg2pg.validation import Verifier, VerificationReport

DONE_STATE = "done"
ABORTED_STATE = "aborted"

VERIFIED_OUTCOME = "verified"
UNVERIFIED_OUTCOME = "unverified"
FAILED_OUTCOME = "failed"

VERIFIED_STEP = "verified"


@dataclass
class DatabaseOutcome:
    name: str
    outcome: str
    error: str = None
    report: VerificationReport = None


@dataclass
class MigrationSummary:
    state: str = "start"
    databases: dict = field(default_factory=dict)
    tuning_status: str = "not-applied"
    error: Exception = None

    @property
    def exit_code(self) -> int:
        return 0 if self.state == DONE_STATE else 1

    @property
    def aborted_stage(self):
        return getattr(self.error, "stage", None)

    def count(self, outcome: str) -> int:
        return sum(1 for d in self.databases.values() if d.outcome == outcome)

    @property
    def fully_verified(self) -> bool:
        return self.state == DONE_STATE and all(
            d.outcome == VERIFIED_OUTCOME for d in self.databases.values()
        )


def _format_size(size: int) -> str:
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:,.0f} {unit}" if unit == "B" else f"{size:,.1f} {unit}"
        size /= 1024


class MigrationOrchestrator:
    def __init__(self, settings, runner, store: StateStore = None, tuner=None, verifier=None,
                 discover=discover_databases, globals_migrator=None, migrator_factory=None,
                 show_progress: bool = False):
        self.settings = settings
        self.runner = runner
        self.store = store or StateStore(settings.state_dir)
        self.tuner = tuner or ServerTuner(settings.target)
        self.verifier = verifier or Verifier(
            settings.source, settings.target, settings.verify_dir, verbose=settings.verbose,
        )
        self.discover = discover
        self.globals_migrator = globals_migrator or GlobalsMigrator(
            settings.source, settings.target, runner, settings.dump_root, self.store,
        )
        self.migrator_factory = migrator_factory or self._default_migrator
        self.show_progress = show_progress
        self._progress = None
        self._tasks = {}

    def _default_migrator(self, name: str) -> DatabaseMigrator:
        return DatabaseMigrator(
            name,
            self.settings.source,
            self.settings.target,
            self.runner,
            self.store,
            self.settings.dump_root,
            jobs=self.settings.jobs,
            log_dir=self.settings.log_dir,
            on_step=self._on_step,
            dump_jobs=self.settings.dump_jobs,
            restore_jobs=self.settings.restore_jobs,
        )

    # ═════════════════════════════════════════════════════════
    # Entry point
    # ═════════════════════════════════════════════════════════

    def run(self) -> MigrationSummary:
        summary = MigrationSummary()
        try:
            self._prepare()
            summary.state = PREPARED

            names = self._discover()
            summary.state = DISCOVERED

            if names:
                self._migrate_globals()
                summary.state = "globals-done"
            else:
                console.print("  [yellow]⚠ No databases found to migrate.[/yellow]")

            with self._tuning_scope(names) as tuning:
                if names:
                    self._run_databases(names, summary)
            summary.tuning_status = tuning.status
        except FatalStageError as e:
            summary.state = ABORTED_STATE
            summary.error = e
            console.print(f"\n[red]✗ Migration aborted at stage '{e.stage}':[/red] {escape(str(e))}")
            return summary

        summary.state = DONE_STATE
        if all(d.outcome == VERIFIED_OUTCOME for d in summary.databases.values()):
            self.store.mark_complete(DONE, {"databases": sorted(summary.databases)})
        return summary

    def _tuning_scope(self, names):
        """Fast-restore tuning around the database work.

        Tuning left applied by a killed run is always reverted through the
        stored profile, even when tuning is switched off for this run.
        """
        left_applied = self.store.is_complete(TUNING_APPLIED) and not self.store.is_complete(TUNING_REVERTED)
        if left_applied:
            if not self.settings.tuning:
                console.print(
                    "  [yellow]⚠ An earlier run left fast-restore tuning on the target; "
                    "it will be reverted even though tuning is disabled.[/yellow]"
                )
            return self.tuner.scope(self.store)
        if not names:
            return tuning_disabled(status="not-applied")
        if not self.settings.tuning:
            return tuning_disabled()
        return self.tuner.scope(self.store)

    def _run_databases(self, names, summary):
        results = {}
        failed = self._create_databases(names)
        results.update(failed)

        to_migrate = [n for n in names if n not in failed]
        results.update(self._migrate_databases(to_migrate, all_created=not failed))
        succeeded = [n for n in names if results[n].success]

        reports = self._verify(succeeded, all_migrated=len(succeeded) == len(names))

        for name in names:
            result = results[name]
            if not result.success:
                summary.databases[name] = DatabaseOutcome(name, FAILED_OUTCOME, error=result.error)
                continue
            report = reports.get(name)
            if report is not None and report.verified:
                summary.databases[name] = DatabaseOutcome(name, VERIFIED_OUTCOME, report=report)
            else:
                error = report.error if report is not None else None
                summary.databases[name] = DatabaseOutcome(name, UNVERIFIED_OUTCOME, error=error, report=report)

    # ═════════════════════════════════════════════════════════
    # Stages
    # ═════════════════════════════════════════════════════════

    def _prepare(self):
        for directory in (self.settings.dump_root, self.settings.verify_dir, self.settings.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
        if self.store.is_complete(PREPARED):
            return

        missing = self.runner.missing_tools(PG_UTILITIES)
        if missing:
            raise FatalStageError(
                f"PostgreSQL client utilities not found on PATH: {', '.join(missing)} "
                "(install postgresql-client or use --runner docker)",
                stage=PREPARED,
            )
        self.store.mark_complete(PREPARED, {
            "runner": self.runner.name,
            "dump_root": str(self.settings.dump_root),
        })

    def _discover(self) -> list[str]:
        if self.store.is_complete(DISCOVERED):
            names = list(self.store.metadata(DISCOVERED).get("databases", []))
            console.print(f"  [dim]Using {len(names)} database(s) recorded by an earlier run.[/dim]")
            return names

        infos = self.discover(self.settings.source)
        names = [info.name for info in infos]

        if infos:
            table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
            table.add_column("Database", style="cyan", min_width=20)
            table.add_column("Size", justify="right", style="yellow")
            for info in infos:
                table.add_row(escape(info.name), _format_size(info.size_bytes))
            console.print(table)

        self.store.mark_complete(DISCOVERED, {
            "databases": names,
            "sizes": {info.name: info.size_bytes for info in infos},
        })
        console.print(f"  [green]✓[/green] Discovered {len(names)} database(s)")
        return names

    def _migrate_globals(self):
        if not self.settings.migrate_globals:
            console.print("  [dim]Global objects migration disabled — skipping.[/dim]")
            return
        self.globals_migrator.run()

    def _create_databases(self, names) -> dict:
        """Create every database on target; returns failed results by name."""
        if self.store.is_complete(DATABASES_CREATED):
            return {}

        failed = {}
        for name in names:
            try:
                self.migrator_factory(name).create()
            except DatabaseMigrationError as e:
                console.print(f"  [red]✗ {escape(str(e))}[/red]")
                failed[name] = DatabaseResult(name, False, error=str(e), step=e.step)

        if not failed:
            self.store.mark_complete(DATABASES_CREATED, {"databases": list(names)})
            console.print(f"  [green]✓[/green] {len(names)} database(s) present on target")
        return failed

    def _migrate_databases(self, names, all_created: bool) -> dict:
        if self.store.is_complete(DATABASES_MIGRATED):
            return {name: DatabaseResult(name, True) for name in names}

        pending = [n for n in names if not self.store.is_complete(db_key(n))]
        results = {n: DatabaseResult(n, True) for n in names if n not in pending}
        if len(pending) < len(names):
            console.print(f"  [dim]{len(names) - len(pending)} database(s) already migrated — skipping.[/dim]")

        def migrate_one(name):
            return self.migrator_factory(name).migrate()

        if pending:
            console.print(
                f"  Migrating {len(pending)} database(s): "
                f"max-parallel [cyan]{self.settings.max_parallel}[/cyan], "
                f"dump jobs [cyan]{self.settings.dump_jobs}[/cyan], restore jobs [cyan]{self.settings.restore_jobs}[/cyan]"
            )
            if self.show_progress:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    TimeElapsedColumn(),
                    console=console,
                ) as progress:
                    self._progress = progress
                    try:
                        results.update(run_parallel(pending, migrate_one, self.settings.max_parallel))
                    finally:
                        self._progress = None
                        self._tasks = {}
            else:
                results.update(run_parallel(pending, migrate_one, self.settings.max_parallel))

        for name in pending:
            result = results[name]
            if result.success:
                console.print(f"  [green]✓[/green] {escape(name)} migrated")
            else:
                console.print(f"  [red]✗ {escape(name)} failed during {result.step}:[/red] {escape(str(result.error))}")

        if all_created and all(r.success for r in results.values()):
            self.store.mark_complete(DATABASES_MIGRATED, {"databases": list(names)})
        return {name: results[name] for name in names}

    def _verify(self, names, all_migrated: bool) -> dict:
        reports = {}
        stage_done = self.store.is_complete(VERIFIED)

        for name in names:
            key = db_key(name, VERIFIED_STEP)
            if stage_done or self.store.is_complete(key):
                data = self.store.metadata(key).get("report")
                reports[name] = VerificationReport.from_dict(data) if data else VerificationReport(name)
                continue

            report = self.verifier.verify(name)
            reports[name] = report
            if report.verified:
                self.store.mark_complete(key, {"report": report.to_dict()})
                if self.settings.cleanup_dumps:
                    self.migrator_factory(name).cleanup()

        if not stage_done and all_migrated and all(r.verified for r in reports.values()):
            self.store.mark_complete(VERIFIED, {"databases": list(names)})
        return reports

    # ═════════════════════════════════════════════════════════
    # Progress display
    # ═════════════════════════════════════════════════════════

    def _on_step(self, name: str, step: str):
        progress = self._progress
        if progress is None:
            return
        labels = {
            "create": "[cyan]creating[/cyan]",
            "dump": "[cyan]dumping[/cyan]",
            "restore": "[cyan]restoring[/cyan]",
            "done": "[green]✓ done[/green]",
            "failed": "[red]✗ failed[/red]",
        }
        description = f"{escape(name)}: {labels.get(step, step)}"
        task = self._tasks.get(name)
        if task is None:
            self._tasks[name] = progress.add_task(description, total=None)
        else:
            progress.update(task, description=description)
        if step in ("done", "failed"):
            progress.update(self._tasks[name], total=1, completed=1)
