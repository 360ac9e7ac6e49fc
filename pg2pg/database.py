"""
Per-database migration: create on target, dump from source, restore.

Each step is recorded under its own state key so a crash mid-dump does not
force a re-restore and a crash mid-restore does not force a re-dump. A
step that started but was never recorded is always redone from scratch.
"""

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

import psycopg2
import psycopg2.errors

from pg2pg import DUMP_COMPRESSION, DEFAULT_JOBS
from pg2pg import db
from pg2pg.errors import DatabaseMigrationError, DatabaseExistsError
from pg2pg.runner import dbname_arg, password_env
from pg2pg.state import db_key

CREATED = "created"
DUMPED = "dumped"
RESTORED = "restored"

USER_TABLES_SQL = """
    SELECT count(*)
    FROM information_schema.tables
    WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
"""


def dump_dir(root: Path, database: str) -> Path:
    return Path(root) / quote(database, safe="")


@dataclass
class DatabaseResult:
    name: str
    success: bool
    error: str = None
    step: str = None
    steps_run: list = field(default_factory=list)


class DatabaseMigrator:
    def __init__(self, name: str, source, target, runner, store, dump_root: Path,
                 jobs: int = DEFAULT_JOBS, log_dir: Path = None, on_step=None,
                 dump_jobs: int = None, restore_jobs: int = None):
        self.name = name
        self.source = source
        self.target = target
        self.runner = runner
        self.store = store
        self.dump_root = Path(dump_root)
        self.jobs = jobs
        self.dump_jobs = dump_jobs or jobs
        self.restore_jobs = restore_jobs or jobs
        self.log_dir = Path(log_dir) if log_dir else None
        self.on_step = on_step

    @property
    def dump_path(self) -> Path:
        return dump_dir(self.dump_root, self.name)

    def _notify(self, step: str):
        if self.on_step:
            self.on_step(self.name, step)

    def _save_log(self, step: str, result):
        if not self.log_dir:
            return None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = self.log_dir / f"{quote(self.name, safe='')}.{step}.log"
            log_file.write_text(
                "$ " + " ".join(result.command) + "\n"
                f"# exit code {result.returncode}\n\n"
                "## stderr\n" + result.stderr + "\n"
                "## stdout\n" + result.stdout + "\n"
            )
            return log_file
        except OSError:
            return None

    def _fail(self, step: str, what: str, result):
        log_file = self._save_log(step, result)
        tail = result.stderr.strip().splitlines()[-1:] if result.stderr else []
        message = f"{what} failed for {self.name} (exit {result.returncode})"
        if tail:
            message += f": {tail[0]}"
        if log_file:
            message += f" — full log: {log_file}"
        raise DatabaseMigrationError(message, database=self.name, step=step)

    # ── Step 1: create ──────────────────────────────────────

    def target_has_tables(self) -> bool:
        rows = db.fetch_all(self.target, USER_TABLES_SQL, dbname=self.name)
        return bool(rows and rows[0][0])

    def create(self) -> bool:
        """Create the empty database on target. Returns False if already recorded."""
        key = db_key(self.name, CREATED)
        if self.store.is_complete(key):
            return False
        self._notify("create")

        adopted = False
        try:
            db.execute(self.target, [(f"CREATE DATABASE {db.quote_ident(self.name)}", None)])
        except psycopg2.errors.DuplicateDatabase:
            try:
                non_empty = self.target_has_tables()
            except psycopg2.Error as e:
                raise DatabaseMigrationError(
                    f"Cannot inspect existing target database {self.name}: {str(e).strip()}",
                    database=self.name, step="create",
                ) from e
            if non_empty:
                raise DatabaseExistsError(
                    f"Target already has a non-empty database named {self.name}; "
                    "drop it or rename it before migrating",
                    database=self.name, step="create",
                )
            adopted = True
        except psycopg2.Error as e:
            raise DatabaseMigrationError(
                f"CREATE DATABASE {self.name} failed: {str(e).strip()}",
                database=self.name, step="create",
            ) from e

        self.store.mark_complete(key, {"adopted_existing": adopted})
        return True

    # ── Step 2: dump ────────────────────────────────────────

    def artifact_ready(self) -> bool:
        return (self.dump_path / "toc.dat").exists()

    def dump_command(self) -> list[str]:
        return [
            "pg_dump",
            "-h", self.runner.host_for(self.source),
            "-p", str(self.source.port),
            "-U", self.source.user,
            "-Fd",
            "-j", str(self.dump_jobs),
            "-Z", DUMP_COMPRESSION,
            "-f", str(self.dump_path),
            "-d", dbname_arg(self.name),
        ]

    def dump(self) -> bool:
        """Dump the source database to a directory artifact. Returns False if skipped."""
        key = db_key(self.name, DUMPED)
        restored = self.store.is_complete(db_key(self.name, RESTORED))
        if self.store.is_complete(key) and (restored or self.artifact_ready()):
            return False
        self._notify("dump")

        # pg_dump -Fd refuses a non-empty directory; partial output is redone
        if self.dump_path.exists():
            shutil.rmtree(self.dump_path)
        self.dump_root.mkdir(parents=True, exist_ok=True)

        result = self.runner.run(self.dump_command(), env=password_env(self.source))
        if not result.ok:
            self._fail("dump", "pg_dump", result)

        self.store.mark_complete(key, {"path": str(self.dump_path)})
        return True

    # ── Step 3: restore ─────────────────────────────────────

    def restore_command(self) -> list[str]:
        return [
            "pg_restore",
            "-h", self.runner.host_for(self.target),
            "-p", str(self.target.port),
            "-U", self.target.user,
            "-j", str(self.restore_jobs),
            "--clean", "--if-exists",
            "--disable-triggers",
            "-d", dbname_arg(self.name),
            str(self.dump_path),
        ]

    def restore(self) -> bool:
        """Restore the artifact into the target database. Returns False if skipped."""
        key = db_key(self.name, RESTORED)
        if self.store.is_complete(key):
            return False
        self._notify("restore")

        result = self.runner.run(self.restore_command(), env=password_env(self.target))
        if not result.ok:
            self._fail("restore", "pg_restore", result)

        self.store.mark_complete(key, {"path": str(self.dump_path)})
        return True

    # ── Whole database ──────────────────────────────────────

    def migrate(self) -> DatabaseResult:
        """Run every outstanding step. Failures are returned, never raised."""
        if self.store.is_complete(db_key(self.name)):
            return DatabaseResult(self.name, True)

        steps_run = []
        try:
            if self.create():
                steps_run.append("create")
            if self.dump():
                steps_run.append("dump")
            if self.restore():
                steps_run.append("restore")
            self.store.mark_complete(db_key(self.name), {
                "path": str(self.dump_path),
                "dump_jobs": self.dump_jobs,
                "restore_jobs": self.restore_jobs,
            })
        except DatabaseMigrationError as e:
            self._notify("failed")
            return DatabaseResult(self.name, False, error=str(e), step=e.step, steps_run=steps_run)
        except OSError as e:
            self._notify("failed")
            return DatabaseResult(self.name, False, error=f"{type(e).__name__}: {e}", step="io", steps_run=steps_run)

        self._notify("done")
        return DatabaseResult(self.name, True, steps_run=steps_run)

    def cleanup(self):
        """Delete the dump artifact (after successful verification)."""
        if self.dump_path.exists():
            shutil.rmtree(self.dump_path)
