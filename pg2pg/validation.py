"""
Validation: compare table sets and exact row counts between source and target.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

import psycopg2
from rich.markup import escape
from rich.table import Table
from rich import box

from pg2pg import console
from pg2pg import db

TABLES_SQL = """
    SELECT table_schema, table_name
    FROM information_schema.tables
    WHERE table_type = 'BASE TABLE'
      AND table_schema NOT IN ('pg_catalog', 'information_schema')
    ORDER BY table_schema, table_name
"""


@dataclass(frozen=True)
class TableCount:
    source_rows: int
    target_rows: int

    @property
    def match(self) -> bool:
        return self.source_rows is not None and self.source_rows == self.target_rows


@dataclass
class VerificationReport:
    database: str
    tables: dict = field(default_factory=dict)
    missing_on_target: list = field(default_factory=list)
    extra_on_target: list = field(default_factory=list)
    error: str = None

    @property
    def mismatched(self) -> list[str]:
        return [name for name, count in self.tables.items() if not count.match]

    @property
    def verified(self) -> bool:
        return (
            self.error is None
            and not self.missing_on_target
            and not self.extra_on_target
            and not self.mismatched
        )

    @property
    def total_rows(self) -> int:
        return sum(c.source_rows for c in self.tables.values() if c.source_rows is not None)

    def to_dict(self) -> dict:
        return {
            "database": self.database,
            "verified": self.verified,
            "tables": {
                name: {"source": c.source_rows, "target": c.target_rows, "match": c.match}
                for name, c in self.tables.items()
            },
            "missing_on_target": list(self.missing_on_target),
            "extra_on_target": list(self.extra_on_target),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationReport":
        return cls(
            database=data["database"],
            tables={
                name: TableCount(item.get("source"), item.get("target"))
                for name, item in (data.get("tables") or {}).items()
            },
            missing_on_target=list(data.get("missing_on_target") or []),
            extra_on_target=list(data.get("extra_on_target") or []),
            error=data.get("error"),
        )


def get_pg_tables(config, dbname: str) -> list[str]:
    """Schema-qualified base tables of one database."""
    try:
        rows = db.fetch_all(config, TABLES_SQL, dbname=dbname)
    except psycopg2.Error as e:
        raise RuntimeError(
            f"Cannot list tables of {dbname} on {config.host}:{config.port}: {str(e).strip()}"
        )
    return [f"{schema}.{table}" for schema, table in rows]


def get_row_counts(config, dbname: str, tables: list[str]) -> dict[str, int]:
    """Exact ``count(*)`` for every table; None where counting failed."""
    try:
        conn = db.connect(config, dbname=dbname)
    except psycopg2.Error as e:
        raise RuntimeError(
            f"Cannot connect to {dbname} on {config.host}:{config.port} for row counts: {str(e).strip()}"
        )

    try:
        cursor = conn.cursor()
        counts = {}
        for qualified in tables:
            schema, table = qualified.split(".", 1)
            try:
                cursor.execute(f"SELECT count(*) FROM {db.quote_ident(schema)}.{db.quote_ident(table)}")
                counts[qualified] = cursor.fetchone()[0]
            except psycopg2.Error as e:
                console.print(
                    f"  [yellow]⚠ Could not count rows in {escape(dbname)}.{escape(qualified)}:[/yellow] "
                    f"{escape(str(e).strip())}"
                )
                conn.rollback()  # Reset transaction state after error
                counts[qualified] = None
        return counts
    finally:
        conn.close()


class Verifier:
    def __init__(self, source, target, verify_dir: Path = None, verbose: bool = False):
        self.source = source
        self.target = target
        self.verify_dir = Path(verify_dir) if verify_dir else None
        self.verbose = verbose

    def verify(self, database: str) -> VerificationReport:
        """Compare one database. Errors are reported, never retried."""
        report = VerificationReport(database=database)
        try:
            source_tables = get_pg_tables(self.source, database)
            target_tables = get_pg_tables(self.target, database)

            report.missing_on_target = sorted(set(source_tables) - set(target_tables))
            report.extra_on_target = sorted(set(target_tables) - set(source_tables))

            if not report.missing_on_target and not report.extra_on_target:
                source_counts = get_row_counts(self.source, database, source_tables)
                target_counts = get_row_counts(self.target, database, source_tables)
                for name in source_tables:
                    report.tables[name] = TableCount(source_counts.get(name), target_counts.get(name))
        except RuntimeError as e:
            report.error = str(e)

        self._save(report)
        render_report(report, verbose=self.verbose)
        return report

    def _save(self, report: VerificationReport):
        if not self.verify_dir:
            return
        try:
            self.verify_dir.mkdir(parents=True, exist_ok=True)
            path = self.verify_dir / f"{quote(report.database, safe='')}.json"
            path.write_text(json.dumps(report.to_dict(), indent=2) + "\n")
        except OSError as e:
            console.print(f"  [yellow]⚠ Could not save verification report:[/yellow] {escape(str(e))}")


def render_report(report: VerificationReport, verbose: bool = False):
    """Print a verification report the way the summary expects to see it."""
    database = escape(report.database)
    if report.error:
        console.print(f"  [red]✗ {database}: verification error:[/red] {escape(report.error)}")
        return

    if verbose or not report.verified:
        table = Table(title=f"Verification for {database}", box=box.ROUNDED, show_lines=False, pad_edge=True)
        table.add_column("Table", style="cyan", min_width=20)
        table.add_column("Source Rows", justify="right", style="yellow")
        table.add_column("Target Rows", justify="right", style="green")
        table.add_column("Status", justify="center")

        for name in report.missing_on_target:
            table.add_row(escape(name), "?", "[red]MISSING[/red]", "[red]✗ MISSING[/red]")
        for name in report.extra_on_target:
            table.add_row(escape(name), "[red]MISSING[/red]", "?", "[yellow]? EXTRA[/yellow]")
        for name, count in report.tables.items():
            status = "[green]✓ OK[/green]" if count.match else "[red]✗ MISMATCH[/red]"
            table.add_row(
                escape(name),
                "-" if count.source_rows is None else f"{count.source_rows:,}",
                "-" if count.target_rows is None else f"{count.target_rows:,}",
                status,
            )
        console.print(table)

    if report.verified:
        console.print(
            f"  [green]✓[/green] Verified {database}: "
            f"{len(report.tables)} tables, {report.total_rows:,} rows match"
        )
    else:
        problems = len(report.missing_on_target) + len(report.extra_on_target) + len(report.mismatched)
        console.print(f"  [red]✗ {database}: {problems} table(s) differ between source and target[/red]")
