"""
Global objects (roles, tablespaces): dump from source, drop the statements
touching the migration user's own role, apply to target.
"""

import re
from pathlib import Path

from rich.markup import escape

from pg2pg import console
from pg2pg.errors import CommandError, GlobalsError
from pg2pg.runner import dbname_arg, password_env
from pg2pg.state import GLOBALS

ROLE_STATEMENT_RE = re.compile(
    r'^\s*(?:CREATE|ALTER|DROP)\s+ROLE\s+(?:IF\s+EXISTS\s+)?("(?:[^"]|"")+"|[^\s;]+)',
    re.IGNORECASE,
)

# psql stderr lines that are expected when replaying globals on a live server
IGNORED_STDERR = (
    "already exists",
    "MD5-encrypted password",
    "MD5 password support is deprecated",
    "Refer to the PostgreSQL documentation",
)


def statement_role(line: str):
    """Role a CREATE/ALTER/DROP ROLE line acts on, or None for any other line."""
    match = ROLE_STATEMENT_RE.match(line)
    if not match:
        return None
    ident = match.group(1)
    if ident.startswith('"'):
        return ident[1:-1].replace('""', '"')
    return ident.lower()


def filter_globals_script(script: str, role: str) -> tuple[str, list[str]]:
    """Remove statements that would create, alter or drop ``role``.

    Matching is on the exact role identifier the statement acts on, so a
    role whose name merely contains ``role`` (or a statement that mentions
    it as a value) is kept. Every other line is preserved verbatim.
    Returns ``(filtered_script, removed_lines)``.
    """
    kept = []
    removed = []
    for line in script.splitlines(keepends=True):
        if statement_role(line) == role:
            removed.append(line.rstrip("\n"))
            continue
        kept.append(line)
    return "".join(kept), removed


def _interesting_stderr(stderr: str) -> list[str]:
    lines = []
    for line in stderr.splitlines():
        if not line.strip():
            continue
        if any(marker in line for marker in IGNORED_STDERR):
            continue
        lines.append(line)
    return lines


class GlobalsMigrator:
    def __init__(self, source, target, runner, dump_root: Path, store):
        self.source = source
        self.target = target
        self.runner = runner
        self.dump_root = Path(dump_root)
        self.store = store

    @property
    def dump_path(self) -> Path:
        return self.dump_root / "globals.sql"

    @property
    def filtered_path(self) -> Path:
        return self.dump_root / "globals.filtered.sql"

    def dump_command(self) -> list[str]:
        return [
            "pg_dumpall",
            "-h", self.runner.host_for(self.source),
            "-p", str(self.source.port),
            "-U", self.source.user,
            "-l", dbname_arg(self.source.database),
            "--globals-only",
            "-f", str(self.dump_path),
        ]

    def apply_command(self) -> list[str]:
        return [
            "psql",
            "-h", self.runner.host_for(self.target),
            "-p", str(self.target.port),
            "-U", self.target.user,
            "-d", dbname_arg(self.target.database),
            "-X", "-q",
            "-f", str(self.filtered_path),
        ]

    def run(self) -> bool:
        """Migrate global objects. Returns False when skipped as already done."""
        if self.store.is_complete(GLOBALS):
            console.print("  [dim]Global objects already migrated — skipping.[/dim]")
            return False

        try:
            self.dump_root.mkdir(parents=True, exist_ok=True)
            self.runner.run(self.dump_command(), env=password_env(self.source)).check("pg_dumpall --globals-only")
            script = self.dump_path.read_text()
        except CommandError as e:
            raise GlobalsError(f"Dumping global objects failed: {e}") from e
        except OSError as e:
            raise GlobalsError(f"Cannot read globals dump {self.dump_path}: {e}") from e

        filtered, removed = filter_globals_script(script, self.target.user)
        for line in removed:
            console.print(
                f"  [dim]Skipping statement for role '{escape(self.target.user)}' "
                f"to avoid overwriting the migration user:[/dim] {escape(line[:80])}"
            )

        try:
            self.filtered_path.write_text(filtered)
        except OSError as e:
            raise GlobalsError(f"Cannot write {self.filtered_path}: {e}") from e

        result = self.runner.run(self.apply_command(), env=password_env(self.target))
        try:
            result.check("psql (apply globals)")
        except CommandError as e:
            raise GlobalsError(f"Applying global objects failed: {e}") from e

        warnings = _interesting_stderr(result.stderr)
        if warnings:
            console.print("  [yellow]⚠ psql restored globals with some errors:[/yellow]")
            for line in warnings:
                console.print(f"    [dim]{escape(line)}[/dim]")

        self.store.mark_complete(GLOBALS, {
            "script": str(self.filtered_path),
            "skipped_statements": len(removed),
        })
        console.print("  [green]✓[/green] Global objects migrated")
        return True
