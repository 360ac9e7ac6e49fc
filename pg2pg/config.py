"""
Configuration loading, validation, and connection testing.
"""

import sys
import json
from dataclasses import dataclass, field
from pathlib import Path

import psycopg2
from rich.markup import escape
from rich.prompt import Confirm

from pg2pg import (
    console, CONFIG_FILE, DEFAULT_CONFIG, DEFAULT_JOBS, DEFAULT_MAX_PARALLEL, DEFAULT_REPORT,
    default_dump_root, default_state_dir, default_verify_dir, default_log_dir,
)
from pg2pg import db
from pg2pg.errors import ConfigError

RUNNERS = ("local", "docker")


# ═════════════════════════════════════════════════════════════
# Data classes for connection details
# ═════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PGConnection:
    host: str
    port: int
    user: str
    password: str
    database: str

    def __post_init__(self):
        for name in ("host", "user", "database"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"{name} must be a non-empty string")
        if self.password is None or not isinstance(self.password, str):
            raise ConfigError("password must be a string")
        try:
            port = int(self.port)
        except (TypeError, ValueError):
            raise ConfigError(f"port must be a number, got: {self.port!r}")
        if not (1 <= port <= 65535):
            raise ConfigError(f"port must be between 1 and 65535, got: {port}")
        object.__setattr__(self, "port", port)

    @property
    def docker_host(self) -> str:
        """Host to use from inside Docker containers."""
        if self.host in ("localhost", "127.0.0.1"):
            return "host.docker.internal"
        return self.host

    @property
    def safe_uri(self) -> str:
        return f"postgresql://{self.user}:****@{self.host}:{self.port}/{self.database}"

    def __repr__(self):
        return f"PGConnection({self.safe_uri})"


@dataclass
class MigrationSettings:
    source: PGConnection
    target: PGConnection
    jobs: int = DEFAULT_JOBS
    max_parallel: int = DEFAULT_MAX_PARALLEL
    dump_jobs: int = None
    restore_jobs: int = None
    dump_root: Path = field(default_factory=default_dump_root)
    migrate_globals: bool = True
    tuning: bool = True
    runner: str = "local"
    cleanup_dumps: bool = False
    state_dir: Path = field(default_factory=default_state_dir)
    verify_dir: Path = field(default_factory=default_verify_dir)
    log_dir: Path = field(default_factory=default_log_dir)
    report_path: Path = Path(DEFAULT_REPORT)
    verbose: bool = False

    def __post_init__(self):
        # Unset per-utility worker counts follow --jobs
        if self.dump_jobs is None:
            self.dump_jobs = self.jobs
        if self.restore_jobs is None:
            self.restore_jobs = self.jobs
        for name in ("jobs", "max_parallel", "dump_jobs", "restore_jobs"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"{name} must be an integer >= 1, got: {value!r}")
        if self.runner not in RUNNERS:
            raise ConfigError(f"runner must be one of {', '.join(RUNNERS)}, got: {self.runner!r}")
        self.dump_root = Path(self.dump_root).expanduser().resolve()
        self.state_dir = Path(self.state_dir)
        self.verify_dir = Path(self.verify_dir)
        self.log_dir = Path(self.log_dir)
        self.report_path = Path(self.report_path)


# ═════════════════════════════════════════════════════════════
# Configuration file functions
# ═════════════════════════════════════════════════════════════

def init_config(path: Path = CONFIG_FILE):
    """Create a fresh migration_config.json with defaults."""
    if path.exists():
        console.print(f"  [yellow]⚠ Config file already exists:[/yellow] {path}")
        if not Confirm.ask("  Overwrite?", default=False):
            console.print("  [dim]Skipped. Edit the existing file manually.[/dim]")
            return

    try:
        path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    except PermissionError:
        console.print(
            f"\n[red]✗ Permission denied:[/red] Cannot write to {path}\n"
            "  Try running with appropriate permissions or check directory ownership.\n"
        )
        sys.exit(1)
    except OSError as e:
        console.print(
            f"\n[red]✗ Failed to create config file:[/red] {e}\n"
            "  Check disk space and directory permissions.\n"
        )
        sys.exit(1)

    console.print(f"  [green]✓[/green] Created [bold]{path}[/bold]")
    console.print("  [dim]Edit the file with your source/target credentials, then run:[/dim]")
    console.print(f"  [cyan]python migrate.py --config {path.name}[/cyan]\n")


def load_config(path: Path) -> dict:
    """Load and validate a migration config file.

    Returns a flat dict of option names matching the CLI flags
    (``from_host``, ``to_port``, ``jobs`` ...). Exits with status 1 after
    printing every problem found.
    """
    if not path.exists():
        console.print(
            f"\n[red]✗ Config file not found:[/red] {path}\n"
            "  Run [cyan]python migrate.py --init[/cyan] to create it.\n"
        )
        sys.exit(1)

    try:
        raw = path.read_text()
    except PermissionError:
        console.print(
            f"\n[red]✗ Permission denied:[/red] Cannot read {path}\n"
            f"  Check file permissions: [dim]ls -la {path.name}[/dim]\n"
        )
        sys.exit(1)
    except OSError as e:
        console.print(f"\n[red]✗ Cannot read config file:[/red] {e}")
        sys.exit(1)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(
            f"\n[red]✗ Invalid JSON in {path.name}:[/red]\n"
            f"  {e}\n\n"
            "  [dim]Common issues: trailing commas, missing quotes, unescaped characters.[/dim]\n"
        )
        sys.exit(1)

    if not isinstance(data, dict):
        console.print(
            f"\n[red]✗ Config file must contain a JSON object,[/red] got {type(data).__name__}\n"
            "  [dim]Expected format: {{\"source\": {{...}}, \"target\": {{...}}}}[/dim]\n"
        )
        sys.exit(1)

    errors = []
    values = {}

    for section, prefix in (("source", "from"), ("target", "to")):
        block = data.get(section)
        if block is None:
            errors.append(f"{section} — section missing")
            continue
        if not isinstance(block, dict):
            errors.append(f"{section} — must be a JSON object, got {type(block).__name__}")
            continue
        for key, flag in (("host", "host"), ("port", "port"), ("user", "user"),
                          ("password", "pass"), ("database", "db")):
            if key not in block:
                errors.append(f"{section}.{key} — field missing")
                continue
            value = block[key]
            if value is None or (isinstance(value, str) and key != "password" and not value.strip()):
                errors.append(f"{section}.{key} — value is empty")
                continue
            if key == "port":
                try:
                    value = int(value)
                except (ValueError, TypeError):
                    errors.append(f"{section}.port — must be a number, got: \"{value}\"")
                    continue
                if not (1 <= value <= 65535):
                    errors.append(f"{section}.port — must be between 1 and 65535, got: {value}")
                    continue
            elif key == "password":
                value = str(value)
                if value.startswith("YOUR_") and value.endswith("_PASSWORD"):
                    errors.append(f"{section}.password — still has placeholder value \"{value}\"")
                    continue
            else:
                value = str(value).strip()
            values[f"{prefix}_{flag}"] = value

    options = data.get("options", {})
    if not isinstance(options, dict):
        errors.append(f"options — must be a JSON object, got {type(options).__name__}")
        options = {}
    for key in ("jobs", "max_parallel", "dump_jobs", "restore_jobs"):
        if key in options:
            value = options[key]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                errors.append(f"options.{key} — must be an integer >= 1, got: {value!r}")
            else:
                values[key] = value
    for key in ("migrate_globals", "tuning", "cleanup_dumps"):
        if key in options:
            if not isinstance(options[key], bool):
                errors.append(f"options.{key} — must be true or false, got: {options[key]!r}")
            else:
                values[key] = options[key]
    if "runner" in options:
        if options["runner"] not in RUNNERS:
            errors.append(f"options.runner — must be one of {', '.join(RUNNERS)}, got: {options['runner']!r}")
        else:
            values["runner"] = options["runner"]
    if "dump_root" in options:
        values["dump_root"] = str(options["dump_root"])

    if errors:
        console.print(f"\n[red]✗ Config validation failed ({len(errors)} issue{'s' if len(errors) > 1 else ''}):[/red]")
        for err in errors:
            console.print(f"  [yellow]•[/yellow] {err}")
        console.print(f"\n  [dim]Edit {path.name} and fix the issues above.[/dim]\n")
        sys.exit(1)

    return values


# ═════════════════════════════════════════════════════════════
# Connectivity check
# ═════════════════════════════════════════════════════════════

def test_connection(config: PGConnection, label: str = "PostgreSQL") -> bool:
    """Test connectivity to a server before proceeding."""
    try:
        conn = db.connect(config)
        conn.close()
        return True
    except psycopg2.Error as e:
        error_msg = str(e).strip()
        lowered = error_msg.lower()

        console.print(f"\n  [red]✗ {label} connection failed:[/red] {escape(error_msg)}")

        if "password authentication failed" in lowered or "no password supplied" in lowered:
            console.print(
                "\n  [yellow]Troubleshooting:[/yellow]\n"
                f"    • Authentication failed for user [cyan]{config.user}[/cyan]\n"
                "    • Check the password flag or the config file\n"
                "    • Check pg_hba.conf allows this host and auth method"
            )
        elif "could not translate host name" in lowered:
            console.print(
                "\n  [yellow]Troubleshooting:[/yellow]\n"
                f"    • Cannot resolve hostname [cyan]{config.host}[/cyan]\n"
                "    • Try using an IP address instead"
            )
        elif "does not exist" in lowered:
            console.print(
                "\n  [yellow]Troubleshooting:[/yellow]\n"
                f"    • Database or role in [cyan]{config.safe_uri}[/cyan] does not exist\n"
                "    • The initial database is usually [dim]postgres[/dim]"
            )
        elif "could not connect" in lowered or "connection refused" in lowered or "timeout" in lowered:
            console.print(
                "\n  [yellow]Troubleshooting:[/yellow]\n"
                f"    1. Is PostgreSQL running on [cyan]{config.host}:{config.port}[/cyan]?\n"
                "    2. Check: [dim]pg_isready -h HOST -p PORT[/dim]\n"
                "    3. listen_addresses in postgresql.conf must include this interface"
            )
        console.print("")
        return False
