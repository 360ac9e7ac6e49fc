"""
═══════════════════════════════════════════════════════════════
  PostgreSQL → PostgreSQL Migration Tool (pg2pg)
═══════════════════════════════════════════════════════════════
"""

import os
from pathlib import Path
from rich.console import Console

# ═════════════════════════════════════════════════════════════
# Shared console instance
# ═════════════════════════════════════════════════════════════

console = Console()

# ═════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════

SCRIPT_DIR = Path(__file__).parent.parent.resolve()
CONFIG_FILE = SCRIPT_DIR / "migration_config.json"
DEFAULT_REPORT = "migration_report.html"

PG_CLIENT_IMAGE = "postgres:16-alpine"
PG_UTILITIES = ("psql", "pg_dumpall", "pg_dump", "pg_restore")

# Never migrated: server bootstrap databases.
SYSTEM_DATABASES = ("postgres", "template0", "template1")

DEFAULT_JOBS = 4
DEFAULT_MAX_PARALLEL = 4
DUMP_COMPRESSION = "9"

DEFAULT_CONFIG = {
    "source": {
        "host": "localhost",
        "port": 5432,
        "user": "postgres",
        "password": "YOUR_SOURCE_PASSWORD",
        "database": "postgres",
    },
    "target": {
        "host": "localhost",
        "port": 5433,
        "user": "postgres",
        "password": "YOUR_TARGET_PASSWORD",
        "database": "postgres",
    },
    "options": {
        "jobs": DEFAULT_JOBS,
        "max_parallel": DEFAULT_MAX_PARALLEL,
        "migrate_globals": True,
        "tuning": True,
        "runner": "local",
    },
}


def home() -> Path:
    """Home directory that anchors dumps, state markers and reports."""
    value = os.environ.get("HOME")
    return Path(value) if value else Path.home()


def default_dump_root() -> Path:
    return home() / "pg_dumps"


def default_state_dir() -> Path:
    return home() / "pg_migrate_state"


def default_verify_dir() -> Path:
    return home() / "pg_verify_state"


def default_log_dir() -> Path:
    return home() / "pg_migrate_logs"
