#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════
  PostgreSQL → PostgreSQL Migration Tool
═══════════════════════════════════════════════════════════════

  CLI that automates the full migration pipeline:
    1. Discover user databases on the source server
    2. Migrate global objects (roles, tablespaces)
    3. Switch the target to fast-restore settings
    4. pg_dump / pg_restore every database in parallel
    5. Verify tables and row counts, then revert target settings

  Interrupted runs resume where they stopped.

  Usage:
    pip install -e .
    python migrate.py --init     # Create config file (optional)
    python migrate.py --config migration_config.json --dry-run
    python migrate.py --from-host old-db --to-host new-db -p 4 -j 4

═══════════════════════════════════════════════════════════════
"""

from pg2pg.cli import entrypoint

if __name__ == "__main__":
    entrypoint()
