"""
Discovery: list the user databases on the source server.
"""

from dataclasses import dataclass

import psycopg2

from pg2pg import SYSTEM_DATABASES
from pg2pg import db
from pg2pg.errors import DiscoveryError


@dataclass(frozen=True)
class DatabaseInfo:
    name: str
    size_bytes: int = 0


DISCOVERY_SQL = """
    SELECT datname, pg_database_size(datname) AS size
    FROM pg_database
    WHERE datallowconn
      AND NOT datistemplate
      AND datname <> ALL(%s)
    ORDER BY size ASC, datname ASC
"""


def discover_databases(source) -> list[DatabaseInfo]:
    """Return the source's user databases, smallest first.

    Any connection or query failure is fatal: nothing downstream can run
    without the database list.
    """
    try:
        rows = db.fetch_all(source, DISCOVERY_SQL, (list(SYSTEM_DATABASES),))
    except psycopg2.Error as e:
        raise DiscoveryError(
            f"Cannot list databases on {source.safe_uri}: {str(e).strip()}"
        ) from e

    databases = []
    for name, size in rows:
        if name in SYSTEM_DATABASES:
            continue
        databases.append(DatabaseInfo(name=name, size_bytes=max(int(size or 0), 0)))
    return databases
