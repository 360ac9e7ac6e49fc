"""
Thin psycopg2 helpers shared by discovery, tuning, verification and
database creation.
"""

import psycopg2

CONNECT_TIMEOUT = 10


def connect(config, dbname: str = None, autocommit: bool = False):
    """Open a connection to ``dbname`` (default: the config's initial database)."""
    conn = psycopg2.connect(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        dbname=dbname or config.database,
        connect_timeout=CONNECT_TIMEOUT,
        application_name="pg2pg",
    )
    if autocommit:
        conn.autocommit = True
    return conn


def fetch_all(config, sql, params=None, dbname: str = None) -> list[tuple]:
    """Run one query and return every row."""
    conn = connect(config, dbname=dbname)
    try:
        cursor = conn.cursor()
        cursor.execute(sql, params)
        return cursor.fetchall()
    finally:
        conn.close()


def execute(config, statements, dbname: str = None):
    """Run statements in autocommit mode (needed for ALTER SYSTEM / CREATE DATABASE).

    ``statements`` is a list of ``(sql, params)`` pairs.
    """
    conn = connect(config, dbname=dbname, autocommit=True)
    try:
        cursor = conn.cursor()
        for sql, params in statements:
            cursor.execute(sql, params)
    finally:
        conn.close()


def quote_ident(name: str) -> str:
    """Quote an identifier for interpolation into DDL."""
    return '"' + name.replace('"', '""') + '"'
