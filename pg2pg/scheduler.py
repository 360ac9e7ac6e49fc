"""
Parallel scheduler: run one migration per database on a fixed-size worker
pool. At most ``max_parallel`` databases are in flight at any moment; each
of them may additionally run ``jobs`` workers inside pg_dump/pg_restore.
"""

from concurrent import futures

from rich.markup import escape

from pg2pg import console
from pg2pg.database import DatabaseResult


def run_parallel(names, migrate_one, max_parallel: int) -> dict:
    """Call ``migrate_one(name)`` for every name with bounded concurrency.

    Every database reaches a terminal state: a failure (returned or raised)
    never cancels its siblings. Returns ``{name: DatabaseResult}`` in the
    order of ``names``. A KeyboardInterrupt cancels every database that has
    not started yet and propagates.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    names = list(names)
    results = {}
    if not names:
        return results

    with futures.ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix="pg2pg") as executor:
        future_name_map = {executor.submit(migrate_one, name): name for name in names}

        try:
            for future in futures.as_completed(future_name_map):
                name = future_name_map[future]
                try:
                    result = future.result()
                except Exception as e:
                    console.print(f"  [red]✗ Unexpected error migrating {escape(name)}:[/red] {escape(str(e))}")
                    result = DatabaseResult(name, False, error=f"{type(e).__name__}: {e}", step="unexpected")
                results[name] = result
        except BaseException:
            # Ctrl-C: queued databases never start; running ones finish or die with their utility
            cancelled = sum(1 for future in future_name_map if future.cancel())
            if cancelled:
                console.print(f"  [yellow]⚠ Interrupted — {cancelled} queued database(s) not started[/yellow]")
            raise

    return {name: results[name] for name in names}
