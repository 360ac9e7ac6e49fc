"""
Fast-restore tuning of the target server.

Durability settings are relaxed for the duration of the restore and put
back afterwards. The original values are captured (and persisted) before
anything is changed, so revert restores exactly what was there.
"""

from contextlib import contextmanager
from dataclasses import dataclass

import psycopg2
from rich.markup import escape
from rich.panel import Panel

from pg2pg import console
from pg2pg import db
from pg2pg.errors import TuningError
from pg2pg.state import TUNING_CAPTURED, TUNING_APPLIED, TUNING_REVERTED

FAST_RESTORE_SETTINGS = {
    "fsync": "off",
    "synchronous_commit": "off",
    "full_page_writes": "off",
    "maintenance_work_mem": "2GB",
    "checkpoint_completion_target": "0.9",
    "max_wal_size": "16GB",
}

CAPTURE_SQL = """
    SELECT name, current_setting(name), source, sourcefile
    FROM pg_settings
    WHERE name = ANY(%s)
"""

AUTO_CONF = "postgresql.auto.conf"


@dataclass(frozen=True)
class OriginalSetting:
    value: str
    source: str
    reset: bool = False  # revert with ALTER SYSTEM RESET instead of SET


class TuningProfile:
    """Original values of every tunable, captured before mutation."""

    def __init__(self, settings: dict):
        self.settings = dict(settings)

    def __eq__(self, other):
        return isinstance(other, TuningProfile) and self.settings == other.settings

    def __repr__(self):
        return f"TuningProfile({self.settings!r})"

    def to_dict(self) -> dict:
        return {
            name: {"value": s.value, "source": s.source, "reset": s.reset}
            for name, s in self.settings.items()
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TuningProfile":
        if not data:
            raise TuningError("stored tuning profile is empty")
        try:
            return cls({
                name: OriginalSetting(str(item["value"]), str(item["source"]), bool(item.get("reset", False)))
                for name, item in data.items()
            })
        except (KeyError, TypeError, AttributeError) as e:
            raise TuningError(f"stored tuning profile is malformed: {e}") from e


class TuningOutcome:
    def __init__(self, status: str = "not-applied"):
        self.status = status
        self.profile = None
        self.error = None

    @property
    def unsafe(self) -> bool:
        """True while the target may still run with relaxed durability."""
        return self.status in ("applied", "revert-failed")


def _needs_reset(source: str, sourcefile) -> bool:
    # Values that did not come from postgresql.auto.conf are restored by
    # removing our ALTER SYSTEM override.
    if source == "configuration file":
        return bool(sourcefile) and not str(sourcefile).endswith(AUTO_CONF)
    return True


class ServerTuner:
    def __init__(self, target, settings: dict = None):
        self.target = target
        self.settings = dict(settings or FAST_RESTORE_SETTINGS)

    def capture(self) -> TuningProfile:
        """Read the current value of every tunable."""
        try:
            rows = db.fetch_all(self.target, CAPTURE_SQL, (list(self.settings),))
        except psycopg2.Error as e:
            raise TuningError(f"Cannot read current settings on target: {str(e).strip()}") from e

        captured = {}
        for name, value, source, sourcefile in rows:
            captured[name] = OriginalSetting(
                value=value,
                source=source,
                reset=_needs_reset(source, sourcefile),
            )
        missing = [name for name in self.settings if name not in captured]
        if missing:
            raise TuningError(f"Target does not know settings: {', '.join(missing)}")
        return TuningProfile({name: captured[name] for name in self.settings})

    def apply(self, profile: TuningProfile):
        """Switch the target to the fast-restore values."""
        statements = [
            (f"ALTER SYSTEM SET {name} TO %s", (value,))
            for name, value in self.settings.items()
            if name in profile.settings
        ]
        statements.append(("SELECT pg_reload_conf()", None))
        db.execute(self.target, statements)

    def apply_fast_restore(self) -> TuningProfile:
        """Capture originals, then apply; undo a partial apply before failing."""
        profile = self.capture()
        try:
            self.apply(profile)
        except psycopg2.Error as e:
            self._try_revert(profile, TuningOutcome())
            raise TuningError(f"Cannot apply fast-restore settings: {str(e).strip()}") from e
        return profile

    def revert(self, profile: TuningProfile):
        """Write the captured originals back."""
        statements = []
        for name, original in profile.settings.items():
            if original.reset:
                statements.append((f"ALTER SYSTEM RESET {name}", None))
            else:
                statements.append((f"ALTER SYSTEM SET {name} TO %s", (original.value,)))
        statements.append(("SELECT pg_reload_conf()", None))
        db.execute(self.target, statements)

    def _try_revert(self, profile: TuningProfile, outcome: TuningOutcome) -> bool:
        try:
            self.revert(profile)
        except (psycopg2.Error, OSError) as e:
            outcome.status = "revert-failed"
            outcome.error = e
            console.print(
                Panel(
                    "[bold red]⚠ Could not revert fast-restore settings on the target![/bold red]\n"
                    f"[red]{escape(str(e).strip())}[/red]\n\n"
                    "The target is still running with fsync/full_page_writes off.\n"
                    "Re-run the migration to retry the revert, or run on the target:\n"
                    + "\n".join(f"  [cyan]ALTER SYSTEM RESET {name};[/cyan]" for name in profile.settings)
                    + "\n  [cyan]SELECT pg_reload_conf();[/cyan]",
                    border_style="red",
                    padding=(1, 2),
                )
            )
            return False
        outcome.status = "reverted"
        return True

    def _captured_profile(self, store) -> TuningProfile:
        if store.is_complete(TUNING_CAPTURED):
            return TuningProfile.from_dict(store.metadata(TUNING_CAPTURED).get("profile"))
        profile = self.capture()
        store.mark_complete(TUNING_CAPTURED, {"profile": profile.to_dict()})
        return profile

    @contextmanager
    def scope(self, store):
        """Hold the target in fast-restore mode for the body of the ``with``.

        Revert is attempted exactly once on every exit path. A process that
        is killed outright cannot revert; the next run finds
        ``tuning-applied`` without ``tuning-reverted`` and reverts at its end.
        """
        outcome = TuningOutcome()

        if store.is_complete(TUNING_REVERTED):
            outcome.status = "reverted"
            console.print("  [dim]Fast-restore tuning already applied and reverted by an earlier run.[/dim]")
            yield outcome
            return

        if store.is_complete(TUNING_APPLIED):
            data = store.metadata(TUNING_APPLIED).get("profile")
            if not data:
                raise TuningError(
                    "tuning-applied is recorded but no original settings were stored; "
                    "check the target's settings manually before resetting the state directory"
                )
            profile = TuningProfile.from_dict(data)
            console.print("  [dim]Fast-restore tuning already applied — reusing captured originals.[/dim]")
        else:
            profile = self._captured_profile(store)
            try:
                self.apply(profile)
            except psycopg2.Error as e:
                self._try_revert(profile, outcome)
                raise TuningError(f"Cannot apply fast-restore settings: {str(e).strip()}") from e
            store.mark_complete(TUNING_APPLIED, {"profile": profile.to_dict()})
            console.print("  [green]✓[/green] Fast-restore settings applied on target")

        outcome.profile = profile
        outcome.status = "applied"
        try:
            yield outcome
        finally:
            if self._try_revert(profile, outcome):
                console.print("  [green]✓[/green] Target settings reverted to captured originals")
                try:
                    store.mark_complete(TUNING_REVERTED, {"profile": profile.to_dict()})
                except OSError as e:
                    console.print(f"  [yellow]⚠ Could not record tuning revert:[/yellow] {e}")


@contextmanager
def tuning_disabled(status: str = "disabled"):
    """Stand-in scope when fast-restore tuning is switched off or not needed."""
    yield TuningOutcome(status=status)
