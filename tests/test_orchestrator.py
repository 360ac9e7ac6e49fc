import pytest

from pg2pg.database import DatabaseMigrator
from pg2pg.orchestrator import MigrationOrchestrator
from pg2pg.state import (
    StateStore, db_key,
    PREPARED, DISCOVERED, GLOBALS, TUNING_CAPTURED, TUNING_APPLIED, TUNING_REVERTED,
    DATABASES_CREATED, DATABASES_MIGRATED, VERIFIED, DONE,
)
from pg2pg.tuning import ServerTuner
from pg2pg.validation import Verifier

from fakes import SOURCE_HOST, TARGET_HOST


class RecordingTuner(ServerTuner):
    def __init__(self, target):
        super().__init__(target)
        self.captures = 0
        self.applied = []
        self.reverted = []

    def capture(self):
        self.captures += 1
        return super().capture()

    def apply(self, profile):
        self.applied.append(profile)
        super().apply(profile)

    def revert(self, profile):
        self.reverted.append(profile)
        super().revert(profile)


@pytest.fixture
def make_orchestrator(settings, runner, pg):
    def make(**kwargs):
        kwargs.setdefault("tuner", RecordingTuner(settings.target))
        return MigrationOrchestrator(settings, runner, **kwargs)
    return make


@pytest.fixture
def three_dbs(pg):
    pg.add_database("alpha", {"public.t": 100, "public.u": 7}, size=300)
    pg.add_database("beta", {"public.t": 50}, size=200)
    pg.add_database("gamma", {"sales.orders": 1000}, size=100)
    return ["gamma", "beta", "alpha"]


class TestFullRun:
    def test_reaches_done_with_every_database_verified(self, make_orchestrator, pg, runner, settings, three_dbs):
        before = pg.current_settings()
        tuner = RecordingTuner(settings.target)

        summary = make_orchestrator(tuner=tuner).run()

        assert summary.state == "done"
        assert summary.exit_code == 0
        assert summary.fully_verified
        assert list(summary.databases) == three_dbs
        assert summary.tuning_status == "reverted"
        assert pg.current_settings() == before
        assert len(tuner.reverted) == 1
        assert tuner.reverted[0] == tuner.applied[0]

        store = StateStore(settings.state_dir)
        for key in (PREPARED, DISCOVERED, GLOBALS, TUNING_CAPTURED, TUNING_APPLIED,
                    DATABASES_CREATED, DATABASES_MIGRATED, VERIFIED, TUNING_REVERTED, DONE):
            assert store.is_complete(key), key

    def test_ordering_globals_then_tuning_then_databases(self, make_orchestrator, pg, runner, three_dbs):
        make_orchestrator().run()

        tools = [c[0] for c in runner.commands]
        assert tools[:2] == ["pg_dumpall", "psql"]
        assert sorted(tools[2:]) == sorted(["pg_dump", "pg_restore"] * 3)

        statements = [s for h, _, s, _ in pg.statements if h == TARGET_HOST]
        first_set = statements.index("ALTER SYSTEM SET fsync TO %s")
        first_create = next(i for i, s in enumerate(statements) if s.startswith("CREATE DATABASE"))
        first_reset = statements.index("ALTER SYSTEM RESET fsync")
        last_count = max(i for i, s in enumerate(statements) if s.startswith("SELECT count(*) FROM"))
        assert first_set < first_create < last_count < first_reset

    def test_seeded_cluster_end_to_end(self, settings, pg, runner):
        pg.seed(count=10, tables_per_db=10, rows=1_000_000)
        runner.delay = 0.01
        before = pg.current_settings()

        summary = MigrationOrchestrator(settings, runner).run()

        assert summary.state == "done"
        assert summary.count("verified") == 10
        assert all(d.report.total_rows == 10_000_000 for d in summary.databases.values())
        assert summary.tuning_status == "reverted"
        assert pg.current_settings() == before
        assert runner.max_in_flight <= settings.max_parallel
        assert {c[c.index("-j") + 1] for c in runner.calls("pg_dump")} == {"4"}

    def test_dump_and_restore_jobs_reach_the_utilities(self, settings, runner, pg, three_dbs):
        settings.dump_jobs = 6
        settings.restore_jobs = 2

        MigrationOrchestrator(settings, runner).run()

        assert {c[c.index("-j") + 1] for c in runner.calls("pg_dump")} == {"6"}
        assert {c[c.index("-j") + 1] for c in runner.calls("pg_restore")} == {"2"}

    def test_no_databases(self, make_orchestrator, pg, runner):
        summary = make_orchestrator().run()

        assert summary.state == "done"
        assert summary.databases == {}
        assert runner.commands == []
        assert not pg.sql("ALTER SYSTEM")

    def test_globals_and_tuning_can_be_disabled(self, settings, runner, pg, three_dbs):
        settings.migrate_globals = False
        settings.tuning = False

        summary = MigrationOrchestrator(settings, runner).run()

        assert summary.fully_verified
        assert summary.tuning_status == "disabled"
        assert runner.calls("pg_dumpall") == []
        assert not pg.sql("ALTER SYSTEM")

    def test_cleanup_dumps_after_verification(self, settings, runner, pg, three_dbs):
        settings.cleanup_dumps = True

        MigrationOrchestrator(settings, runner).run()

        assert [p.name for p in settings.dump_root.iterdir() if p.is_dir()] == []


class TestIdempotence:
    def test_second_run_does_no_work(self, make_orchestrator, pg, runner, three_dbs):
        first = make_orchestrator().run()
        assert first.fully_verified
        runner.commands.clear()
        pg.statements.clear()

        orchestrator = make_orchestrator()
        second = orchestrator.run()
        tuner = orchestrator.tuner

        assert second.state == "done"
        assert second.fully_verified
        assert runner.commands == []
        assert pg.statements == []
        assert tuner.captures == 0
        assert tuner.reverted == []


class TestResume:
    def test_killed_after_create_before_dump(self, make_orchestrator, settings, pg, runner, three_dbs):
        """Simulates a kill after gamma was created on target but before it was dumped."""
        tuner = RecordingTuner(settings.target)
        profile = tuner.capture()
        tuner.apply(profile)
        tuner.captures, tuner.applied = 0, []

        store = StateStore(settings.state_dir)
        store.mark_complete(PREPARED)
        store.mark_complete(DISCOVERED, {"databases": three_dbs})
        store.mark_complete(GLOBALS)
        store.mark_complete(TUNING_CAPTURED, {"profile": profile.to_dict()})
        store.mark_complete(TUNING_APPLIED, {"profile": profile.to_dict()})
        pg.add_database("gamma", host=TARGET_HOST)
        store.mark_complete(db_key("gamma", "created"))
        # pg_dump was killed halfway through
        partial = settings.dump_root / "gamma"
        partial.mkdir(parents=True)
        (partial / "4000.dat.gz").write_bytes(b"partial")
        pg.statements.clear()

        summary = make_orchestrator(tuner=tuner).run()

        assert summary.fully_verified
        assert runner.calls("pg_dumpall") == []
        assert runner.calls("psql") == []
        assert tuner.captures == 0
        assert tuner.applied == []
        assert tuner.reverted == [profile]
        assert len(runner.calls("pg_dump", database="gamma")) == 1
        assert not (partial / "4000.dat.gz").exists()
        assert 'CREATE DATABASE "gamma"' not in pg.sql("CREATE DATABASE")
        assert pg.current_settings()["fsync"] == "on"

    def test_rerun_retries_only_failed_databases(self, make_orchestrator, pg, runner, settings, three_dbs):
        runner.fail("pg_dump", database="beta", stderr="pg_dump: error: connection lost", times=1)

        first = make_orchestrator().run()

        assert first.state == "done"
        assert first.exit_code == 0
        assert first.databases["beta"].outcome == "failed"
        assert "connection lost" in first.databases["beta"].error
        assert first.count("verified") == 2
        store = StateStore(settings.state_dir)
        assert not store.is_complete(DATABASES_MIGRATED)
        assert not store.is_complete(DONE)

        runner.commands.clear()
        second = make_orchestrator().run()

        assert second.fully_verified
        assert {tuple(c[:1]) + (c[c.index("-d") + 1],) for c in runner.commands} == {
            ("pg_dump", "beta"), ("pg_restore", "beta"),
        }
        assert store.is_complete(DONE)


class TestTuningRevert:
    def test_forced_failure_mid_scheduler_reverts_once(self, settings, runner, pg, three_dbs):
        tuner = RecordingTuner(settings.target)
        before = pg.current_settings()

        class CrashingMigrator(DatabaseMigrator):
            def migrate(self):
                if self.name == "beta":
                    raise RuntimeError("worker crashed")
                return super().migrate()

        def factory(name):
            return CrashingMigrator(
                name, settings.source, settings.target, runner,
                StateStore(settings.state_dir), settings.dump_root, jobs=settings.jobs,
            )

        summary = MigrationOrchestrator(settings, runner, tuner=tuner, migrator_factory=factory).run()

        assert summary.state == "done"
        assert summary.databases["beta"].outcome == "failed"
        assert summary.tuning_status == "reverted"
        assert len(tuner.applied) == 1
        assert tuner.reverted == tuner.applied
        assert pg.current_settings() == before

    def test_interrupt_during_verification_still_reverts(self, settings, runner, pg, three_dbs):
        tuner = RecordingTuner(settings.target)

        class InterruptingVerifier(Verifier):
            def verify(self, database):
                raise KeyboardInterrupt

        orchestrator = MigrationOrchestrator(
            settings, runner, tuner=tuner,
            verifier=InterruptingVerifier(settings.source, settings.target),
        )
        with pytest.raises(KeyboardInterrupt):
            orchestrator.run()

        assert len(tuner.reverted) == 1
        assert pg.current_settings()["fsync"] == "on"

    def test_tuning_left_by_killed_run_is_reverted_when_tuning_disabled(self, settings, runner, pg, three_dbs):
        before = pg.current_settings()
        tuner = RecordingTuner(settings.target)
        profile = tuner.capture()
        tuner.apply(profile)
        tuner.captures, tuner.applied = 0, []
        store = StateStore(settings.state_dir)
        store.mark_complete(TUNING_CAPTURED, {"profile": profile.to_dict()})
        store.mark_complete(TUNING_APPLIED, {"profile": profile.to_dict()})
        assert pg.current_settings()["fsync"] == "off"
        settings.tuning = False

        summary = MigrationOrchestrator(settings, runner, tuner=tuner).run()

        assert summary.fully_verified
        assert summary.tuning_status == "reverted"
        assert tuner.applied == []
        assert tuner.reverted == [profile]
        assert pg.current_settings() == before
        assert store.is_complete(TUNING_REVERTED)

    def test_tuning_left_by_killed_run_is_reverted_with_no_databases(self, settings, runner, pg):
        tuner = RecordingTuner(settings.target)
        profile = tuner.capture()
        tuner.apply(profile)
        StateStore(settings.state_dir).mark_complete(TUNING_APPLIED, {"profile": profile.to_dict()})

        summary = MigrationOrchestrator(settings, runner, tuner=tuner).run()

        assert summary.state == "done"
        assert summary.tuning_status == "reverted"
        assert pg.current_settings()["fsync"] == "on"

    def test_revert_failure_does_not_fail_the_run(self, make_orchestrator, pg, three_dbs):
        pg.fail("ALTER SYSTEM RESET")

        summary = make_orchestrator().run()

        assert summary.state == "done"
        assert summary.exit_code == 0
        assert summary.tuning_status == "revert-failed"

    def test_verification_mismatch_is_reported_not_fatal(self, make_orchestrator, pg, runner, three_dbs):
        original_restore = pg.restore

        def lossy_restore(name):
            original_restore(name)
            if name == "alpha":
                pg.databases[TARGET_HOST]["alpha"]["public.t"] = 99

        pg.restore = lossy_restore
        summary = make_orchestrator().run()

        assert summary.state == "done"
        assert summary.databases["alpha"].outcome == "unverified"
        assert summary.databases["alpha"].report.mismatched == ["public.t"]
        assert summary.databases["beta"].outcome == "verified"
        assert summary.tuning_status == "reverted"
        assert not summary.fully_verified


class TestAbort:
    def test_discovery_failure_aborts(self, make_orchestrator, pg, runner):
        pg.fail("pg_database", host=SOURCE_HOST)

        summary = make_orchestrator().run()

        assert summary.state == "aborted"
        assert summary.exit_code == 1
        assert summary.aborted_stage == "discovered"
        assert runner.commands == []
        assert not pg.sql("ALTER SYSTEM")

    def test_missing_utilities_abort_before_discovery(self, make_orchestrator, pg, runner):
        runner.missing = ["pg_restore"]

        summary = make_orchestrator().run()

        assert summary.state == "aborted"
        assert summary.aborted_stage == "prepared"
        assert "pg_restore" in str(summary.error)
        assert pg.statements == []

    def test_globals_failure_aborts_before_tuning(self, make_orchestrator, pg, runner, three_dbs):
        runner.fail("pg_dumpall")

        summary = make_orchestrator().run()

        assert summary.state == "aborted"
        assert summary.aborted_stage == "globals"
        assert not pg.sql("ALTER SYSTEM")
        assert runner.calls("pg_dump") == []

    def test_tuning_apply_failure_aborts(self, make_orchestrator, pg, runner, three_dbs):
        pg.fail("ALTER SYSTEM SET fsync")

        summary = make_orchestrator().run()

        assert summary.state == "aborted"
        assert summary.aborted_stage == "tuning-applied"
        assert runner.calls("pg_dump") == []


class TestExistingTargetDatabase:
    def test_non_empty_target_database_fails_only_that_database(self, make_orchestrator, pg, runner, settings, three_dbs):
        pg.add_database("beta", {"public.legacy": 1}, host=TARGET_HOST)

        summary = make_orchestrator().run()

        assert summary.state == "done"
        assert summary.databases["beta"].outcome == "failed"
        assert "non-empty" in summary.databases["beta"].error
        assert summary.count("verified") == 2
        assert runner.calls("pg_dump", database="beta") == []
        assert not StateStore(settings.state_dir).is_complete(DATABASES_CREATED)


class TestUnusualNames:
    def test_bracketed_names_are_printed_literally(self, settings, runner, pg):
        settings.verbose = True
        pg.add_database("data[/x]", {"public.[bold]orders": 5}, size=10)
        pg.add_database("logs[red]", {"public.t": 1}, size=20)
        runner.fail("pg_dump", database="logs[red]", stderr="pg_dump: error: [/red] lost")

        summary = MigrationOrchestrator(settings, runner, show_progress=True).run()

        assert summary.state == "done"
        assert summary.databases["data[/x]"].outcome == "verified"
        assert summary.databases["logs[red]"].outcome == "failed"
        assert "[/red] lost" in summary.databases["logs[red]"].error
