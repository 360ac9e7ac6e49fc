import pytest

from pg2pg.config import PGConnection
from pg2pg.errors import CommandError
from pg2pg.runner import CommandResult, DockerRunner, LocalRunner, dbname_arg, password_env


class TestLocalRunner:
    def test_captures_exit_code_and_streams(self):
        result = LocalRunner().run(["sh", "-c", "echo out; echo err >&2; exit 3"])

        assert result.returncode == 3
        assert not result.ok
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    def test_environment_is_passed(self):
        result = LocalRunner().run(["sh", "-c", 'printf "%s" "$PGPASSWORD"'], env={"PGPASSWORD": "pw"})
        assert result.ok
        assert result.stdout == "pw"

    def test_missing_binary(self):
        result = LocalRunner().run(["pg2pg-no-such-utility", "--version"])
        assert result.returncode == 127

    def test_missing_tools(self):
        assert LocalRunner().missing_tools(["sh", "pg2pg-no-such-utility"]) == ["pg2pg-no-such-utility"]


def test_check_raises_with_stderr_tail():
    result = CommandResult(["pg_dump", "-d", "app"], 1, "", "first line\npg_dump: error: permission denied\n")

    with pytest.raises(CommandError) as exc:
        result.check("pg_dump")

    assert exc.value.returncode == 1
    assert exc.value.command == ["pg_dump", "-d", "app"]
    assert str(exc.value) == "pg_dump failed (exit 1): pg_dump: error: permission denied"


def test_password_env():
    assert password_env(PGConnection("h", 5432, "u", "pw", "postgres")) == {"PGPASSWORD": "pw"}
    assert password_env(PGConnection("h", 5432, "u", "", "postgres")) == {}


class FakeContainer:
    def __init__(self, status, stdout, stderr):
        self.status = status
        self.stdout = stdout
        self.stderr = stderr
        self.removed = False

    def wait(self):
        return {"StatusCode": self.status}

    def logs(self, stdout=True, stderr=True):
        return self.stdout if stdout else self.stderr

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self, container):
        self.container = container
        self.calls = []

    def run(self, image, **kwargs):
        self.calls.append((image, kwargs))
        return self.container


class FakeImages:
    def get(self, image):
        return image


class FakeDockerClient:
    def __init__(self, container):
        self.containers = FakeContainers(container)
        self.images = FakeImages()


class TestDockerRunner:
    def test_runs_in_throwaway_container(self, tmp_path):
        container = FakeContainer(0, b"done\n", b"")
        client = FakeDockerClient(container)
        runner = DockerRunner(client, shared_dirs=[tmp_path / "dumps"], image="postgres:16-alpine")

        result = runner.run(["pg_dump", "-d", "app"], env={"PGPASSWORD": "pw"})

        assert result.ok
        assert result.stdout == "done\n"
        assert container.removed
        image, kwargs = client.containers.calls[0]
        assert image == "postgres:16-alpine"
        assert kwargs["command"] == ["pg_dump", "-d", "app"]
        assert kwargs["environment"] == {"PGPASSWORD": "pw"}
        shared = str((tmp_path / "dumps").resolve())
        assert kwargs["volumes"] == {shared: {"bind": shared, "mode": "rw"}}
        assert kwargs["extra_hosts"] == {"host.docker.internal": "host-gateway"}

    def test_failure_exit_code_and_stderr(self, tmp_path):
        client = FakeDockerClient(FakeContainer(1, b"", b"pg_restore: error: boom\n"))
        runner = DockerRunner(client, shared_dirs=[tmp_path])

        result = runner.run(["pg_restore"])

        assert result.returncode == 1
        assert result.stderr == "pg_restore: error: boom\n"

    def test_localhost_is_reached_through_the_gateway(self, tmp_path):
        runner = DockerRunner(FakeDockerClient(None), shared_dirs=[tmp_path])
        assert runner.host_for(PGConnection("localhost", 5432, "u", "", "postgres")) == "host.docker.internal"
        assert runner.missing_tools(["pg_dump"]) == []


@pytest.mark.parametrize("name, expected", [
    ("shop", "shop"),
    ("a=b", "dbname='a=b'"),
    ("postgresql://evil", "dbname='postgresql://evil'"),
    ("it's=x", "dbname='it\\'s=x'"),
    ("c:\\=d", "dbname='c:\\\\=d'"),
])
def test_dbname_arg(name, expected):
    assert dbname_arg(name) == expected
