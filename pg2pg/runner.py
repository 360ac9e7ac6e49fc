"""
Process runners: execute PostgreSQL client utilities and capture their output.

The orchestrator builds argument vectors; a runner decides where they run
(the local PATH or a throwaway Docker container) and reports the exit
status. Exit code 0 is success, anything else is that step's failure.
"""

import os
import shutil
import subprocess
from pathlib import Path

from pg2pg import PG_CLIENT_IMAGE
from pg2pg.errors import CommandError


class CommandResult:
    def __init__(self, command: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self, what: str = None) -> "CommandResult":
        """Raise CommandError unless the command succeeded."""
        if not self.ok:
            raise CommandError(
                f"{what or self.command[0]} failed",
                command=self.command,
                returncode=self.returncode,
                stderr=self.stderr,
            )
        return self


def password_env(connection) -> dict:
    env = {}
    if connection.password:
        env["PGPASSWORD"] = connection.password
    return env


def dbname_arg(name: str) -> str:
    """Value for ``-d`` that libpq always reads as a plain database name.

    libpq parses ``-d`` as a connection string when it contains ``=`` or
    starts with a URI prefix, so such names are wrapped as ``dbname='...'``.
    """
    if "=" not in name and not name.startswith(("postgresql://", "postgres://")):
        return name
    return "dbname='" + name.replace("\\", "\\\\").replace("'", "\\'") + "'"


class LocalRunner:
    """Runs utilities found on the local PATH."""

    name = "local"

    def host_for(self, connection) -> str:
        return connection.host

    def missing_tools(self, tools) -> list[str]:
        return [tool for tool in tools if shutil.which(tool) is None]

    def run(self, command: list[str], env: dict = None, cwd: Path = None) -> CommandResult:
        full_env = os.environ.copy()
        full_env.update(env or {})
        try:
            proc = subprocess.run(
                command,
                env=full_env,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            return CommandResult(command, 127, "", f"{command[0]}: command not found ({e})")
        return CommandResult(command, proc.returncode, proc.stdout, proc.stderr)


class DockerRunner:
    """Runs utilities inside the official PostgreSQL image.

    ``shared_dirs`` are bind-mounted at the same absolute path so dump
    directories and script files resolve identically inside and outside
    the container.
    """

    name = "docker"

    def __init__(self, client, shared_dirs, image: str = PG_CLIENT_IMAGE):
        self.client = client
        self.image = image
        self.shared_dirs = [Path(d).resolve() for d in shared_dirs]
        self._image_ready = False

    def host_for(self, connection) -> str:
        return connection.docker_host

    def missing_tools(self, tools) -> list[str]:
        return []  # the image ships every client utility

    def _user(self):
        if hasattr(os, "getuid"):
            return f"{os.getuid()}:{os.getgid()}"
        return None

    def run(self, command: list[str], env: dict = None, cwd: Path = None) -> CommandResult:
        from pg2pg.docker_utils import ensure_image, run_in_container

        try:
            if not self._image_ready:
                ensure_image(self.client, self.image)
                self._image_ready = True
            for d in self.shared_dirs:
                d.mkdir(parents=True, exist_ok=True)
            volumes = {str(d): {"bind": str(d), "mode": "rw"} for d in self.shared_dirs}
            exit_code, stdout, stderr = run_in_container(
                self.client,
                self.image,
                command,
                environment=env,
                volumes=volumes,
                working_dir=str(cwd) if cwd else None,
                user=self._user(),
            )
        except CommandError as e:
            return CommandResult(command, e.returncode, "", str(e))
        return CommandResult(command, exit_code, stdout, stderr)
