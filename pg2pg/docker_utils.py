"""
Docker client management and one-shot utility containers.
"""

import sys

import docker
from docker.errors import DockerException, NotFound, APIError

from pg2pg import console
from pg2pg.errors import CommandError


def get_docker_client() -> docker.DockerClient:
    """Get Docker client, with a friendly error if Docker isn't running."""
    try:
        client = docker.from_env()
        client.ping()
        return client
    except DockerException:
        console.print(
            "\n[red]✗ Cannot connect to Docker.[/red]\n"
            "  Make sure Docker Engine is installed and running:\n"
            "    [dim]sudo systemctl start docker[/dim]\n"
            "    [dim]sudo usermod -aG docker $USER[/dim]\n"
            "  Or run with [cyan]--runner local[/cyan] and the PostgreSQL client tools on PATH.\n"
        )
        sys.exit(1)


def ensure_image(client: docker.DockerClient, image: str):
    """Pull ``image`` unless it is already present locally."""
    try:
        client.images.get(image)
    except NotFound:
        console.print(f"  Pulling [cyan]{image}[/cyan]...")
        try:
            client.images.pull(image)
        except APIError as e:
            raise CommandError(
                f"Failed to pull Docker image {image}: {e}",
                command=["docker", "pull", image],
            ) from e


def run_in_container(
    client: docker.DockerClient,
    image: str,
    command: list[str],
    environment: dict = None,
    volumes: dict = None,
    working_dir: str = None,
    user: str = None,
) -> tuple[int, str, str]:
    """Run ``command`` in a throwaway container and wait for it.

    Returns ``(exit_code, stdout, stderr)``.
    """
    try:
        container = client.containers.run(
            image,
            command=command,
            detach=True,
            environment=environment or {},
            volumes=volumes or {},
            working_dir=working_dir,
            user=user,
            extra_hosts={"host.docker.internal": "host-gateway"},
            remove=False,  # Keep so we can read logs
        )
    except APIError as e:
        raise CommandError(
            f"Failed to start {command[0]} container: {e}",
            command=command,
        ) from e

    try:
        result = container.wait()
        exit_code = result.get("StatusCode", -1)
        stdout = container.logs(stdout=True, stderr=False).decode("utf-8", errors="replace")
        stderr = container.logs(stdout=False, stderr=True).decode("utf-8", errors="replace")
        return exit_code, stdout, stderr
    finally:
        try:
            container.remove(force=True)
        except APIError as e:
            console.print(f"  [yellow]⚠ Could not remove utility container:[/yellow] {e}")
