"""Docker CLI adapter used by the orchestrator, validator and reconciler.

Every call shells out to the docker binary on the host. Failures surface as
ContainerRuntimeError; callers decide whether a failure is fatal.
"""

import json
import logging
import subprocess

from app.config import settings
from deploy.errors import ContainerRuntimeError

logger = logging.getLogger(__name__)


class DockerRuntime:
    def __init__(
        self,
        docker_bin: str | None = None,
        command_timeout: int | None = None,
        pull_timeout: int | None = None,
    ):
        self.docker_bin = docker_bin or settings.DOCKER_BIN
        self.command_timeout = command_timeout or settings.COMMAND_TIMEOUT_SECONDS
        self.pull_timeout = pull_timeout or settings.PULL_TIMEOUT_SECONDS

    # ── Command Execution ─────────────────────────────────────────

    def run_command(
        self, args: list[str], timeout: int | None = None, check: bool = True
    ) -> subprocess.CompletedProcess:
        cmd_list = [self.docker_bin, *args]
        cmd_str = " ".join(cmd_list)
        timeout = timeout or self.command_timeout

        logger.debug(f"$ {cmd_str}")
        try:
            result = subprocess.run(
                cmd_list,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ContainerRuntimeError(f"Command timed out after {timeout}s: {cmd_str}")
        except OSError as e:
            raise ContainerRuntimeError(f"Could not execute {cmd_str}: {e}")

        if check and result.returncode != 0:
            logger.error(f"Command failed (rc={result.returncode}): {result.stderr.strip()}")
            raise ContainerRuntimeError(
                f"Command failed: {cmd_str}\nstderr: {result.stderr.strip()}"
            )
        return result

    # ── Images ────────────────────────────────────────────────────

    def image_exists(self, image_tag: str) -> bool:
        result = self.run_command(["image", "inspect", image_tag], check=False)
        return result.returncode == 0

    def pull_or_build(self, image_tag: str, source_ref: str | None = None) -> None:
        """Make ``image_tag`` available locally.

        A local image wins; otherwise it is pulled, and when the pull fails
        and the project has a source reference the image is built from it
        (docker accepts git URLs and directories as build contexts).
        """
        if self.image_exists(image_tag):
            logger.info("Image present locally", extra={"image_tag": image_tag})
            return

        try:
            logger.info("Pulling image", extra={"image_tag": image_tag})
            self.run_command(["pull", image_tag], timeout=self.pull_timeout)
            return
        except ContainerRuntimeError:
            if not source_ref:
                raise
            logger.warning("Pull failed, building from source", extra={"image_tag": image_tag})

        self.run_command(["build", "-t", image_tag, source_ref], timeout=self.pull_timeout)
        logger.info("Image built", extra={"image_tag": image_tag})

    # ── Containers ────────────────────────────────────────────────

    def run(
        self,
        name: str,
        image_tag: str,
        host_port: int,
        container_port: int,
        network: str | None = None,
    ) -> None:
        network = network or settings.DOCKER_NETWORK
        logger.info(
            "Starting container",
            extra={"container_name": name, "image_tag": image_tag, "port": host_port},
        )
        self.run_command([
            "run", "-d",
            "--name", name,
            "--network", network,
            "--restart", "on-failure",
            "-p", f"{host_port}:{container_port}",
            "--label", "managed-by=zeroshift",
            image_tag,
        ])

    def stop(self, name: str) -> None:
        logger.info("Stopping container", extra={"container_name": name})
        self.run_command(["stop", name], timeout=60)

    def remove(self, name: str) -> None:
        self.run_command(["rm", "-f", name])

    def inspect_running(self, name: str) -> bool:
        result = self.run_command(
            ["inspect", "--format", "{{.State.Running}}", name], check=False
        )
        return result.returncode == 0 and result.stdout.strip().strip("'") == "true"

    def restart_count(self, name: str) -> int:
        result = self.run_command(
            ["inspect", "--format", "{{.RestartCount}}", name], check=False
        )
        if result.returncode != 0:
            return 0
        try:
            return int(result.stdout.strip().strip("'"))
        except ValueError:
            return 0

    def logs(self, name: str, max_lines: int = 100) -> list[str]:
        """Last ``max_lines`` of combined stdout/stderr, with docker timestamps."""
        result = self.run_command(
            ["logs", "--timestamps", "--tail", str(max_lines), name], check=False
        )
        if result.returncode != 0:
            return []
        output = result.stdout + result.stderr
        return output.splitlines()[-max_lines:]

    def stats(self, name: str) -> dict | None:
        """Raw ``docker stats`` snapshot for one container, or None if unavailable."""
        result = self.run_command(
            ["stats", "--no-stream", "--format", "{{json .}}", name], check=False
        )
        if result.returncode != 0 or not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout.strip().splitlines()[0])
        except json.JSONDecodeError:
            logger.warning("Unparseable docker stats output", extra={"container_name": name})
            return None
