import logging
import os
import re
import shlex
import subprocess
import tempfile
from pathlib import Path

from app.config import settings
from deploy.errors import TrafficSwitchError

logger = logging.getLogger(__name__)

UPSTREAM_SERVER = re.compile(r"server\s+[^:\s]+:(\d+);")


class NginxTrafficSwitch:
    """Points a project's nginx upstream at one backend port.

    The upstream file is swapped atomically, validated with ``nginx -t`` and
    then reloaded. Any failure restores the previous file, so traffic keeps
    going wherever it went before the call.
    """

    def __init__(
        self,
        conf_dir: str | None = None,
        upstream_host: str | None = None,
        test_cmd: str | None = None,
        reload_cmd: str | None = None,
        prefix: str | None = None,
        timeout: int = 10,
    ):
        self.conf_dir = Path(conf_dir or settings.NGINX_CONF_DIR)
        self.upstream_host = upstream_host or settings.NGINX_UPSTREAM_HOST
        self.test_cmd = test_cmd or settings.NGINX_TEST_CMD
        self.reload_cmd = reload_cmd or settings.NGINX_RELOAD_CMD
        self.prefix = prefix or settings.CONTAINER_PREFIX
        self.timeout = timeout

    def config_path(self, project: str) -> Path:
        return self.conf_dir / f"{project}.conf"

    def render_upstream(self, project: str, port: int) -> str:
        upstream = f"{self.prefix}_{project}".replace("-", "_")
        return "\n".join([
            f"upstream {upstream} {{",
            f"    server {self.upstream_host}:{port};",
            "}",
            "",
        ])

    def current_port(self, project: str) -> int | None:
        path = self.config_path(project)
        if not path.exists():
            return None
        match = UPSTREAM_SERVER.search(path.read_text())
        return int(match.group(1)) if match else None

    def _run(self, cmd: str) -> None:
        try:
            result = subprocess.run(
                shlex.split(cmd), capture_output=True, text=True, timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            raise TrafficSwitchError(f"Command timed out after {self.timeout}s: {cmd}")
        except OSError as e:
            raise TrafficSwitchError(f"Could not execute {cmd}: {e}")
        if result.returncode != 0:
            raise TrafficSwitchError(f"Command failed: {cmd}\nstderr: {result.stderr.strip()}")

    def _write_atomic(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _restore(self, path: Path, original: str | None) -> None:
        if original is None:
            path.unlink(missing_ok=True)
        else:
            self._write_atomic(path, original)

    def switch_to(self, project: str, port: int) -> None:
        path = self.config_path(project)
        original = path.read_text() if path.exists() else None

        logger.info(f"Switching {project} upstream", extra={"port": port})
        try:
            self._write_atomic(path, self.render_upstream(project, port))
        except OSError as e:
            raise TrafficSwitchError(f"Could not write {path}: {e}")

        try:
            self._run(self.test_cmd)
        except TrafficSwitchError:
            logger.error("nginx -t failed, restoring original config")
            self._restore(path, original)
            raise

        try:
            self._run(self.reload_cmd)
        except TrafficSwitchError:
            logger.error("nginx reload failed, restoring original config")
            self._restore(path, original)
            try:
                self._run(self.reload_cmd)
            except TrafficSwitchError as reload_err:
                logger.critical(f"Reload of restored config failed: {reload_err}")
            raise

        logger.info(f"Traffic for {project} switched", extra={"port": port})
