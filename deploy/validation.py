"""Health validation for a freshly started container.

The validator polls the container's health endpoint with bounded retries,
bails out early when docker reports the container is not running or is
crash-looping, and turns the container's recent output into a compact
diagnostic when it gives up. It never touches the deployment store.
"""

import logging
import re
import threading
import time

import requests

from app import metrics
from app.models import ValidationConfig, ValidationResult
from deploy.errors import DeploymentCancelled

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
LEADING_TIMESTAMP = re.compile(r"^\S+Z\s+")
DIAGNOSTIC_BANNER = "--- Container output ---"
DIAGNOSTIC_MAX_LINES = 20
STARTUP_LOG_LINES = 30
FAILURE_LOG_LINES = 40


def format_diagnostic(reason: str, logs: list[str]) -> str:
    if not logs:
        return reason
    clean = [LEADING_TIMESTAMP.sub("", ANSI_ESCAPE.sub("", line)) for line in logs]
    clean = [line for line in clean if line.strip()][-DIAGNOSTIC_MAX_LINES:]
    if not clean:
        return reason
    return f"{reason}\n\n{DIAGNOSTIC_BANNER}\n" + "\n".join(clean)


class HealthValidator:
    def __init__(self, runtime, session: requests.Session | None = None, clock=time.perf_counter):
        self.runtime = runtime
        self.session = session or requests.Session()
        self.clock = clock

    def _fail(self, reason: str, container_name: str, log_lines: int, attempts: int) -> ValidationResult:
        logs = self.runtime.logs(container_name, log_lines)
        logger.error(reason, extra={"container_name": container_name, "attempt": attempts})
        return ValidationResult(
            success=False,
            latency_ms=0.0,
            diagnostic=format_diagnostic(reason, logs),
            attempts=attempts,
        )

    def _wait(self, seconds: float, cancel: threading.Event | None) -> None:
        if cancel is None:
            if seconds > 0:
                time.sleep(seconds)
            return
        if cancel.wait(seconds):
            raise DeploymentCancelled("Deployment cancelled")

    def validate(
        self,
        container_url: str,
        health_path: str,
        container_name: str,
        config: ValidationConfig,
        cancel: threading.Event | None = None,
    ) -> ValidationResult:
        """Poll ``container_url + health_path`` until it passes or retries run out.

        Raises DeploymentCancelled if ``cancel`` is set while waiting between
        attempts. Worst case runs ``max_retries * (timeout + retry_delay)``.
        """
        health_url = f"{container_url.rstrip('/')}/{health_path.lstrip('/')}"
        logger.info(f"Starting validation of {health_url}", extra={"container_name": container_name})

        if not self.runtime.inspect_running(container_name):
            return self._fail("Container failed to start", container_name, STARTUP_LOG_LINES, 0)

        for attempt in range(1, config.max_retries + 1):
            if cancel is not None and cancel.is_set():
                raise DeploymentCancelled("Deployment cancelled")

            # A restart since the first attempt means the process keeps exiting.
            if attempt > 1:
                restarts = self.runtime.restart_count(container_name)
                if restarts > 0:
                    metrics.record_health_attempt("crash_loop")
                    return self._fail(
                        f"App crashed (restarted {restarts}x), check its env vars and startup config",
                        container_name,
                        FAILURE_LOG_LINES,
                        attempt - 1,
                    )

            start = self.clock()
            try:
                response = self.session.get(health_url, timeout=config.timeout_seconds)
                latency_ms = round((self.clock() - start) * 1000, 1)

                if 200 <= response.status_code < 300:
                    if latency_ms > config.max_latency_ms:
                        metrics.record_health_attempt("slow")
                        logger.warning(
                            f"Latency {latency_ms}ms exceeded {config.max_latency_ms}ms threshold",
                            extra={"container_name": container_name, "attempt": attempt,
                                   "latency_ms": latency_ms},
                        )
                    else:
                        metrics.record_health_attempt("pass")
                        logger.info(
                            "Validation passed",
                            extra={"container_name": container_name, "attempt": attempt,
                                   "latency_ms": latency_ms},
                        )
                        return ValidationResult(success=True, latency_ms=latency_ms, attempts=attempt)
                else:
                    metrics.record_health_attempt("fail")
                    logger.warning(
                        f"Health check returned HTTP {response.status_code}",
                        extra={"container_name": container_name, "attempt": attempt},
                    )
            except requests.RequestException as e:
                metrics.record_health_attempt("error")
                logger.warning(
                    f"Validation attempt failed ({type(e).__name__})",
                    extra={"container_name": container_name, "attempt": attempt, "error": str(e)},
                )

            if attempt < config.max_retries:
                self._wait(config.retry_delay_seconds, cancel)

        return self._fail(
            f"Health check failed after {config.max_retries} attempts",
            container_name,
            FAILURE_LOG_LINES,
            config.max_retries,
        )
