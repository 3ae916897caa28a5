"""
Blue-green deployment orchestrator.

Drives one project's deploy lifecycle:

  1. Claim the project's in-flight slot with a PENDING record
     (version, container name and port are allocated here)
  2. Pull or build the image
  3. Start the new container next to the active one
  4. Validate its health endpoint
  5. Switch the project's ingress to the new port
  6. Promote the new record to ACTIVE and demote the old one to ROLLED_BACK

Any failure stops the new container and marks its record FAILED. A crash
part-way leaves a PENDING record that startup reconciliation closes out.
"""

import logging
import threading
import time

from app import metrics
from app.config import settings
from app.models import Deployment, DeploymentStatus, DeployResult, Project
from deploy.errors import (
    ContainerRuntimeError,
    DeploymentError,
    NotFoundError,
    StaleRecordError,
    TrafficSwitchError,
)
from deploy.validation import HealthValidator

logger = logging.getLogger(__name__)


class DeploymentOrchestrator:
    def __init__(
        self,
        store,
        runtime,
        traffic,
        validator: HealthValidator | None = None,
        network: str | None = None,
        container_host: str | None = None,
        retained_standby: int | None = None,
    ):
        self.store = store
        self.runtime = runtime
        self.traffic = traffic
        self.validator = validator or HealthValidator(runtime)
        self.network = network or settings.DOCKER_NETWORK
        self.container_host = container_host or settings.CONTAINER_HOST
        if retained_standby is None:
            retained_standby = settings.RETAINED_STANDBY_CONTAINERS
        self.retained_standby = max(1, retained_standby)

        self._cancel_lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}

    # ── Queries ───────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project")
        return project

    def active_deployment(self, project_id: str) -> Deployment | None:
        return self.store.find_active_for_project(project_id)

    def list_deployments(self, project_id: str | None = None) -> list[Deployment]:
        return self.store.find_all(project_id)

    # ── Cancellation ──────────────────────────────────────────────

    def _register(self, project_id: str) -> threading.Event:
        event = threading.Event()
        with self._cancel_lock:
            self._cancel_events[project_id] = event
        return event

    def _unregister(self, project_id: str) -> None:
        with self._cancel_lock:
            self._cancel_events.pop(project_id, None)

    def is_deploying(self, project_id: str) -> bool:
        with self._cancel_lock:
            return project_id in self._cancel_events

    def cancel(self, project_id: str) -> bool:
        """Ask an in-flight deploy of ``project_id`` in this process to stop.

        The deploy notices at its next wait between health checks and goes
        through the normal failure path.
        """
        with self._cancel_lock:
            event = self._cancel_events.get(project_id)
        if event is None:
            return False
        logger.warning("Cancelling deployment", extra={"project_id": project_id})
        event.set()
        return True

    # ── Main Deploy Sequence ──────────────────────────────────────

    def deploy(self, project_id: str, image_tag: str) -> DeployResult:
        project = self.get_project(project_id)

        # Raises ConflictError if the project already has a PENDING record.
        deployment = self.store.create_deployment(project, image_tag)
        cancel = self._register(project.id)
        log_ctx = {
            "project_id": project.id,
            "deployment_id": deployment.id,
            "version": deployment.version,
            "container_name": deployment.container_name,
            "port": deployment.port,
        }
        deployment_start = time.time()
        container_started = False
        switched = False
        previous = None

        logger.info(
            f"DEPLOYMENT START: {project.name} v{deployment.version} ({deployment.color})",
            extra={**log_ctx, "image_tag": image_tag},
        )

        try:
            # Step 1: Image
            self.runtime.pull_or_build(image_tag, project.source_ref)

            # Step 2: Start container
            self.runtime.run(
                deployment.container_name,
                image_tag,
                deployment.port,
                project.container_port,
                self.network,
            )
            container_started = True

            # Step 3: Validate
            result = self.validator.validate(
                f"http://{self.container_host}:{deployment.port}",
                project.health_path,
                deployment.container_name,
                project.validation,
                cancel,
            )
            if not result.success:
                raise DeploymentError(result.diagnostic or "Health validation failed")

            # ── POINT OF NO RETURN ──
            # Before this: failure = stop the new container
            # After this: failure = also point traffic back at the old port,
            # or report the dead upstream when there is no old port

            # Step 4: Cutover
            previous = self.store.find_active_for_project(project.id)
            try:
                self.traffic.switch_to(project.name, deployment.port)
            except TrafficSwitchError as e:
                raise DeploymentError(
                    f"Traffic switch failed, previous version still serving: {e}"
                ) from e
            switched = True

            deployment, demoted = self.store.activate(
                deployment.id, previous.id if previous else None
            )

        except Exception as e:
            logger.error(f"DEPLOYMENT FAILED: {e}", extra=log_ctx)
            if switched and previous is not None:
                self._restore_traffic(project, previous)
            self._mark_failed(deployment, container_started)
            metrics.record_deployment("failed", time.time() - deployment_start)
            if switched and previous is None:
                logger.critical(
                    f"Ingress for {project.name} points at failed v{deployment.version}, "
                    "no earlier version to restore",
                    extra=log_ctx,
                )
                raise DeploymentError(
                    f"Deployment failed after cutover with no previous version to restore; "
                    f"ingress for {project.name} still points at stopped port {deployment.port}: {e}"
                ) from e
            raise
        finally:
            self._unregister(project.id)

        elapsed = round(time.time() - deployment_start, 1)
        metrics.record_deployment("success", elapsed)
        if demoted is not None:
            logger.info(
                f"v{demoted.version} demoted to {demoted.status.value}",
                extra={"project_id": project.id, "deployment_id": demoted.id},
            )
            self._prune_standby(project, demoted)

        logger.info(
            f"DEPLOYMENT COMPLETE: {project.name} v{deployment.version} is now active ({elapsed}s)",
            extra=log_ctx,
        )
        return DeployResult(
            deployment=deployment,
            message=f"Deployed {project.name} v{deployment.version} on port {deployment.port}",
        )

    # ── Failure handling ──────────────────────────────────────────

    def _restore_traffic(self, project: Project, previous: Deployment) -> None:
        logger.warning(f"Pointing traffic back at v{previous.version}", extra={"port": previous.port})
        try:
            self.traffic.switch_to(project.name, previous.port)
        except TrafficSwitchError as e:
            logger.critical(
                f"Traffic restore failed, ingress state unknown: {e}",
                extra={"project_id": project.id, "port": previous.port},
            )

    def _mark_failed(self, deployment: Deployment, container_started: bool) -> None:
        if container_started:
            try:
                self.runtime.stop(deployment.container_name)
            except ContainerRuntimeError as e:
                logger.warning(
                    f"Could not stop failed container: {e}",
                    extra={"container_name": deployment.container_name},
                )
        try:
            self.store.update_status(
                deployment.id, DeploymentStatus.FAILED, expected=DeploymentStatus.PENDING
            )
        except (StaleRecordError, NotFoundError) as e:
            logger.warning(
                f"Could not mark deployment FAILED: {e}", extra={"deployment_id": deployment.id}
            )

    # ── Standby retention ─────────────────────────────────────────

    def _prune_standby(self, project: Project, demoted: Deployment) -> None:
        """Stop standby containers beyond the retention window.

        The just-demoted version always keeps running since it is the
        rollback target. Records keep their status.
        """
        older = [
            d for d in self.store.find_for_project(project.id)
            if d.status == DeploymentStatus.ROLLED_BACK and d.id != demoted.id
        ]
        below = sorted(
            (d for d in older if d.version < demoted.version),
            key=lambda d: d.version,
            reverse=True,
        )
        keep = {d.id for d in below[: self.retained_standby - 1]}

        for d in older:
            if d.id in keep:
                continue
            try:
                if self.runtime.inspect_running(d.container_name):
                    logger.info(
                        f"Retiring standby v{d.version}",
                        extra={"project_id": project.id, "container_name": d.container_name},
                    )
                    self.runtime.stop(d.container_name)
                    self.runtime.remove(d.container_name)
            except ContainerRuntimeError as e:
                logger.warning(
                    f"Could not retire standby container: {e}",
                    extra={"container_name": d.container_name},
                )
