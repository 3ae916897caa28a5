"""
Rollback to the previously active version of a project.

Each successful deploy demotes the old active record to ROLLED_BACK, so the
rollback target is the newest ROLLED_BACK record below the active version.
One call steps back one version; call again to go further.
"""

import logging

from app import metrics
from app.models import DeploymentStatus, RollbackResult
from deploy.errors import ContainerRuntimeError, DeploymentError, NotFoundError, TrafficSwitchError

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    def __init__(self, store, runtime, traffic):
        self.store = store
        self.runtime = runtime
        self.traffic = traffic

    def rollback(self, project_id: str) -> RollbackResult:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project")

        current = self.store.find_active_for_project(project_id)
        if current is None:
            metrics.record_rollback("not_found")
            raise NotFoundError("Active deployment")

        target = self.store.find_previous_for_project(project_id, current.version)
        if target is None:
            metrics.record_rollback("no_target")
            raise DeploymentError(
                f"No previous deployment of {project.name} below v{current.version} to roll back to"
            )

        logger.info(
            f"ROLLBACK: {project.name} v{current.version} -> v{target.version}",
            extra={"project_id": project_id, "deployment_id": current.id},
        )

        # The target is not restarted here; refuse to route to a dead backend.
        if not self.runtime.inspect_running(target.container_name):
            metrics.record_rollback("target_down")
            raise DeploymentError(
                f"Rollback target v{target.version} ({target.container_name}) is not running; redeploy instead"
            )

        try:
            self.runtime.stop(current.container_name)
        except ContainerRuntimeError:
            metrics.record_rollback("failed")
            raise
        rolled_back_from = self.store.update_status(
            current.id, DeploymentStatus.ROLLED_BACK, expected=DeploymentStatus.ACTIVE
        )

        try:
            self.traffic.switch_to(project.name, target.port)
        except TrafficSwitchError as e:
            metrics.record_rollback("failed")
            logger.critical(
                f"Traffic switch to v{target.version} failed after v{current.version} was stopped; "
                "project has no active deployment",
                extra={"project_id": project_id, "port": target.port, "error": str(e)},
            )
            raise DeploymentError(f"Rollback traffic switch failed: {e}") from e

        restored_to = self.store.update_status(
            target.id, DeploymentStatus.ACTIVE, expected=DeploymentStatus.ROLLED_BACK
        )
        metrics.record_rollback("success")

        logger.info(
            f"ROLLBACK COMPLETE: {project.name} v{target.version} is now active",
            extra={"project_id": project_id, "deployment_id": target.id, "port": target.port},
        )
        return RollbackResult(
            rolled_back_from=rolled_back_from,
            restored_to=restored_to,
            message=f"Rolled back from v{current.version} to v{target.version}",
        )
