"""
Startup reconciliation.

Runs before the API accepts requests and repairs what a crash left behind:

  Phase 1: every PENDING deployment not owned by a deploy running in this
           process belongs to a deploy that died mid-way.
           Its container is stopped and removed (errors ignored) and the
           record is marked FAILED. The deploy is never resumed.
  Phase 2: every ACTIVE deployment whose container is no longer running is
           marked FAILED. Traffic is left alone; an operator redeploys.

One bad record never aborts the pass.
"""

import logging

from app import metrics
from app.models import DeploymentStatus, ReconciliationReport
from deploy.errors import ContainerRuntimeError, NotFoundError, StaleRecordError

logger = logging.getLogger(__name__)


class ReconciliationService:
    def __init__(self, store, runtime, in_flight=None):
        self.store = store
        self.runtime = runtime
        # Callable(project_id) -> bool for deploys still running in this process.
        self.in_flight = in_flight

    def reconcile(self) -> ReconciliationReport:
        logger.info("Starting reconciliation")

        report = ReconciliationReport(
            deploying_fixed=self.fix_deploying(),
            active_invalidated=self.audit_active(),
        )
        metrics.record_reconciled("deploying", report.deploying_fixed)
        metrics.record_reconciled("active", report.active_invalidated)

        logger.info(
            f"Reconciliation complete: {report.deploying_fixed} in-progress fixed, "
            f"{report.active_invalidated} active invalidated"
        )
        return report

    def fix_deploying(self) -> int:
        deploying = self.store.find_all_deploying()
        if not deploying:
            return 0

        logger.warning(f"Found {len(deploying)} in-progress deployments, recovering")

        fixed = 0
        for d in deploying:
            ctx = {"project_id": d.project_id, "deployment_id": d.id, "container_name": d.container_name}
            if self.in_flight is not None and self.in_flight(d.project_id):
                logger.info("Deployment still in flight, leaving it alone", extra=ctx)
                continue

            logger.warning("Recovering crashed deployment", extra=ctx)

            for step in (self.runtime.stop, self.runtime.remove):
                try:
                    step(d.container_name)
                except ContainerRuntimeError as e:
                    logger.debug(f"Cleanup step ignored: {e}", extra=ctx)

            try:
                self.store.update_status(d.id, DeploymentStatus.FAILED, expected=DeploymentStatus.PENDING)
                fixed += 1
            except (StaleRecordError, NotFoundError) as e:
                logger.info(f"Deployment already moved, skipping: {e}", extra=ctx)
            except Exception:
                logger.exception("Failed to mark crashed deployment as FAILED", extra=ctx)

        return fixed

    def audit_active(self) -> int:
        active = self.store.find_all_active_with_projects()

        invalidated = 0
        for d, project in active:
            ctx = {"project_id": project.id, "deployment_id": d.id, "container_name": d.container_name}
            try:
                if self.runtime.inspect_running(d.container_name):
                    continue

                logger.warning(
                    f"ACTIVE deployment of {project.name} is not running, marking FAILED", extra=ctx
                )
                self.store.update_status(d.id, DeploymentStatus.FAILED, expected=DeploymentStatus.ACTIVE)
                invalidated += 1
            except (StaleRecordError, NotFoundError) as e:
                logger.info(f"Deployment already moved, skipping: {e}", extra=ctx)
            except Exception:
                logger.exception("Failed to audit active deployment", extra=ctx)

        return invalidated
