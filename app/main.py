import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import Field

from app import metrics
from app.config import settings
from app.database import DeploymentStore
from app.health import router as health_router
from app.logging_config import setup_logging
from app.metrics import MetricsMiddleware, metrics_response
from app.models import CamelModel, ValidationConfig
from deploy.errors import (
    ConflictError,
    DeploymentError,
    ExternalCallError,
    NotFoundError,
    OrchestratorError,
)
from deploy.orchestrator import DeploymentOrchestrator
from deploy.reconcile import ReconciliationService
from deploy.rollback import RollbackCoordinator
from deploy.runtime import DockerRuntime
from deploy.traffic import NginxTrafficSwitch

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ConflictError, 409),
    (NotFoundError, 404),
    (DeploymentError, 422),
    (ExternalCallError, 502),
)


class ProjectCreateRequest(CamelModel):
    name: str = Field(min_length=1, pattern=r"^[a-z0-9][a-z0-9-]*$")
    source_ref: str | None = None
    health_path: str = "/health"
    container_port: int | None = None
    validation: ValidationConfig | None = None


class ProjectConfigRequest(CamelModel):
    source_ref: str | None = None
    health_path: str | None = None
    container_port: int | None = None
    validation: ValidationConfig | None = None


class DeployRequest(CamelModel):
    project_id: str = Field(min_length=1)
    image_tag: str = Field(min_length=1)


class RollbackRequest(CamelModel):
    project_id: str = Field(min_length=1)


def create_app(store=None, runtime=None, traffic=None, validator=None,
               reconcile_on_startup: bool | None = None) -> FastAPI:
    store = store or DeploymentStore()
    runtime = runtime or DockerRuntime()
    traffic = traffic or NginxTrafficSwitch()
    if reconcile_on_startup is None:
        reconcile_on_startup = settings.RECONCILE_ON_STARTUP

    orchestrator = DeploymentOrchestrator(store, runtime, traffic, validator=validator)
    rollback = RollbackCoordinator(store, runtime, traffic)
    reconciler = ReconciliationService(store, runtime, in_flight=orchestrator.is_deploying)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info("Starting orchestrator")
        store.init_db()
        if reconcile_on_startup:
            app.state.last_reconcile = reconciler.reconcile()
        logger.info(f"Orchestrator ready on port {settings.PORT}")
        yield
        logger.info("Orchestrator shutting down")

    app = FastAPI(title="ZeroShift Deployment Orchestrator", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.runtime = runtime
    app.state.orchestrator = orchestrator
    app.state.rollback = rollback
    app.state.reconciler = reconciler
    app.state.last_reconcile = None

    app.add_middleware(MetricsMiddleware)
    app.include_router(health_router)

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError):
        status_code = next(code for cls, code in ERROR_STATUS + ((OrchestratorError, 500),)
                           if isinstance(exc, cls))
        if status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "message": str(exc)},
        )

    # ── Projects ──

    @app.post("/projects", status_code=201)
    def create_project(req: ProjectCreateRequest):
        project = store.create_project(
            name=req.name,
            source_ref=req.source_ref,
            health_path=req.health_path,
            container_port=req.container_port,
            validation=req.validation,
        )
        return project.to_json()

    @app.get("/projects")
    def list_projects():
        return {"projects": [p.to_json() for p in store.list_projects()]}

    @app.patch("/projects/{project_id}")
    def update_project(project_id: str, req: ProjectConfigRequest):
        validation = None
        if req.validation is not None:
            # Only the fields sent in the request change; the rest keep their stored values.
            current = orchestrator.get_project(project_id).validation
            validation = current.model_copy(update=req.validation.model_dump(exclude_unset=True))
        project = store.update_project_config(
            project_id, **req.model_dump(exclude_none=True, exclude={"validation"}),
            validation=validation,
        )
        return project.to_json()

    # ── Deployments ──

    @app.post("/deploy", status_code=202)
    def deploy(req: DeployRequest):
        result = orchestrator.deploy(req.project_id, req.image_tag)
        return result.to_json()

    @app.post("/projects/{project_id}/cancel-deploy")
    def cancel_deploy(project_id: str):
        orchestrator.get_project(project_id)
        return {"cancelled": orchestrator.cancel(project_id)}

    @app.post("/rollback")
    def rollback_project(req: RollbackRequest):
        result = rollback.rollback(req.project_id)
        return result.to_json()

    @app.get("/deployments")
    def list_deployments(project_id: str | None = Query(default=None, alias="projectId")):
        deployments = orchestrator.list_deployments(project_id)
        return {"deployments": [d.to_json() for d in deployments]}

    @app.get("/status/{project_id}")
    def status(project_id: str):
        orchestrator.get_project(project_id)
        active = orchestrator.active_deployment(project_id)
        return {
            "status": "active" if active else "idle",
            "activeDeployment": active.to_json() if active else None,
        }

    @app.post("/system/reconcile")
    def reconcile():
        report = reconciler.reconcile()
        app.state.last_reconcile = report
        return {"ok": True, "report": report.to_json()}

    # ── Container passthrough ──

    @app.get("/projects/{project_id}/metrics")
    def project_metrics(project_id: str):
        orchestrator.get_project(project_id)
        timestamp = datetime.now(timezone.utc).isoformat()
        active = orchestrator.active_deployment(project_id)
        if active is None:
            return {**metrics.container_metrics(None), "timestamp": timestamp}

        stats = runtime.stats(active.container_name)
        if stats is None:
            logger.warning("docker stats returned nothing", extra={"container_name": active.container_name})
        return {**metrics.container_metrics(stats), "timestamp": timestamp}

    @app.get("/projects/{project_id}/logs")
    def project_logs(project_id: str, lines: int = 200):
        orchestrator.get_project(project_id)
        # Fall back to the newest deployment so failed containers stay inspectable.
        target = orchestrator.active_deployment(project_id)
        if target is None:
            history = orchestrator.list_deployments(project_id)
            target = history[0] if history else None
        if target is None:
            return {"lines": [], "containerName": None}
        return {
            "lines": runtime.logs(target.container_name, max(1, min(lines, 1000))),
            "containerName": target.container_name,
        }

    @app.get("/metrics")
    def prometheus_metrics():
        return metrics_response()

    return app


app = create_app()
