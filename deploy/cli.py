#!/usr/bin/env python3
"""
ZeroShift command line

Runs on the HOST machine next to docker and nginx, against the same
SQLite store as the API server.

Usage:
    zeroshift project-add myapp --source https://github.com/me/myapp.git
    zeroshift deploy myapp registry.local/myapp:1.4.0
    zeroshift rollback myapp
    zeroshift status myapp
    zeroshift history myapp
    zeroshift reconcile
    zeroshift serve
"""

import argparse
import sys

from app.config import settings
from app.database import DeploymentStore
from app.logging_config import setup_logging
from deploy.errors import OrchestratorError
from deploy.orchestrator import DeploymentOrchestrator
from deploy.reconcile import ReconciliationService
from deploy.rollback import RollbackCoordinator
from deploy.runtime import DockerRuntime
from deploy.traffic import NginxTrafficSwitch


def _resolve_project(store: DeploymentStore, ref: str):
    project = store.get_project_by_name(ref) or store.get_project(ref)
    if project is None:
        raise OrchestratorError(f"Unknown project '{ref}'")
    return project


def show_status(store: DeploymentStore, traffic: NginxTrafficSwitch, project) -> None:
    active = store.find_active_for_project(project.id)
    print(f"\n{'=' * 50}")
    print(f"  {project.name}")
    print(f"{'=' * 50}")
    if active is None:
        print("  Status:      idle (no active deployment)")
    else:
        print("  Status:      active")
        print(f"  Version:     v{active.version} ({active.color})")
        print(f"  Image:       {active.image_tag}")
        print(f"  Container:   {active.container_name}")
        print(f"  Port:        {active.port}")
    print(f"  Upstream:    {traffic.current_port(project.name) or 'not configured'}")
    print(f"  Health path: {project.health_path}")
    print(f"{'=' * 50}\n")


def show_history(store: DeploymentStore, project) -> None:
    history = store.find_for_project(project.id)
    if not history:
        print("No deployment history.")
        return

    print(f"\n{'=' * 70}")
    print(f"  Deployment History: {project.name} ({len(history)} entries)")
    print(f"{'=' * 70}")
    for d in history:
        print(
            f"  v{d.version:<4} [{d.status.value:<11}] {d.color:<5} "
            f"| {d.image_tag} | :{d.port} | {d.created_at.isoformat()}"
        )
    print(f"{'=' * 70}\n")


def serve() -> None:
    import uvicorn

    uvicorn.run("app.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ZeroShift blue-green deployment orchestrator")
    parser.add_argument("--db-path", default=None, help="SQLite store path (default: $DB_PATH)")
    parser.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("project-add", help="Register a project")
    add.add_argument("name")
    add.add_argument("--source", default=None, help="Repository URL or build context")
    add.add_argument("--health-path", default="/health")
    add.add_argument("--container-port", type=int, default=None)

    sub.add_parser("projects", help="List registered projects")

    deploy = sub.add_parser("deploy", help="Deploy an image for a project")
    deploy.add_argument("project")
    deploy.add_argument("image_tag")

    rollback = sub.add_parser("rollback", help="Roll back to the previous active version")
    rollback.add_argument("project")

    status = sub.add_parser("status", help="Show the active deployment")
    status.add_argument("project")

    history = sub.add_parser("history", help="Show deployment history")
    history.add_argument("project")

    sub.add_parser("reconcile", help="Repair records left behind by a crash")
    sub.add_parser("serve", help="Run the HTTP API")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        serve()
        return 0

    store = DeploymentStore(db_path=args.db_path)
    store.init_db()
    runtime = DockerRuntime()
    traffic = NginxTrafficSwitch()

    try:
        if args.command == "project-add":
            project = store.create_project(
                args.name,
                source_ref=args.source,
                health_path=args.health_path,
                container_port=args.container_port,
            )
            print(f"Registered {project.name} ({project.id})")
        elif args.command == "projects":
            for project in store.list_projects():
                print(f"  {project.name:<24} {project.id}  {project.source_ref or '-'}")
        elif args.command == "deploy":
            project = _resolve_project(store, args.project)
            result = DeploymentOrchestrator(store, runtime, traffic).deploy(project.id, args.image_tag)
            print(result.message)
        elif args.command == "rollback":
            project = _resolve_project(store, args.project)
            result = RollbackCoordinator(store, runtime, traffic).rollback(project.id)
            print(result.message)
        elif args.command == "status":
            show_status(store, traffic, _resolve_project(store, args.project))
        elif args.command == "history":
            show_history(store, _resolve_project(store, args.project))
        elif args.command == "reconcile":
            report = ReconciliationService(store, runtime).reconcile()
            print(
                f"Reconciled: {report.deploying_fixed} in-progress fixed, "
                f"{report.active_invalidated} active invalidated"
            )
    except OrchestratorError as e:
        print(f"\nDeployment error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nAborted by user.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
