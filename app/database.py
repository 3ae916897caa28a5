import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from app.config import settings
from app.models import (
    IN_PROGRESS_STATUSES,
    Deployment,
    DeploymentStatus,
    Project,
    ValidationConfig,
    can_transition,
    slot_color,
)
from deploy.errors import ConflictError, NotFoundError, StaleRecordError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    source_ref TEXT,
    health_path TEXT NOT NULL,
    container_port INTEGER NOT NULL,
    timeout_seconds REAL NOT NULL,
    max_retries INTEGER NOT NULL,
    retry_delay_seconds REAL NOT NULL,
    max_latency_ms REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS deployments (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    version INTEGER NOT NULL,
    image_tag TEXT NOT NULL,
    container_name TEXT NOT NULL UNIQUE,
    port INTEGER NOT NULL UNIQUE,
    color TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, version)
);

-- The exclusive per-project deploy claim.
CREATE UNIQUE INDEX IF NOT EXISTS deployments_one_pending_per_project
    ON deployments (project_id) WHERE status = 'PENDING';

CREATE INDEX IF NOT EXISTS deployments_project_status
    ON deployments (project_id, status);
"""

PROJECT_CONFIG_FIELDS = ("source_ref", "health_path", "container_port", "validation")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        source_ref=row["source_ref"],
        health_path=row["health_path"],
        container_port=row["container_port"],
        validation=ValidationConfig(
            timeout_seconds=row["timeout_seconds"],
            max_retries=row["max_retries"],
            retry_delay_seconds=row["retry_delay_seconds"],
            max_latency_ms=row["max_latency_ms"],
        ),
        created_at=row["created_at"],
    )


def _row_to_deployment(row: sqlite3.Row) -> Deployment:
    return Deployment(
        id=row["id"],
        project_id=row["project_id"],
        version=row["version"],
        image_tag=row["image_tag"],
        container_name=row["container_name"],
        port=row["port"],
        color=row["color"],
        status=DeploymentStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DeploymentStore:
    """SQLite-backed record of projects and every deployment attempt.

    Each operation opens its own connection, so one store instance can be
    shared by request threads. Writes that must be atomic with respect to
    concurrent claims run inside ``BEGIN IMMEDIATE``.
    """

    def __init__(self, db_path: str | None = None, base_port: int | None = None,
                 container_prefix: str | None = None):
        self.db_path = db_path or settings.DB_PATH
        self.base_port = base_port if base_port is not None else settings.BASE_APP_PORT
        self.container_prefix = container_prefix or settings.CONTAINER_PREFIX

    def _get_connection(self) -> sqlite3.Connection:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _read(self):
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self) -> None:
        conn = self._get_connection()
        try:
            conn.executescript(SCHEMA)
            logger.info("Database initialized")
        finally:
            conn.close()

    def ping(self) -> bool:
        with self._read() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ── Projects ──────────────────────────────────────────────────

    def create_project(
        self,
        name: str,
        source_ref: str | None = None,
        health_path: str = "/health",
        container_port: int | None = None,
        validation: ValidationConfig | None = None,
    ) -> Project:
        validation = validation or ValidationConfig()
        project_id = uuid.uuid4().hex
        try:
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO projects (id, name, source_ref, health_path, container_port,
                           timeout_seconds, max_retries, retry_delay_seconds, max_latency_ms, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        project_id, name, source_ref, health_path,
                        container_port or settings.DEFAULT_CONTAINER_PORT,
                        validation.timeout_seconds, validation.max_retries,
                        validation.retry_delay_seconds, validation.max_latency_ms,
                        _now(),
                    ),
                )
        except sqlite3.IntegrityError:
            raise ConflictError(f"Project '{name}' already exists")
        logger.info("Project registered", extra={"project_id": project_id})
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Project | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return _row_to_project(row) if row else None

    def get_project_by_name(self, name: str) -> Project | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM projects WHERE name = ?", (name,)).fetchone()
        return _row_to_project(row) if row else None

    def list_projects(self) -> list[Project]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
        return [_row_to_project(row) for row in rows]

    def update_project_config(self, project_id: str, **fields) -> Project:
        unknown = set(fields) - set(PROJECT_CONFIG_FIELDS)
        if unknown:
            raise ValueError(f"Not a project configuration field: {', '.join(sorted(unknown))}")

        columns = {}
        validation = fields.pop("validation", None)
        if validation is not None:
            columns.update(validation.model_dump())
        for key, value in fields.items():
            if value is not None:
                columns[key] = value

        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone() is None:
                raise NotFoundError("Project")
            if columns:
                assignments = ", ".join(f"{column} = ?" for column in columns)
                conn.execute(
                    f"UPDATE projects SET {assignments} WHERE id = ?",
                    (*columns.values(), project_id),
                )
        return self.get_project(project_id)

    # ── Deployments ───────────────────────────────────────────────

    def container_name_for(self, project: Project, version: int) -> str:
        return f"{self.container_prefix}-{project.name}-v{version}"

    def create_deployment(self, project: Project, image_tag: str) -> Deployment:
        """Claim the project's single in-flight slot with a new PENDING row.

        Version, container name and port are allocated inside the same write
        transaction. The partial unique index on PENDING rows rejects a
        second claim even if the explicit check below were skipped.
        """
        deployment_id = uuid.uuid4().hex
        now = _now()
        try:
            with self._transaction() as conn:
                pending = conn.execute(
                    "SELECT id FROM deployments WHERE project_id = ? AND status = ?",
                    (project.id, DeploymentStatus.PENDING.value),
                ).fetchone()
                if pending is not None:
                    raise ConflictError(
                        f"A deployment is already in progress for project '{project.name}'"
                    )

                version = self._next_version(conn, project.id)
                max_port = conn.execute("SELECT MAX(port) FROM deployments").fetchone()[0]
                port = max(self.base_port, max_port + 1) if max_port is not None else self.base_port

                conn.execute(
                    """INSERT INTO deployments (id, project_id, version, image_tag, container_name,
                           port, color, status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        deployment_id, project.id, version, image_tag,
                        self.container_name_for(project, version), port,
                        slot_color(version), DeploymentStatus.PENDING.value, now, now,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"A deployment is already in progress for project '{project.name}' ({e})"
            )
        return self.get_deployment(deployment_id)

    @staticmethod
    def _next_version(conn: sqlite3.Connection, project_id: str) -> int:
        latest = conn.execute(
            "SELECT MAX(version) FROM deployments WHERE project_id = ?", (project_id,)
        ).fetchone()[0]
        return (latest or 0) + 1

    def next_version(self, project_id: str) -> int:
        with self._read() as conn:
            return self._next_version(conn, project_id)

    def get_deployment(self, deployment_id: str) -> Deployment | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM deployments WHERE id = ?", (deployment_id,)).fetchone()
        return _row_to_deployment(row) if row else None

    def find_active_for_project(self, project_id: str) -> Deployment | None:
        with self._read() as conn:
            row = conn.execute(
                """SELECT * FROM deployments WHERE project_id = ? AND status = ?
                   ORDER BY version DESC LIMIT 1""",
                (project_id, DeploymentStatus.ACTIVE.value),
            ).fetchone()
        return _row_to_deployment(row) if row else None

    def find_previous_for_project(self, project_id: str, before_version: int) -> Deployment | None:
        """Most recent ROLLED_BACK deployment with a version below ``before_version``."""
        with self._read() as conn:
            row = conn.execute(
                """SELECT * FROM deployments
                   WHERE project_id = ? AND status = ? AND version < ?
                   ORDER BY version DESC LIMIT 1""",
                (project_id, DeploymentStatus.ROLLED_BACK.value, before_version),
            ).fetchone()
        return _row_to_deployment(row) if row else None

    def find_all_deploying(self) -> list[Deployment]:
        placeholders = ", ".join("?" for _ in IN_PROGRESS_STATUSES)
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM deployments WHERE status IN ({placeholders}) ORDER BY created_at",
                tuple(status.value for status in IN_PROGRESS_STATUSES),
            ).fetchall()
        return [_row_to_deployment(row) for row in rows]

    def find_all_active_with_projects(self) -> list[tuple[Deployment, Project]]:
        with self._read() as conn:
            rows = conn.execute(
                """SELECT d.*, p.name AS project_name, p.source_ref, p.health_path,
                          p.container_port, p.timeout_seconds, p.max_retries,
                          p.retry_delay_seconds, p.max_latency_ms, p.created_at AS project_created_at
                   FROM deployments d JOIN projects p ON p.id = d.project_id
                   WHERE d.status = ? ORDER BY d.created_at""",
                (DeploymentStatus.ACTIVE.value,),
            ).fetchall()

        result = []
        for row in rows:
            project = Project(
                id=row["project_id"],
                name=row["project_name"],
                source_ref=row["source_ref"],
                health_path=row["health_path"],
                container_port=row["container_port"],
                validation=ValidationConfig(
                    timeout_seconds=row["timeout_seconds"],
                    max_retries=row["max_retries"],
                    retry_delay_seconds=row["retry_delay_seconds"],
                    max_latency_ms=row["max_latency_ms"],
                ),
                created_at=row["project_created_at"],
            )
            result.append((_row_to_deployment(row), project))
        return result

    def find_for_project(self, project_id: str) -> list[Deployment]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM deployments WHERE project_id = ? ORDER BY version DESC",
                (project_id,),
            ).fetchall()
        return [_row_to_deployment(row) for row in rows]

    def find_all(self, project_id: str | None = None) -> list[Deployment]:
        if project_id is not None:
            return self.find_for_project(project_id)
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM deployments ORDER BY created_at DESC, version DESC"
            ).fetchall()
        return [_row_to_deployment(row) for row in rows]

    # ── Status transitions ────────────────────────────────────────

    @staticmethod
    def _transition(
        conn: sqlite3.Connection,
        deployment_id: str,
        status: DeploymentStatus,
        expected: DeploymentStatus | None,
    ) -> None:
        row = conn.execute(
            "SELECT status FROM deployments WHERE id = ?", (deployment_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("Deployment")

        current = DeploymentStatus(row["status"])
        if expected is not None and current != expected:
            raise StaleRecordError(
                f"Deployment {deployment_id} is {current.value}, expected {expected.value}"
            )
        if current == status:
            return
        if not can_transition(current, status):
            raise StaleRecordError(
                f"Deployment {deployment_id} cannot move from {current.value} to {status.value}"
            )

        conn.execute(
            "UPDATE deployments SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (status.value, _now(), deployment_id, current.value),
        )

    def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        expected: DeploymentStatus | None = None,
    ) -> Deployment:
        """Move a deployment to ``status``.

        With ``expected`` set this is a conditional write: it raises
        StaleRecordError if another actor already moved the row. Illegal
        transitions (anything out of FAILED, for instance) raise the same.
        Setting a row to the status it already has is a no-op.
        """
        with self._transaction() as conn:
            self._transition(conn, deployment_id, status, expected)
        return self.get_deployment(deployment_id)

    def activate(
        self, deployment_id: str, previous_id: str | None = None
    ) -> tuple[Deployment, Deployment | None]:
        """Promote a PENDING deployment and demote the previous active one together.

        Both rows change in a single transaction so no reader ever sees two
        ACTIVE deployments for the project. If the previous row was already
        moved by someone else it is left alone.
        """
        with self._transaction() as conn:
            self._transition(conn, deployment_id, DeploymentStatus.ACTIVE, DeploymentStatus.PENDING)
            if previous_id is not None:
                try:
                    self._transition(
                        conn, previous_id, DeploymentStatus.ROLLED_BACK, DeploymentStatus.ACTIVE
                    )
                except StaleRecordError as e:
                    logger.warning(
                        "Previous active deployment already moved, not demoting",
                        extra={"deployment_id": previous_id, "error": str(e)},
                    )

        previous = self.get_deployment(previous_id) if previous_id is not None else None
        return self.get_deployment(deployment_id), previous
