"""Error taxonomy shared by the orchestrator, rollback and reconciliation code.

Conflict, NotFound and DeploymentError are expected outcomes that carry a
message meant for the operator. ExternalCallError and its subclasses mean a
container runtime or traffic switch call misbehaved; they are surfaced as-is.
"""


class OrchestratorError(Exception):
    """Base class for everything the orchestration layer raises on purpose."""


class ConflictError(OrchestratorError):
    """Raised when a project already has a deployment in progress."""


class NotFoundError(OrchestratorError):
    def __init__(self, what: str):
        super().__init__(f"{what} not found")
        self.what = what


class DeploymentError(OrchestratorError):
    """Raised when a deployment or rollback fails for a user-actionable reason."""


class DeploymentCancelled(DeploymentError):
    """Raised when an in-flight deployment is cancelled by an operator."""


class StaleRecordError(DeploymentError):
    """Raised when a conditional status update finds the row already moved.

    Another actor (reconciliation, a concurrent rollback) got there first, so
    the operation is abandoned rather than reported as a single-flight conflict.
    """


class ExternalCallError(OrchestratorError):
    """Raised when an external boundary (docker, nginx) fails unexpectedly."""


class ContainerRuntimeError(ExternalCallError):
    pass


class TrafficSwitchError(ExternalCallError):
    pass
