"""Exception types raised by the workflow engine."""

from typing import Optional


class OutflowError(Exception):
    """Base class for engine errors."""


class GraphValidationError(OutflowError):
    """A workflow definition breaks one or more structural rules.

    All violations are collected so the editor can show every problem at once.
    """

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__(
            f"Workflow definition has {len(self.violations)} violation(s): "
            + "; ".join(self.violations)
        )


class GraphIntegrityError(OutflowError):
    """The graph seen by a live execution is inconsistent."""


class NodeExecutionError(OutflowError):
    """A node could not be executed (bad configuration or collaborator failure)."""

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.node_id = node_id
        super().__init__(message)


class EmailSendError(NodeExecutionError):
    """The email collaborator gave up after its retry budget."""


class NotFoundError(OutflowError):
    """Unknown workflow, lead or execution."""


class ConcurrentUpdateError(OutflowError):
    """An optimistic write lost against another writer."""

    def __init__(self, workflow_id: str, lead_id: str, expected_revision: int):
        self.workflow_id = workflow_id
        self.lead_id = lead_id
        self.expected_revision = expected_revision
        super().__init__(
            f"Execution ({workflow_id}, {lead_id}) changed since revision {expected_revision}"
        )
