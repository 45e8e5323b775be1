"""Structural validation of workflow definitions."""

from collections import Counter

import structlog
from pydantic import ValidationError

from outflow.core.errors import GraphValidationError
from outflow.workflows.executors import TriggerData
from outflow.workflows.graph import CONDITION_HANDLES, NodeType, WorkflowDefinition, describe_error

log = structlog.get_logger()

# Node types a lead can leave by one path only
SINGLE_EXIT_TYPES = {NodeType.TRIGGER, NodeType.ACTION_EMAIL}


def check_definition(definition: WorkflowDefinition) -> list[str]:
    """Return every structural violation; empty list means valid."""
    violations: list[str] = []

    node_counts = Counter(node.id for node in definition.nodes)
    for node_id, count in node_counts.items():
        if count > 1:
            violations.append(f"Node id '{node_id}' is used by {count} nodes")

    edge_counts = Counter(edge.id for edge in definition.edges)
    for edge_id, count in edge_counts.items():
        if count > 1:
            violations.append(f"Edge id '{edge_id}' is used by {count} edges")

    node_types = {node.id: node.type for node in definition.nodes}

    # Edges reference existing nodes
    for edge in definition.edges:
        if edge.source not in node_types:
            violations.append(f"Edge '{edge.id}' source '{edge.source}' does not exist")
        if edge.target not in node_types:
            violations.append(f"Edge '{edge.id}' target '{edge.target}' does not exist")

    # A single trigger with no incoming edges
    triggers = definition.trigger_nodes()
    if not triggers:
        violations.append("Workflow has no TRIGGER node")
    elif len(triggers) > 1:
        ids = ", ".join(node.id for node in triggers)
        violations.append(f"Workflow has {len(triggers)} TRIGGER nodes ({ids}); exactly one is allowed")
    for trigger in triggers:
        if definition.incoming(trigger.id):
            violations.append(f"TRIGGER node '{trigger.id}' has incoming edges")
        try:
            TriggerData.model_validate(trigger.data)
        except ValidationError as e:
            problems = "; ".join(describe_error(error) for error in e.errors())
            violations.append(f"TRIGGER node '{trigger.id}' has invalid data ({problems})")

    for node in definition.nodes:
        outgoing = definition.outgoing(node.id)

        if node.type == NodeType.CONDITION:
            # Exactly one true and one false branch
            handles = Counter(edge.handle for edge in outgoing)
            for handle in CONDITION_HANDLES:
                if handles[handle] == 0:
                    violations.append(f"CONDITION node '{node.id}' is missing its '{handle}' branch")
                elif handles[handle] > 1:
                    violations.append(
                        f"CONDITION node '{node.id}' has {handles[handle]} '{handle}' branches"
                    )
            for edge in outgoing:
                if edge.handle not in CONDITION_HANDLES:
                    violations.append(
                        f"Edge '{edge.id}' from CONDITION node '{node.id}' needs handle "
                        f"'true' or 'false', got {edge.handle!r}"
                    )
            continue

        for edge in outgoing:
            if edge.handle is not None:
                violations.append(
                    f"Edge '{edge.id}' from {node.type.value} node '{node.id}' must not carry a handle"
                )

        # A delay always leads somewhere
        if node.type == NodeType.DELAY:
            if not outgoing:
                violations.append(f"DELAY node '{node.id}' has no outgoing edge")
            elif len(outgoing) > 1:
                violations.append(f"DELAY node '{node.id}' has {len(outgoing)} outgoing edges; at most one is allowed")
        elif node.type in SINGLE_EXIT_TYPES and len(outgoing) > 1:
            violations.append(
                f"{node.type.value} node '{node.id}' has {len(outgoing)} outgoing edges; at most one is allowed"
            )

    return violations


def validate(definition: WorkflowDefinition) -> None:
    """Raise GraphValidationError with all violations, if any."""
    violations = check_definition(definition)
    if violations:
        log.info("workflow_invalid", workflow_id=definition.id, violations=len(violations))
        raise GraphValidationError(violations)
