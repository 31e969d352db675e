"""
Deployment status state machine.

Forward chain: draft -> configuring -> provisioning -> deploying -> active.
failed is reachable from every non-terminal state. configuring may also be
re-entered from deploying/active/failed, which starts a new deploy attempt
(bundle re-injection or an operator reopening the deployment).
"""
from typing import Dict, FrozenSet, List

from models import DeploymentStatus
from utils.errors import InvalidTransitionError

S = DeploymentStatus

ALLOWED_TRANSITIONS: Dict[DeploymentStatus, FrozenSet[DeploymentStatus]] = {
    S.DRAFT: frozenset({S.CONFIGURING, S.FAILED}),
    # configuring -> deploying when no database provisioning is needed
    S.CONFIGURING: frozenset({S.CONFIGURING, S.PROVISIONING, S.DEPLOYING, S.FAILED}),
    S.PROVISIONING: frozenset({S.DEPLOYING, S.FAILED}),
    # deploying -> deploying records build progress from the status tracker
    S.DEPLOYING: frozenset({S.DEPLOYING, S.ACTIVE, S.FAILED, S.CONFIGURING}),
    S.ACTIVE: frozenset({S.CONFIGURING}),
    S.FAILED: frozenset({S.CONFIGURING}),
}

# Statuses a deploy request may start from
DEPLOYABLE_STATUSES = frozenset({S.DRAFT, S.CONFIGURING})

if set(ALLOWED_TRANSITIONS) != set(DeploymentStatus):
    raise RuntimeError("ALLOWED_TRANSITIONS must cover every DeploymentStatus")


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[DeploymentStatus(current)]


def transition(current: DeploymentStatus, target: DeploymentStatus) -> DeploymentStatus:
    """Return target if the move is legal, else raise InvalidTransitionError."""
    current = DeploymentStatus(current)
    target = DeploymentStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move deployment from {current.value} to {target.value}")
    return target


def predecessors(target: DeploymentStatus) -> List[str]:
    """Statuses from which target is reachable; used as a compare-and-set filter."""
    target = DeploymentStatus(target)
    return sorted(s.value for s, allowed in ALLOWED_TRANSITIONS.items() if target in allowed)
