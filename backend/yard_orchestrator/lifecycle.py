"""Resource status vocabulary and the transitions every resource kind obeys.

All kinds share one state machine:

    pending -> installing -> active | failed
    active -> removing -> uninstalled | failed
    failed -> installing        (operator retry, a fresh dispatch)
    active <-> paused           (task kinds only, operator controlled)

Transitions are compare-and-set updates so a writer holding a stale view of
the resource cannot overwrite a newer status.
"""

import logging
from typing import Dict, FrozenSet, Iterable, Optional

from django.utils import timezone

from .errors import InvalidTransition
from .models import ManagedResource

logger = logging.getLogger(__name__)

PENDING = "pending"
INSTALLING = "installing"
ACTIVE = "active"
FAILED = "failed"
REMOVING = "removing"
UNINSTALLED = "uninstalled"
PAUSED = "paused"

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({INSTALLING}),
    INSTALLING: frozenset({ACTIVE, FAILED}),
    ACTIVE: frozenset({REMOVING, PAUSED}),
    REMOVING: frozenset({UNINSTALLED, FAILED}),
    FAILED: frozenset({INSTALLING}),
    PAUSED: frozenset({ACTIVE}),
    UNINSTALLED: frozenset(),
}

PAUSABLE_KINDS = frozenset({"recurring_task", "worker_task"})
IN_FLIGHT = frozenset({INSTALLING, REMOVING})

# Operation -> (states it may start from, in-progress state, success state)
OPERATIONS = {
    "install": ((PENDING, FAILED), INSTALLING, ACTIVE),
    "uninstall": ((ACTIVE,), REMOVING, UNINSTALLED),
}


def can_transition(current: str, target: str, kind: Optional[str] = None) -> bool:
    if target == PAUSED or current == PAUSED:
        if kind is not None and kind not in PAUSABLE_KINDS:
            return False
    return target in TRANSITIONS.get(current, frozenset())


def accepts_operation(resource: ManagedResource, operation: str) -> bool:
    sources, _, _ = OPERATIONS[operation]
    return resource.status in sources


def transition(
    resource: ManagedResource,
    target: str,
    expected: Optional[Iterable[str]] = None,
    **fields,
) -> ManagedResource:
    """Move ``resource`` to ``target`` in a single conditional UPDATE.

    ``expected`` restricts the states the row may currently be in; it defaults
    to the in-memory status. Extra ``fields`` are written in the same statement.
    Raises InvalidTransition if the move is illegal or the row changed underneath.
    """
    sources = list(expected) if expected is not None else [resource.status]
    legal = [source for source in sources if can_transition(source, target, resource.kind)]
    if not legal:
        raise InvalidTransition(resource.status, target)
    now = timezone.now()
    updated = ManagedResource.objects.filter(pk=resource.pk, status__in=legal).update(
        status=target, updated_at=now, **fields
    )
    if not updated:
        current = ManagedResource.objects.filter(pk=resource.pk).values_list("status", flat=True).first()
        raise InvalidTransition(current or "missing", target)
    logger.info("resource %s (%s) -> %s", resource.pk, resource.kind, target)
    resource.refresh_from_db()
    return resource


def begin(resource: ManagedResource, operation: str) -> ManagedResource:
    sources, in_progress, _ = OPERATIONS[operation]
    fields = {"error_log": ""} if operation == "install" else {}
    return transition(resource, in_progress, expected=sources, **fields)


def complete(resource: ManagedResource, operation: str) -> ManagedResource:
    _, in_progress, done = OPERATIONS[operation]
    now = timezone.now()
    if done == ACTIVE:
        return transition(resource, done, expected=[in_progress], installed_at=now, error_log="")
    return transition(resource, done, expected=[in_progress], uninstalled_at=now)


def fail(resource: ManagedResource, error_log: str) -> ManagedResource:
    message = (error_log or "").strip() or "Operation failed without output"
    return transition(resource, FAILED, expected=list(IN_FLIGHT), error_log=message)


def pause(resource: ManagedResource) -> ManagedResource:
    return transition(resource, PAUSED, expected=[ACTIVE])


def resume(resource: ManagedResource) -> ManagedResource:
    return transition(resource, ACTIVE, expected=[PAUSED])
