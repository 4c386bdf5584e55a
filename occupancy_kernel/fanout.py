"""
Occupancy Kernel — Notification Fan-out v1.0

Turns one AllocationEvent into one notification record per stakeholder:

  affected occupant        high     always
  other cotenants          medium   minus the actor
  in-scope supervisors     medium   minus the actor
  administrators           low      minus the actor

Recipients are deduplicated by id; the first (highest-priority) entry wins.

Delivery is best-effort. ``dispatch`` never raises: every failure is
recorded in the returned DispatchResult, and the caller decides how to log
it. The committed allocation is never affected.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .domain_types import ROLE_ADMINISTRATOR, ROLE_OCCUPANT, ROLE_SUPERVISOR, Resident
from .events import ALLOCATED, CAUSE_OCCUPANT_DELETED, DEALLOCATED, AllocationEvent
from .scope import resolve_scope
from .store import DirectoryStore, NotificationRecord, NotificationStore

logger = logging.getLogger(__name__)

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"

AUDIENCE_OCCUPANT = "occupant"
AUDIENCE_COTENANT = "cotenant"
AUDIENCE_SUPERVISOR = "supervisor"
AUDIENCE_ADMINISTRATOR = "administrator"


@dataclass(frozen=True)
class MessageTemplate:
    type: str
    title: str
    body: str


# (event kind, audience) → template. Placeholders: name, number, block.
TEMPLATES: Dict[tuple, MessageTemplate] = {
    (ALLOCATED, AUDIENCE_OCCUPANT): MessageTemplate(
        "space_allocated",
        "Room Allocated",
        "You have been allocated Room {number} in Block {block}.",
    ),
    (ALLOCATED, AUDIENCE_COTENANT): MessageTemplate(
        "roommate_joined",
        "New Roommate Assigned",
        "{name} has been assigned as your new roommate in Room {number}.",
    ),
    (ALLOCATED, AUDIENCE_SUPERVISOR): MessageTemplate(
        "occupant_assigned",
        "Occupant Assigned to Room",
        "{name} has been assigned to Room {number} in Block {block}.",
    ),
    (ALLOCATED, AUDIENCE_ADMINISTRATOR): MessageTemplate(
        "space_allocated",
        "Room Allocated",
        "Room {number} in Block {block} has been allocated to {name}.",
    ),
    (DEALLOCATED, AUDIENCE_OCCUPANT): MessageTemplate(
        "space_deallocated",
        "Room Deallocated",
        "You have been deallocated from Room {number} in Block {block}.",
    ),
    (DEALLOCATED, AUDIENCE_COTENANT): MessageTemplate(
        "roommate_left",
        "Roommate Moved Out",
        "{name} has been deallocated from your room {number} and is no longer your roommate.",
    ),
    (DEALLOCATED, AUDIENCE_SUPERVISOR): MessageTemplate(
        "occupant_removed",
        "Occupant Removed from Room",
        "{name} has been removed from Room {number} in Block {block}.",
    ),
    (DEALLOCATED, AUDIENCE_ADMINISTRATOR): MessageTemplate(
        "space_deallocated",
        "Room Deallocated",
        "Room {number} in Block {block} has been deallocated from {name}.",
    ),
}

_DELETION_SUFFIX = " Room automatically deallocated because the account was deleted."


@dataclass(frozen=True)
class Recipient:
    """One computed delivery target."""

    id: str
    role: str
    audience: str
    priority: str


@dataclass
class DispatchResult:
    """Explicit outcome of one fan-out. Never raised, always returned."""

    event_kind: str
    space_id: str
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


# ---------------------------------------------------------------------------
# Recipient computation (pure)
# ---------------------------------------------------------------------------

def compute_recipients(
    event: AllocationEvent,
    staff: Iterable[Resident],
    exclude_actor: Optional[str] = None,
) -> List[Recipient]:
    """
    Compute the recipient list for ``event``.

    ``staff`` is the candidate supervisor/administrator population; only
    active ones are considered. ``exclude_actor`` is removed from every
    group except the affected occupant's personal notice.
    """
    recipients: List[Recipient] = []
    seen: set[str] = set()

    def _add(resident_id: str, role: str, audience: str, priority: str) -> None:
        if resident_id in seen:
            return
        seen.add(resident_id)
        recipients.append(Recipient(resident_id, role, audience, priority))

    _add(event.occupant.id, ROLE_OCCUPANT, AUDIENCE_OCCUPANT, PRIORITY_HIGH)

    for cotenant_id in event.cotenant_ids:
        if cotenant_id == event.occupant.id or cotenant_id == exclude_actor:
            continue
        _add(cotenant_id, ROLE_OCCUPANT, AUDIENCE_COTENANT, PRIORITY_MEDIUM)

    staff = [r for r in staff if r.active and r.id != exclude_actor]

    for resident in sorted(staff, key=lambda r: r.id):
        if resident.role == ROLE_SUPERVISOR and resident_covers(resident, event.space.block):
            _add(resident.id, ROLE_SUPERVISOR, AUDIENCE_SUPERVISOR, PRIORITY_MEDIUM)

    for resident in sorted(staff, key=lambda r: r.id):
        if resident.role == ROLE_ADMINISTRATOR:
            _add(resident.id, ROLE_ADMINISTRATOR, AUDIENCE_ADMINISTRATOR, PRIORITY_LOW)

    return recipients


def resident_covers(resident: Resident, block: str) -> bool:
    return resolve_scope(resident).includes(block)


def render(event: AllocationEvent, recipient: Recipient, now: datetime) -> NotificationRecord:
    """Build the stored record for one recipient."""
    template = TEMPLATES[(event.kind, recipient.audience)]
    message = template.body.format(
        name=event.occupant.name,
        number=event.space.number,
        block=event.space.block,
    )
    if event.cause == CAUSE_OCCUPANT_DELETED and recipient.audience in (
        AUDIENCE_SUPERVISOR, AUDIENCE_ADMINISTRATOR,
    ):
        message += _DELETION_SUFFIX
    return NotificationRecord(
        recipient_id=recipient.id,
        recipient_role=recipient.role,
        type=template.type,
        title=template.title,
        message=message,
        priority=recipient.priority,
        data={
            "event_kind": event.kind,
            "cause": event.cause,
            "space_id": event.space.id,
            "space_number": event.space.number,
            "block": event.space.block,
            "occupant_id": event.occupant.id,
            "occupant_name": event.occupant.name,
            "actor_id": event.actor_id,
        },
        created_at=now,
    )


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationDispatcher:
    """
    Computes recipients and appends one record each.

    With an ``executor`` the work runs in the background and ``submit``
    returns immediately; without one it runs inline and ``submit`` returns
    an already-completed future.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        notifications: NotificationStore,
        clock: Optional[Callable[[], datetime]] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._directory = directory
        self._notifications = notifications
        self._clock = clock or _utc_now
        self._executor = executor

    def dispatch(
        self, event: AllocationEvent, exclude_actor: Optional[str] = None,
    ) -> DispatchResult:
        result = DispatchResult(event_kind=event.kind, space_id=event.space.id)

        try:
            staff = self._directory.list_residents(role=ROLE_SUPERVISOR, active_only=True)
            staff += self._directory.list_residents(role=ROLE_ADMINISTRATOR, active_only=True)
        except Exception as exc:
            # Staff lookup failed: still notify the occupant and cotenants.
            result.failed["*staff"] = f"recipient lookup failed: {exc}"
            staff = []

        now = self._clock()
        for recipient in compute_recipients(event, staff, exclude_actor):
            try:
                self._notifications.append(render(event, recipient, now))
                result.delivered.append(recipient.id)
            except Exception as exc:
                result.failed[recipient.id] = str(exc)

        return result

    def submit(
        self, event: AllocationEvent, exclude_actor: Optional[str] = None,
    ) -> "Future[DispatchResult]":
        if self._executor is not None:
            return self._executor.submit(self.dispatch, event, exclude_actor)
        future: "Future[DispatchResult]" = Future()
        future.set_result(self.dispatch(event, exclude_actor))
        return future
