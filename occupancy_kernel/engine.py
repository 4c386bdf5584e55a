"""
Occupancy Kernel — Allocation Engine v1.0

Top-level orchestrator. Validates preconditions, asks scope.py for
authorization, validates the candidate space via invariants.py, commits
through the directory's compare-and-swap, then hands the resulting
AllocationEvent to the fan-out dispatcher.

Concurrency:
  - per-entity locks (locking.EntityLocks), space keys before resident keys
  - optimistic CAS on ``version``; a lost race is retried up to
    _MAX_RETRIES times, then surfaced as InfrastructureError
  - fan-out runs after the commit, outside every lock
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from .diagnostics import compute_occupancy_stats
from .domain_types import (
    MAX_SUPERVISED_BLOCKS,
    Occupancy,
    Resident,
    Space,
    normalize_supervised_blocks,
    validate_block_id,
)
from .errors import (
    ALREADY_ALLOCATED,
    BLOCK_MISMATCH,
    HOME_BLOCK_LOCKED,
    NO_PREFERRED_BLOCK,
    NOT_A_SUPERVISOR,
    NOT_ALLOCATED_HERE,
    NOT_AN_OCCUPANT,
    OCCUPANT_INACTIVE,
    OCCUPIED_SPACE,
    SPACE_FULL,
    TOO_MANY_BLOCKS,
    AuthorizationDenied,
    DenialReason,
    DomainDenial,
    InfrastructureError,
    NotFoundError,
)
from .events import (
    ALLOCATED,
    CAUSE_OCCUPANT_DELETED,
    CAUSE_REQUESTED,
    DEALLOCATED,
    AllocationEvent,
    ResidentRef,
    SpaceRef,
)
from .fanout import DispatchResult, NotificationDispatcher
from .invariants import validate_resident, validate_space
from .locking import EntityLocks
from .scope import (
    OP_ALLOCATE,
    OP_DEALLOCATE,
    Decision,
    authorize,
    authorize_administration,
    resolve_scope,
)
from .store import DirectoryStore, StoreGuard

logger = logging.getLogger(__name__)

# Max attempts when a compare-and-swap loses to a concurrent writer
_MAX_RETRIES: int = 3


def _utc_now() -> datetime:
    """Get current UTC time (default clock)."""
    return datetime.now(timezone.utc)


class AllocationEngine:
    """
    The single source of truth for who occupies which space.

    Once a mutation commits it is final: notification outcomes are
    reported through ``on_dispatch`` and the log, never raised.
    """

    def __init__(
        self,
        directory: DirectoryStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        locks: Optional[EntityLocks] = None,
        guard: Optional[StoreGuard] = None,
        on_dispatch: Optional[Callable[[DispatchResult], None]] = None,
    ) -> None:
        self._directory = directory
        self._dispatcher = dispatcher
        self._clock = clock or _utc_now
        self._locks = locks or EntityLocks()
        self._guard = guard or StoreGuard()
        self._on_dispatch = on_dispatch

    # -- Allocation ---------------------------------------------------------

    def allocate(self, space_id: str, occupant_id: str, actor_id: str) -> Space:
        """
        Place ``occupant_id`` in ``space_id`` on behalf of ``actor_id``.

        Preconditions, first failure wins:
          1. space exists
          2. occupant exists and is an occupant
          3. occupant is active
          4. occupant has a home block
          5. space block == home block
          6. authorization gate approves
          7. space has a free spot
          8. occupant holds no occupancy anywhere
        """
        for attempt in range(_MAX_RETRIES):
            with self._locks.hold([space_id], [occupant_id]):
                outcome = self._try_allocate(space_id, occupant_id, actor_id)
            if outcome is not None:
                space, event = outcome
                logger.info(
                    f"Allocated {occupant_id} to space {space_id} "
                    f"(block {space.block}, {space.occupant_count}/{space.capacity}) "
                    f"by {actor_id}"
                )
                self._fan_out(event, actor_id)
                return space
            logger.debug(f"allocate({space_id}, {occupant_id}): CAS lost, attempt {attempt + 1}")

        raise InfrastructureError(
            "allocate", f"space {space_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
        )

    def _try_allocate(
        self, space_id: str, occupant_id: str, actor_id: str,
    ) -> Optional[Tuple[Space, AllocationEvent]]:
        space = self._require_space(space_id)
        occupant = self._require_resident(occupant_id, "occupant")

        if not occupant.is_occupant:
            raise DomainDenial(
                NOT_AN_OCCUPANT,
                f"Only occupants can be allocated spaces ({occupant_id!r} is a {occupant.role})",
            )
        if not occupant.active:
            raise DomainDenial(OCCUPANT_INACTIVE, f"Occupant {occupant_id!r} is deactivated")
        if not occupant.home_block:
            raise DomainDenial(
                NO_PREFERRED_BLOCK, f"Occupant {occupant_id!r} has no preferred block assigned",
            )
        if space.block != occupant.home_block:
            raise DomainDenial(
                BLOCK_MISMATCH,
                f"Cannot assign a space in block {space.block} to an occupant "
                f"from block {occupant.home_block}",
            )

        self._require_authorized(actor_id, OP_ALLOCATE, space, occupant)

        if space.occupant_count >= space.capacity:
            raise DomainDenial(SPACE_FULL, f"Space {space.number} is at full capacity")

        existing = self._guard.call(
            "find_space_by_occupant", self._directory.find_space_by_occupant, occupant_id,
        )
        if existing is not None:
            raise DomainDenial(
                ALREADY_ALLOCATED,
                f"Occupant {occupant_id!r} already holds space {existing.number}",
            )

        prior = tuple(space.occupant_ids)
        now = self._clock()
        candidate = space.copy()
        candidate.occupants.append(Occupancy(occupant_id=occupant_id, joined_at=now))
        validate_space(candidate)

        if not self._commit_space(candidate, space.version):
            return None

        event = AllocationEvent(
            kind=ALLOCATED,
            space=SpaceRef.of(candidate),
            occupant=ResidentRef.of(occupant),
            actor_id=actor_id,
            cotenant_ids=prior,
            occurred_at=now,
            cause=CAUSE_REQUESTED,
        )
        return candidate, event

    def deallocate(self, space_id: str, occupant_id: str, actor_id: str) -> Space:
        """Remove ``occupant_id`` from ``space_id`` on behalf of ``actor_id``."""
        for attempt in range(_MAX_RETRIES):
            with self._locks.hold([space_id], [occupant_id]):
                outcome = self._try_deallocate(space_id, occupant_id, actor_id)
            if outcome is not None:
                space, event = outcome
                logger.info(
                    f"Deallocated {occupant_id} from space {space_id} "
                    f"({space.occupant_count}/{space.capacity}) by {actor_id}"
                )
                self._fan_out(event, actor_id)
                return space
            logger.debug(f"deallocate({space_id}, {occupant_id}): CAS lost, attempt {attempt + 1}")

        raise InfrastructureError(
            "deallocate", f"space {space_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
        )

    def _try_deallocate(
        self, space_id: str, occupant_id: str, actor_id: str,
    ) -> Optional[Tuple[Space, AllocationEvent]]:
        space = self._require_space(space_id)
        occupant = self._require_resident(occupant_id, "occupant")

        self._require_authorized(actor_id, OP_DEALLOCATE, space, occupant)

        if not space.holds(occupant_id):
            raise DomainDenial(
                NOT_ALLOCATED_HERE,
                f"Occupant {occupant_id!r} is not allocated to space {space.number}",
            )

        return self._remove_occupancy(space, occupant, actor_id, CAUSE_REQUESTED)

    def _remove_occupancy(
        self, space: Space, occupant: Resident, actor_id: str, cause: str,
    ) -> Optional[Tuple[Space, AllocationEvent]]:
        """Shared by deallocate and delete_occupant. Caller holds the locks."""
        candidate = space.copy()
        candidate.occupants = [o for o in candidate.occupants if o.occupant_id != occupant.id]
        validate_space(candidate)

        if not self._commit_space(candidate, space.version):
            return None

        event = AllocationEvent(
            kind=DEALLOCATED,
            space=SpaceRef.of(candidate),
            occupant=ResidentRef.of(occupant),
            actor_id=actor_id,
            cotenant_ids=tuple(candidate.occupant_ids),
            occurred_at=self._clock(),
            cause=cause,
        )
        return candidate, event

    # -- Deletion -----------------------------------------------------------

    def delete_space(self, space_id: str, actor_id: str) -> None:
        """Delete an empty space. Occupied spaces are refused unconditionally."""
        self._require_administrator(actor_id)

        for attempt in range(_MAX_RETRIES):
            with self._locks.hold([space_id]):
                space = self._require_space(space_id)
                if space.occupants:
                    raise DomainDenial(
                        OCCUPIED_SPACE,
                        f"Cannot delete space {space.number}: it has "
                        f"{space.occupant_count} occupant(s)",
                    )
                deleted = self._guard.call(
                    "delete_space", self._directory.delete_space, space_id, space.version,
                )
            if deleted:
                logger.info(f"Deleted space {space_id} by {actor_id}")
                return
            logger.debug(f"delete_space({space_id}): CAS lost, attempt {attempt + 1}")

        raise InfrastructureError(
            "delete_space", f"space {space_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
        )

    def delete_occupant(self, occupant_id: str, actor_id: str) -> Optional[Space]:
        """
        Remove a resident record.

        If they hold an occupancy it is released first (engine-initiated,
        no authorization gate), so no space ever references a missing
        resident. Returns the space they were released from, if any.
        """
        self._require_administrator(actor_id)

        released: Optional[Tuple[Space, AllocationEvent]] = None
        try:
            for attempt in range(_MAX_RETRIES):
                held = self._guard.call(
                    "find_space_by_occupant", self._directory.find_space_by_occupant, occupant_id,
                )
                space_ids = [held.id] if held is not None else []

                with self._locks.hold(space_ids, [occupant_id]):
                    occupant = self._require_resident(occupant_id, "resident")
                    current = self._guard.call(
                        "find_space_by_occupant", self._directory.find_space_by_occupant, occupant_id,
                    )
                    if (current.id if current else None) != (held.id if held else None):
                        # Moved between lookup and lock; go around with the new space.
                        continue

                    if current is not None:
                        outcome = self._remove_occupancy(
                            current, occupant, actor_id, CAUSE_OCCUPANT_DELETED,
                        )
                        if outcome is None:
                            continue
                        released = outcome
                        logger.info(
                            f"Released {occupant_id} from space {current.id} before deletion"
                        )

                    deleted = self._guard.call(
                        "delete_resident", self._directory.delete_resident,
                        occupant_id, occupant.version,
                    )

                if deleted:
                    logger.info(f"Deleted resident {occupant_id} by {actor_id}")
                    return released[0] if released is not None else None

            raise InfrastructureError(
                "delete_occupant",
                f"resident {occupant_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
            )
        finally:
            # A committed release is announced whether or not the delete lands.
            if released is not None:
                self._fan_out(released[1], actor_id)

    # -- Resident reconfiguration ------------------------------------------

    def change_home_block(self, occupant_id: str, block: str, actor_id: str) -> Resident:
        """Move an occupant's home block. Refused while they hold a space."""
        self._require_administrator(actor_id)
        validate_block_id(block)

        for attempt in range(_MAX_RETRIES):
            with self._locks.hold([], [occupant_id]):
                occupant = self._require_resident(occupant_id, "occupant")
                if occupant.home_block == block:
                    return occupant
                held = self._guard.call(
                    "find_space_by_occupant", self._directory.find_space_by_occupant, occupant_id,
                )
                if held is not None:
                    raise DomainDenial(
                        HOME_BLOCK_LOCKED,
                        f"Cannot change block for occupant {occupant_id!r}: currently "
                        f"assigned to space {held.number} in block {held.block}. "
                        f"Deallocate first.",
                    )
                candidate = occupant.copy()
                candidate.home_block = block
                if self._commit_resident(candidate, occupant.version):
                    logger.info(f"Home block of {occupant_id} set to {block} by {actor_id}")
                    return candidate

        raise InfrastructureError(
            "change_home_block",
            f"resident {occupant_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
        )

    def set_supervised_blocks(
        self, supervisor_id: str, blocks: Iterable[str], actor_id: str,
    ) -> Resident:
        """Replace a supervisor's block set (at most MAX_SUPERVISED_BLOCKS)."""
        self._require_administrator(actor_id)
        normalized = normalize_supervised_blocks(blocks)
        if len(normalized) > MAX_SUPERVISED_BLOCKS:
            raise DomainDenial(
                TOO_MANY_BLOCKS,
                f"A supervisor can be assigned to at most {MAX_SUPERVISED_BLOCKS} blocks",
            )

        for attempt in range(_MAX_RETRIES):
            with self._locks.hold([], [supervisor_id]):
                supervisor = self._require_resident(supervisor_id, "supervisor")
                if not supervisor.is_supervisor:
                    raise DomainDenial(
                        NOT_A_SUPERVISOR, f"Resident {supervisor_id!r} is not a supervisor",
                    )
                candidate = supervisor.copy()
                candidate.supervised_blocks = normalized
                validate_resident(candidate)
                if self._commit_resident(candidate, supervisor.version):
                    logger.info(
                        f"Supervised blocks of {supervisor_id} set to {sorted(normalized)} "
                        f"by {actor_id}"
                    )
                    return candidate

        raise InfrastructureError(
            "set_supervised_blocks",
            f"resident {supervisor_id!r} kept changing; gave up after {_MAX_RETRIES} attempts",
        )

    # -- Queries ------------------------------------------------------------

    def get_space(self, space_id: str) -> Space:
        return self._require_space(space_id)

    def space_of(self, occupant_id: str) -> Optional[Space]:
        """The space an occupant currently holds, or None."""
        self._require_resident(occupant_id, "occupant")
        return self._guard.call(
            "find_space_by_occupant", self._directory.find_space_by_occupant, occupant_id,
        )

    def unallocated_occupants(self, actor_id: str) -> List[Resident]:
        """Active occupants with no space, limited to the actor's scope."""
        actor = self._require_actor(actor_id)
        if actor.is_occupant:
            raise AuthorizationDenied(
                DenialReason.NOT_SUPERVISOR, "Occupants cannot list unallocated occupants",
            )
        scope = resolve_scope(actor)
        if scope.is_empty():
            return []

        occupants = self._guard.call(
            "list_residents", self._directory.list_residents, "occupant", True,
        )
        allocated = self._guard.call(
            "allocated_occupant_ids", self._directory.allocated_occupant_ids,
        )
        return [
            o for o in occupants
            if o.id not in allocated and scope.includes(o.home_block)
        ]

    def occupancy_stats(self, actor_id: str) -> dict:
        """Occupancy statistics over the spaces in the actor's scope."""
        actor = self._require_actor(actor_id)
        scope = resolve_scope(actor)
        if scope.is_empty():
            return compute_occupancy_stats([], scope)
        blocks = None if scope.unrestricted else sorted(scope.blocks)
        spaces = self._guard.call("list_spaces", self._directory.list_spaces, blocks)
        return compute_occupancy_stats(spaces, scope)

    # -- Internal -----------------------------------------------------------

    def _require_space(self, space_id: str) -> Space:
        space = self._guard.call("get_space", self._directory.get_space, space_id)
        if space is None:
            raise NotFoundError("space", space_id)
        return space

    def _require_resident(self, resident_id: str, kind: str) -> Resident:
        resident = self._guard.call("get_resident", self._directory.get_resident, resident_id)
        if resident is None:
            raise NotFoundError(kind, resident_id)
        return resident

    def _require_actor(self, actor_id: str) -> Resident:
        actor = self._guard.call("get_resident", self._directory.get_resident, actor_id)
        if actor is None:
            raise AuthorizationDenied(
                DenialReason.UNKNOWN_ACTOR, f"Actor {actor_id!r} is not in the directory",
            )
        return actor

    def _require_authorized(
        self, actor_id: str, operation: str, space: Space, occupant: Resident,
    ) -> None:
        actor = self._require_actor(actor_id)
        self._raise_if_denied(authorize(actor, operation, space, occupant), actor_id, operation)

    def _require_administrator(self, actor_id: str) -> None:
        actor = self._require_actor(actor_id)
        self._raise_if_denied(authorize_administration(actor), actor_id, "administer")

    @staticmethod
    def _raise_if_denied(decision: Decision, actor_id: str, operation: str) -> None:
        if decision.allowed:
            return
        logger.warning(
            f"Denied {operation} for {actor_id}: {decision.reason.value} ({decision.detail})"
        )
        raise AuthorizationDenied(decision.reason, decision.detail)

    def _commit_space(self, candidate: Space, expected_version: int) -> bool:
        return self._guard.call(
            "compare_and_swap_space", self._directory.compare_and_swap_space,
            candidate, expected_version,
        )

    def _commit_resident(self, candidate: Resident, expected_version: int) -> bool:
        return self._guard.call(
            "compare_and_swap_resident", self._directory.compare_and_swap_resident,
            candidate, expected_version,
        )

    def _fan_out(self, event: AllocationEvent, actor_id: str) -> None:
        """Hand a committed event to the dispatcher. Never raises."""
        if self._dispatcher is None:
            return
        try:
            future = self._dispatcher.submit(event, exclude_actor=actor_id)
        except Exception as exc:
            logger.error(
                f"Could not enqueue notifications for {event.kind} in space {event.space.id}: {exc}",
                exc_info=True,
            )
            return
        future.add_done_callback(self._record_dispatch)

    def _record_dispatch(self, future: "Future[DispatchResult]") -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"Notification dispatch crashed: {exc}", exc_info=exc)
            return

        result = future.result()
        if result.ok:
            logger.debug(
                f"Notified {len(result.delivered)} recipient(s) of {result.event_kind} "
                f"in space {result.space_id}"
            )
        else:
            logger.warning(
                f"Notification fan-out for {result.event_kind} in space {result.space_id} "
                f"delivered {len(result.delivered)}, failed {len(result.failed)}: {result.failed}"
            )

        if self._on_dispatch is not None:
            try:
                self._on_dispatch(result)
            except Exception as exc:
                logger.error(f"on_dispatch hook failed: {exc}", exc_info=True)
