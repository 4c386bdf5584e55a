"""
Occupancy Kernel v1.0 — Notification Fan-out Tests

Recipient computation, deduplication, templates, and the guarantee that a
failing notification store never undoes a committed allocation.

Run:  python -m occupancy_kernel.test_fanout
"""

from __future__ import annotations

import os
import sys
from concurrent.futures import ThreadPoolExecutor

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from occupancy_kernel.domain_types import (
    ROLE_ADMINISTRATOR,
    ROLE_SUPERVISOR,
    create_resident,
    create_space,
)
from occupancy_kernel.engine import AllocationEngine
from occupancy_kernel.events import ALLOCATED, DEALLOCATED, AllocationEvent, ResidentRef, SpaceRef
from occupancy_kernel.fanout import (
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    NotificationDispatcher,
    compute_recipients,
)
from occupancy_kernel.store import InMemoryDirectory, InMemoryNotificationLog, NotificationRecord


STAFF = [
    create_resident("W1", "Wanda", role=ROLE_SUPERVISOR, supervised_blocks=["A"]),
    create_resident("W2", "Wes", role=ROLE_SUPERVISOR, supervised_blocks=["B"]),
    create_resident("W3", "Wyn", role=ROLE_SUPERVISOR, supervised_blocks=["A"], active=False),
    create_resident("AD", "Ada", role=ROLE_ADMINISTRATOR),
]


def _event(kind: str = ALLOCATED, cotenants=("O2",), actor: str = "W1") -> AllocationEvent:
    return AllocationEvent(
        kind=kind,
        space=SpaceRef(id="S", block="A", number="101"),
        occupant=ResidentRef(id="O1", name="Olu"),
        actor_id=actor,
        cotenant_ids=tuple(cotenants),
    )


class _FlakyLog(InMemoryNotificationLog):
    """Rejects records for the listed recipients."""

    def __init__(self, broken: set) -> None:
        super().__init__()
        self._broken = broken

    def append(self, record: NotificationRecord) -> int:
        if record.recipient_id in self._broken:
            raise RuntimeError(f"mailbox {record.recipient_id} unavailable")
        return super().append(record)


class _DeadLog(InMemoryNotificationLog):
    def append(self, record: NotificationRecord) -> int:
        raise RuntimeError("notification store down")


def test_recipient_groups_and_priorities() -> None:
    recipients = compute_recipients(_event(), STAFF, exclude_actor="W1")

    assert [(r.id, r.audience, r.priority) for r in recipients] == [
        ("O1", "occupant", PRIORITY_HIGH),
        ("O2", "cotenant", PRIORITY_MEDIUM),
        ("AD", "administrator", PRIORITY_LOW),
    ]


def test_supervisor_notified_when_not_actor() -> None:
    recipients = compute_recipients(_event(actor="AD"), STAFF, exclude_actor="AD")
    ids = [r.id for r in recipients]
    assert "W1" in ids
    assert "W2" not in ids
    assert "W3" not in ids
    assert "AD" not in ids


def test_affected_occupant_always_notified() -> None:
    recipients = compute_recipients(_event(actor="O1"), STAFF, exclude_actor="O1")
    assert recipients[0].id == "O1"
    assert recipients[0].priority == PRIORITY_HIGH


def test_duplicate_identities_collapse() -> None:
    # A resident that appears both as cotenant and as staff gets one notice.
    dual = create_resident("O2", "Ona", role=ROLE_ADMINISTRATOR)
    recipients = compute_recipients(_event(), STAFF + [dual], exclude_actor="W1")
    ids = [r.id for r in recipients]
    assert ids.count("O2") == 1
    assert [r for r in recipients if r.id == "O2"][0].audience == "cotenant"


def test_templates_follow_event_kind() -> None:
    directory = InMemoryDirectory()
    for resident in STAFF:
        directory.add_resident(resident)
    log = InMemoryNotificationLog()
    dispatcher = NotificationDispatcher(directory, log)

    dispatcher.dispatch(_event(kind=DEALLOCATED), exclude_actor="W1")

    titles = {r.recipient_id: r.title for r in log.all_records()}
    assert titles == {
        "O1": "Room Deallocated",
        "O2": "Roommate Moved Out",
        "AD": "Room Deallocated",
    }
    record = log.list_for_recipient("O2")[0]
    assert record.message.startswith("Olu has been deallocated from your room 101")
    assert record.data["space_id"] == "S"
    assert record.data["event_kind"] == DEALLOCATED


def test_partial_failure_is_reported_not_raised() -> None:
    directory = InMemoryDirectory()
    for resident in STAFF:
        directory.add_resident(resident)
    log = _FlakyLog({"O2"})

    result = NotificationDispatcher(directory, log).dispatch(_event(), exclude_actor="W1")

    assert not result.ok
    assert set(result.failed) == {"O2"}
    assert result.delivered == ["O1", "AD"]


def test_submit_on_executor() -> None:
    directory = InMemoryDirectory()
    log = InMemoryNotificationLog()
    with ThreadPoolExecutor(max_workers=1) as pool:
        dispatcher = NotificationDispatcher(directory, log, executor=pool)
        result = dispatcher.submit(_event(cotenants=()), exclude_actor="W1").result(timeout=5)
    assert result.delivered == ["O1"]


def test_in_memory_log_hands_out_copies() -> None:
    log = InMemoryNotificationLog()
    original = NotificationRecord(
        recipient_id="O1", recipient_role="occupant", type="room_allocated",
        title="Room Allocated", message="You have been allocated to room 101",
        data={"space_id": "S"},
    )
    assert log.append(original) == 1

    listed = log.list_for_recipient("O1")[0]
    listed.is_read = True
    listed.data["space_id"] = "X"
    log.all_records()[0].title = "changed"
    original.message = "changed"

    stored = log.list_for_recipient("O1", unread_only=True)
    assert len(stored) == 1
    assert stored[0].id == 1
    assert stored[0].title == "Room Allocated"
    assert stored[0].message == "You have been allocated to room 101"
    assert stored[0].data == {"space_id": "S"}


def test_dead_notification_store_never_undoes_allocation() -> None:
    directory = InMemoryDirectory()
    directory.add_space(create_space("S", "101", "A", 2))
    directory.add_resident(create_resident("O1", "Olu", home_block="A"))
    directory.add_resident(STAFF[0])

    outcomes = []
    engine = AllocationEngine(
        directory,
        dispatcher=NotificationDispatcher(directory, _DeadLog()),
        on_dispatch=outcomes.append,
    )

    space = engine.allocate("S", "O1", "W1")

    assert space.occupant_ids == ["O1"]
    assert directory.get_space("S").occupant_ids == ["O1"]
    assert len(outcomes) == 1
    assert not outcomes[0].ok
    assert "O1" in outcomes[0].failed


def main() -> None:
    tests = [v for k, v in sorted(globals().items()) if k.startswith("test_") and callable(v)]
    failed = 0
    for fn in tests:
        try:
            fn()
            print(f"  [PASS] {fn.__name__}")
        except Exception as exc:
            failed += 1
            print(f"  [FAIL] {fn.__name__}: {exc}")
    print(f"\n{len(tests) - failed}/{len(tests)} passed")
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
