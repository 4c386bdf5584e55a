"""
Occupancy Kernel v1.0 — Authorization Gate Tests

Scope resolution per role, the legacy single-block field folded into the
supervised set at the directory boundary, and each denial reason.

Run:  python -m occupancy_kernel.test_scope
"""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from occupancy_kernel.domain_types import (
    ROLE_ADMINISTRATOR,
    ROLE_SUPERVISOR,
    Resident,
    create_resident,
    create_space,
)
from occupancy_kernel.errors import DenialReason
from occupancy_kernel.scope import (
    OP_ALLOCATE,
    OP_DEALLOCATE,
    Scope,
    authorize,
    authorize_administration,
    resolve_scope,
)


SPACE_A = create_space("SA", "101", "A", 2)
SPACE_B = create_space("SB", "201", "B", 2)
OCC_A = create_resident("OA", "Ama", home_block="A")
OCC_B = create_resident("OB", "Bo", home_block="B")


def _supervisor(*blocks: str, active: bool = True) -> Resident:
    return create_resident("W", "Wanda", role=ROLE_SUPERVISOR, supervised_blocks=blocks, active=active)


def test_resolve_scope_by_role() -> None:
    admin = create_resident("AD", "Ada", role=ROLE_ADMINISTRATOR)
    assert resolve_scope(admin).unrestricted
    assert resolve_scope(_supervisor("A", "B")) == Scope.of("A", "B")
    assert resolve_scope(OCC_A) == Scope.of("A")
    assert resolve_scope(create_resident("ON", "Ono")).is_empty()


def test_unrestricted_scope_includes_everything() -> None:
    scope = Scope.unrestricted_scope()
    assert scope.includes("A")
    assert scope.includes(None)
    assert not scope.is_empty()


def test_legacy_fields_are_unioned() -> None:
    resident = Resident.from_dict({
        "id": "W1",
        "name": "Legacy",
        "role": "warden",
        "assigned_block": "C",
        "assigned_blocks": ["A"],
    })
    assert resident.role == ROLE_SUPERVISOR
    assert resolve_scope(resident) == Scope.of("A", "C")


def test_legacy_student_fields() -> None:
    resident = Resident.from_dict({
        "id": "S1", "name": "Stu", "role": "student",
        "preferred_block": "A", "is_active": False,
    })
    assert resident.is_occupant
    assert resident.home_block == "A"
    assert resident.active is False


def test_supervisor_in_scope_allowed() -> None:
    assert authorize(_supervisor("A"), OP_ALLOCATE, SPACE_A, OCC_A).allowed
    assert authorize(_supervisor("A"), OP_DEALLOCATE, SPACE_A, OCC_A).allowed


def test_inactive_actor_denied() -> None:
    decision = authorize(_supervisor("A", active=False), OP_ALLOCATE, SPACE_A, OCC_A)
    assert not decision.allowed
    assert decision.reason == DenialReason.ACTOR_INACTIVE


@pytest.mark.parametrize("actor", [
    create_resident("AD", "Ada", role=ROLE_ADMINISTRATOR),
    create_resident("OA", "Ama", home_block="A"),
])
def test_non_supervisor_denied(actor: Resident) -> None:
    decision = authorize(actor, OP_DEALLOCATE, SPACE_A, OCC_A)
    assert decision.reason == DenialReason.NOT_SUPERVISOR


def test_space_out_of_scope() -> None:
    decision = authorize(_supervisor("B"), OP_DEALLOCATE, SPACE_A, OCC_A)
    assert decision.reason == DenialReason.SPACE_OUT_OF_SCOPE


def test_occupant_out_of_scope() -> None:
    decision = authorize(_supervisor("A"), OP_ALLOCATE, SPACE_A, OCC_B)
    assert decision.reason == DenialReason.OCCUPANT_OUT_OF_SCOPE


def test_cross_block_denied_even_with_both_in_scope() -> None:
    decision = authorize(_supervisor("A", "B"), OP_ALLOCATE, SPACE_A, OCC_B)
    assert decision.reason == DenialReason.CROSS_BLOCK


def test_deallocate_ignores_occupant_block() -> None:
    assert authorize(_supervisor("A"), OP_DEALLOCATE, SPACE_A, OCC_B).allowed


def test_unknown_operation_rejected() -> None:
    with pytest.raises(ValueError):
        authorize(_supervisor("A"), "evict", SPACE_A, OCC_A)


def test_administration_gate() -> None:
    admin = create_resident("AD", "Ada", role=ROLE_ADMINISTRATOR)
    assert authorize_administration(admin).allowed
    assert authorize_administration(_supervisor("A")).reason == DenialReason.NOT_ADMINISTRATOR
    retired = create_resident("AD2", "Old", role=ROLE_ADMINISTRATOR, active=False)
    assert authorize_administration(retired).reason == DenialReason.ACTOR_INACTIVE


def test_too_many_blocks_rejected_on_create() -> None:
    with pytest.raises(ValueError):
        _supervisor("A", "B", "C")


def main() -> None:
    tests = [
        v for k, v in sorted(globals().items())
        if k.startswith("test_") and callable(v) and not hasattr(v, "pytestmark")
    ]
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
