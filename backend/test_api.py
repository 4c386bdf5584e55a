# file: backend/test_api.py
"""
Room Occupancy API — HTTP-level tests.

Each test gets a fresh sqlite file and overrides the session dependency,
so nothing touches DATABASE_PATH.

Run:  python -m pytest backend/test_api.py
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.main import app, get_session
from occupancy_runtime.session import AllocationSession

SUPERVISOR = {"X-Actor-Id": "W"}
ADMIN = {"X-Actor-Id": "ADMIN"}


@pytest.fixture
def session(tmp_path: Path):
    session = AllocationSession(tmp_path / "api.db", store_timeout=5.0, dispatch_workers=0)
    session.add_space("S1", "101", "A", 2)
    session.add_space("S2", "201", "B", 1)
    session.add_resident("O1", "Olu", home_block="A")
    session.add_resident("O2", "Ona", home_block="A")
    session.add_resident("O3", "Bea", home_block="B")
    session.add_resident("W", "Wanda", role="supervisor", supervised_blocks=["A"])
    session.add_resident("ADMIN", "Ada", role="administrator")
    yield session
    session.close()


@pytest.fixture
def client(session: AllocationSession):
    app.dependency_overrides[get_session] = lambda: session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_allocate_success(client: TestClient) -> None:
    response = client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)

    assert response.status_code == 200
    space = response.json()["space"]
    assert [o["occupant_id"] for o in space["occupants"]] == ["O1"]
    assert space["is_available"] is True


def test_allocate_domain_denial_is_400(client: TestClient) -> None:
    response = client.post("/allocate", json={"space_id": "S2", "occupant_id": "O1"}, headers=SUPERVISOR)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "BlockMismatch"


def test_allocate_out_of_scope_is_403(client: TestClient) -> None:
    response = client.post("/allocate", json={"space_id": "S2", "occupant_id": "O3"}, headers=SUPERVISOR)

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["code"] == "Denied"
    assert detail["reason"] == "space_out_of_scope"


def test_allocate_unknown_space_is_404(client: TestClient) -> None:
    response = client.post("/allocate", json={"space_id": "NOPE", "occupant_id": "O1"}, headers=SUPERVISOR)

    assert response.status_code == 404
    assert response.json()["detail"] == {"code": "NotFound", "kind": "space", "id": "NOPE"}


def test_missing_actor_header_is_rejected(client: TestClient) -> None:
    response = client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"})
    assert response.status_code == 422


def test_idempotency_key_replays(client: TestClient) -> None:
    headers = {**SUPERVISOR, "Idempotency-Key": "k-1"}
    body = {"space_id": "S1", "occupant_id": "O1"}

    first = client.post("/allocate", json=body, headers=headers)
    second = client.post("/allocate", json=body, headers=headers)

    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()

    conflict = client.post("/allocate", json={"space_id": "S1", "occupant_id": "O2"}, headers=headers)
    assert conflict.status_code == 400
    assert conflict.json()["detail"]["code"] == "IdempotencyConflict"


def test_deallocate_not_allocated_here(client: TestClient) -> None:
    response = client.post("/deallocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "NotAllocatedHere"


def test_delete_space_lifecycle(client: TestClient) -> None:
    client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)

    refused = client.delete("/spaces/S1", headers=ADMIN)
    assert refused.status_code == 400
    assert refused.json()["detail"]["code"] == "OccupiedSpace"

    client.post("/deallocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)
    deleted = client.delete("/spaces/S1", headers=ADMIN)
    assert deleted.status_code == 200
    assert client.get("/spaces/S1").status_code == 404


def test_delete_occupant_releases_space(client: TestClient) -> None:
    client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)

    response = client.delete("/occupants/O1", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["released_space"]["id"] == "S1"
    assert client.get("/spaces/S1").json()["space"]["occupants"] == []


def test_home_block_locked_while_allocated(client: TestClient) -> None:
    client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)

    response = client.put("/occupants/O1/home-block", json={"block": "B"}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "HomeBlockLocked"

    ok = client.put("/occupants/O2/home-block", json={"block": "B"}, headers=ADMIN)
    assert ok.status_code == 200
    assert ok.json()["resident"]["home_block"] == "B"


def test_supervised_blocks_limit(client: TestClient) -> None:
    response = client.put("/supervisors/W/blocks", json={"blocks": ["A", "B", "C"]}, headers=ADMIN)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "TooManyBlocks"


def test_reads(client: TestClient) -> None:
    client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)

    assert client.get("/occupants/O1/space").json()["space"]["id"] == "S1"
    assert client.get("/occupants/O2/space").json()["space"] is None

    unallocated = client.get("/occupants/unallocated", headers=SUPERVISOR).json()
    assert [o["id"] for o in unallocated["occupants"]] == ["O2"]

    stats = client.get("/stats", headers=ADMIN).json()["statistics"]
    assert stats["total"] == 2
    assert stats["capacity"]["occupied"] == 1

    inbox = client.get("/notifications/O1").json()
    assert inbox["count"] == 1
    assert inbox["notifications"][0]["title"] == "Room Allocated"

    note_id = inbox["notifications"][0]["id"]
    assert client.post(f"/notifications/O1/{note_id}/read").status_code == 200
    assert client.get("/notifications/O1", params={"unread_only": True}).json()["count"] == 0
    assert client.post(f"/notifications/O2/{note_id}/read").status_code == 404


def test_metrics(client: TestClient) -> None:
    client.post("/allocate", json={"space_id": "S1", "occupant_id": "O1"}, headers=SUPERVISOR)
    client.post("/allocate", json={"space_id": "S2", "occupant_id": "O1"}, headers=SUPERVISOR)

    metrics = client.get("/metrics").json()
    assert metrics["operation_counts"] == {"allocate": 1}
    assert metrics["denial_counts"] == {"BlockMismatch": 1}
    assert metrics["occupant_count"] == 1
