# file: backend/main.py
"""
FastAPI Backend — Room Occupancy API v1.

Thin transport over occupancy_runtime.AllocationSession.
The acting resident is identified by the X-Actor-Id header; allocate and
deallocate accept an optional Idempotency-Key header.

Endpoints:
  POST   /allocate                       — place an occupant in a space
  POST   /deallocate                     — remove an occupant from a space
  DELETE /spaces/{id}                    — delete an empty space
  DELETE /occupants/{id}                 — delete a resident (releases their space)
  PUT    /occupants/{id}/home-block      — move an unallocated occupant's block
  PUT    /supervisors/{id}/blocks        — replace a supervisor's blocks
  GET    /spaces/{id}, /occupants/{id}/space, /occupants/unallocated,
         /stats, /notifications/{recipient_id}, /metrics, /health

Status codes: 400 domain denial, 403 authorization denied, 404 not found,
503 store unavailable or timed out.
"""
from __future__ import annotations

import logging
import os
import sys
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

env_path = os.path.join(os.path.dirname(__file__), ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

# Add project root to path for kernel imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from occupancy_kernel.errors import (
    AuthorizationDenied,
    DomainDenial,
    InfrastructureError,
    NotFoundError,
)
from occupancy_runtime.observability import collect_metrics
from occupancy_runtime.session import AllocationSession

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DATABASE_PATH = os.environ.get("DATABASE_PATH", "occupancy.db")
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")
STORE_TIMEOUT_SECONDS = float(os.environ.get("STORE_TIMEOUT_SECONDS", "5"))
DISPATCH_WORKERS = int(os.environ.get("DISPATCH_WORKERS", "2"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Session (one per process, opened on first use)
# ---------------------------------------------------------------------------

_session: Optional[AllocationSession] = None
_session_lock = threading.Lock()


def get_session() -> AllocationSession:
    global _session
    with _session_lock:
        if _session is None:
            _session = AllocationSession(
                DATABASE_PATH,
                store_timeout=STORE_TIMEOUT_SECONDS,
                dispatch_workers=DISPATCH_WORKERS,
            )
        return _session


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    global _session
    with _session_lock:
        if _session is not None:
            _session.close()
            _session = None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Room Occupancy API",
    version="1.0.0",
    description="Block-scoped room allocation with notification fan-out",
    lifespan=lifespan,
)
logger.info(f"Room Occupancy API loaded (database={DATABASE_PATH})")


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        FRONTEND_URL,
        "http://localhost:3000",
        "http://localhost:3001",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class AllocationRequest(BaseModel):
    space_id: str
    occupant_id: str


class HomeBlockRequest(BaseModel):
    block: str


class SupervisedBlocksRequest(BaseModel):
    blocks: List[str]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a session call, translating kernel errors into HTTP errors."""
    try:
        return fn(*args, **kwargs)
    except AuthorizationDenied as exc:
        raise HTTPException(status_code=403, detail=exc.to_dict())
    except DomainDenial as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())
    except NotFoundError as exc:
        raise HTTPException(
            status_code=404,
            detail={"code": "NotFound", "kind": exc.kind, "id": exc.entity_id},
        )
    except InfrastructureError as exc:
        logger.error(f"Infrastructure failure: {exc}")
        raise HTTPException(status_code=503, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Allocation endpoints
# ---------------------------------------------------------------------------


@app.post("/allocate")
def allocate(
    req: AllocationRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    session: AllocationSession = Depends(get_session),
):
    """Allocate ``occupant_id`` to ``space_id``. Returns the updated space."""
    space = _call(
        session.allocate, req.space_id, req.occupant_id, actor_id,
        idempotency_key=idempotency_key or "",
    )
    return {"space": space}


@app.post("/deallocate")
def deallocate(
    req: AllocationRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    session: AllocationSession = Depends(get_session),
):
    space = _call(
        session.deallocate, req.space_id, req.occupant_id, actor_id,
        idempotency_key=idempotency_key or "",
    )
    return {"space": space}


@app.delete("/spaces/{space_id}")
def delete_space(
    space_id: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    """Deletes a space. Refused while it has occupants."""
    _call(session.delete_space, space_id, actor_id)
    return {"status": "deleted", "space_id": space_id}


@app.delete("/occupants/{occupant_id}")
def delete_occupant(
    occupant_id: str,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    """Deletes a resident; any space they hold is released first."""
    released = _call(session.delete_occupant, occupant_id, actor_id)
    return {"status": "deleted", "occupant_id": occupant_id, "released_space": released}


@app.put("/occupants/{occupant_id}/home-block")
def change_home_block(
    occupant_id: str,
    req: HomeBlockRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    return {"resident": _call(session.change_home_block, occupant_id, req.block, actor_id)}


@app.put("/supervisors/{supervisor_id}/blocks")
def set_supervised_blocks(
    supervisor_id: str,
    req: SupervisedBlocksRequest,
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    return {"resident": _call(session.set_supervised_blocks, supervisor_id, req.blocks, actor_id)}


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@app.get("/spaces/{space_id}")
def get_space(space_id: str, session: AllocationSession = Depends(get_session)):
    return {"space": _call(session.get_space, space_id)}


@app.get("/occupants/unallocated")
def unallocated_occupants(
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    """Active occupants without a space, limited to the actor's blocks."""
    occupants = _call(session.unallocated_occupants, actor_id)
    return {"count": len(occupants), "occupants": occupants}


@app.get("/occupants/{occupant_id}/space")
def space_of(occupant_id: str, session: AllocationSession = Depends(get_session)):
    """The space an occupant holds; ``space`` is null when unallocated."""
    return {"space": _call(session.space_of, occupant_id)}


@app.get("/stats")
def occupancy_stats(
    actor_id: str = Header(..., alias="X-Actor-Id"),
    session: AllocationSession = Depends(get_session),
):
    return {"statistics": _call(session.occupancy_stats, actor_id)}


@app.get("/notifications/{recipient_id}")
def list_notifications(
    recipient_id: str,
    unread_only: bool = Query(False),
    session: AllocationSession = Depends(get_session),
):
    notifications = _call(session.notifications_for, recipient_id, unread_only)
    return {"count": len(notifications), "notifications": notifications}


@app.post("/notifications/{recipient_id}/{notification_id}/read")
def mark_notification_read(
    recipient_id: str,
    notification_id: int,
    session: AllocationSession = Depends(get_session),
):
    if not _call(session.mark_notification_read, recipient_id, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"status": "read"}


@app.get("/metrics")
def metrics(session: AllocationSession = Depends(get_session)):
    return _call(collect_metrics, session).to_dict()


@app.get("/health")
def health():
    return {"status": "ok", "version": "1.0.0"}
