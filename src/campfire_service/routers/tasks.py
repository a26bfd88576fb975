"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from campfire_service.core.state import get_app_state
from campfire_service.routers.validation import authenticate, parse_int_query, parse_json_body

if TYPE_CHECKING:
    from campfire_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


async def _json_body(request: Request) -> dict[str, Any]:
    body = await request.body()
    return {} if body == b"" else parse_json_body(body)


# ---------------------------------------------------------------------------
# Collection endpoints (MUST be before /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Create a task and hold its credit cost."""
    actor = await authenticate(request)
    data = await _json_body(request)
    result = await _task_manager().create_task(actor, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks visible to the caller, with optional filters."""
    actor = await authenticate(request)
    params = request.query_params
    return await _task_manager().list_tasks(
        actor,
        status=params.get("status"),
        priority=params.get("priority"),
        category_id=params.get("category_id"),
        project_id=params.get("project_id"),
        client_id=params.get("client_id"),
        contractor_id=params.get("contractor_id"),
        limit=parse_int_query(request, "limit", minimum=1),
        offset=parse_int_query(request, "offset", minimum=0),
    )


@router.get("/tasks/campfire")
async def list_campfire_tasks(request: Request) -> dict[str, Any]:
    """Open tasks any camper may claim."""
    actor = await authenticate(request)
    return await _task_manager().list_campfire_tasks(actor)


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    """Get one task."""
    actor = await authenticate(request)
    return await _task_manager().get_task(actor, task_id)


@router.put("/tasks/{task_id}")
async def update_task(task_id: str, request: Request) -> dict[str, Any]:
    """Edit non-status fields."""
    actor = await authenticate(request)
    data = await _json_body(request)
    return await _task_manager().update_task(actor, task_id, data)


@router.delete("/tasks/{task_id}", status_code=204)
async def delete_task(task_id: str, request: Request) -> Response:
    """Delete a task (admin only)."""
    actor = await authenticate(request)
    await _task_manager().delete_task(actor, task_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.patch("/tasks/{task_id}/status")
async def update_status(task_id: str, request: Request) -> dict[str, Any]:
    """Request a status transition."""
    actor = await authenticate(request)
    data = await _json_body(request)
    return await _task_manager().request_transition(actor, task_id, data)


@router.post("/tasks/{task_id}/pass")
async def pass_task(task_id: str, request: Request) -> dict[str, Any]:
    """Return an unstarted task to the campfire."""
    actor = await authenticate(request)
    return await _task_manager().pass_task(actor, task_id)


@router.post("/tasks/{task_id}/claim")
async def claim_task(task_id: str, request: Request) -> dict[str, Any]:
    """Claim an open campfire task."""
    actor = await authenticate(request)
    return await _task_manager().claim_task(actor, task_id)


@router.get("/tasks/{task_id}/history")
async def get_history(task_id: str, request: Request) -> dict[str, Any]:
    """Status history, oldest first."""
    actor = await authenticate(request)
    return await _task_manager().get_history(actor, task_id)


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/attachments", status_code=201)
async def add_attachment(task_id: str, request: Request) -> JSONResponse:
    """Record attachment metadata."""
    actor = await authenticate(request)
    data = await _json_body(request)
    result = await _task_manager().add_attachment(actor, task_id, data)
    return JSONResponse(status_code=201, content=result)


@router.get("/tasks/{task_id}/attachments")
async def list_attachments(task_id: str, request: Request) -> dict[str, Any]:
    """List attachment metadata."""
    actor = await authenticate(request)
    return await _task_manager().list_attachments(actor, task_id)
