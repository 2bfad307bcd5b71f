"""
Rollup API Router - cross-repository rollup endpoints.

Endpoints:
- POST   /api/rollups                                   - Create rollup
- GET    /api/rollups                                   - List rollups
- GET    /api/rollups/{rollup_id}                       - Get rollup
- PATCH  /api/rollups/{rollup_id}                       - Update rollup (optimistic lock)
- DELETE /api/rollups/{rollup_id}                       - Delete rollup
- POST   /api/rollups/{rollup_id}/execute               - Start execution
- GET    /api/rollups/{rollup_id}/executions            - Execution history
- GET    /api/rollups/executions/{execution_id}         - Get execution
- POST   /api/rollups/executions/{execution_id}/cancel  - Cancel running execution
- POST   /api/rollups/{rollup_id}/executions/{execution_id}/blast-radius

Tenancy comes from the X-Org-Id header; X-User-Id is recorded as the actor.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel

from graphrollup.rollup.errors import RollupError
from graphrollup.rollup.service import RollupService
from graphrollup.rollup.types import (
    BlastRadiusQuery,
    ExecuteOptions,
    RollupCreateRequest,
    RollupListQuery,
    RollupStatus,
    RollupUpdateRequest,
)

router = APIRouter(prefix="/api/rollups", tags=["rollups"])


class CancelRequest(BaseModel):
    reason: Optional[str] = None


def get_org_id(x_org_id: Optional[str] = Header(None, alias="X-Org-Id")) -> str:
    if not x_org_id:
        raise HTTPException(status_code=401, detail="X-Org-Id header required")
    return x_org_id


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    return x_user_id


def get_rollup_service(request: Request) -> RollupService:
    return request.app.state.rollup_service


def _http_error(e: RollupError) -> HTTPException:
    return HTTPException(
        status_code=e.http_status,
        detail={"code": e.code, "message": e.message, "details": e.details},
    )


def _config_out(config) -> dict:
    return config.model_dump(mode="json", by_alias=True)


@router.post("", status_code=201)
async def create_rollup(
    body: RollupCreateRequest,
    org_id: str = Depends(get_org_id),
    user_id: Optional[str] = Depends(get_user_id),
    service: RollupService = Depends(get_rollup_service),
):
    """Validate and store a new rollup configuration."""
    try:
        config = await service.create_rollup(org_id, user_id, body)
    except RollupError as e:
        raise _http_error(e) from e
    return _config_out(config)


@router.get("")
def list_rollups(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    status: Optional[RollupStatus] = Query(None),
    repository_id: Optional[str] = Query(None, alias="repositoryId"),
    search: Optional[str] = Query(None),
    sort_by: Literal["name", "createdAt", "updatedAt", "lastExecutedAt"] = Query(
        "createdAt", alias="sortBy"
    ),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    org_id: str = Depends(get_org_id),
    service: RollupService = Depends(get_rollup_service),
):
    query = RollupListQuery(
        page=page,
        page_size=page_size,
        status=status,
        repository_id=repository_id,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    try:
        items, total = service.list_rollups(org_id, query)
    except RollupError as e:
        raise _http_error(e) from e
    return {
        "items": [_config_out(c) for c in items],
        "total": total,
        "page": page,
        "pageSize": page_size,
        "hasMore": page * page_size < total,
    }


@router.get("/executions/{execution_id}")
def get_execution(
    execution_id: str,
    org_id: str = Depends(get_org_id),
    service: RollupService = Depends(get_rollup_service),
):
    try:
        return service.get_execution(org_id, execution_id).to_dict()
    except RollupError as e:
        raise _http_error(e) from e


@router.post("/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    body: Optional[CancelRequest] = Body(None),
    org_id: str = Depends(get_org_id),
    user_id: Optional[str] = Depends(get_user_id),
    service: RollupService = Depends(get_rollup_service),
):
    """
    Request cooperative cancellation of a running execution.

    The execution stops at its next checkpoint; poll the execution (or
    subscribe to events) for the terminal state.
    """
    reason = body.reason if body else None
    try:
        execution = await service.cancel(org_id, user_id, execution_id, reason)
    except RollupError as e:
        raise _http_error(e) from e
    return {"executionId": execution.id, "cancelRequested": True, "reason": reason}


@router.get("/{rollup_id}")
def get_rollup(
    rollup_id: str,
    org_id: str = Depends(get_org_id),
    service: RollupService = Depends(get_rollup_service),
):
    try:
        return _config_out(service.get_rollup(org_id, rollup_id))
    except RollupError as e:
        raise _http_error(e) from e


@router.patch("/{rollup_id}")
async def update_rollup(
    rollup_id: str,
    body: RollupUpdateRequest,
    org_id: str = Depends(get_org_id),
    user_id: Optional[str] = Depends(get_user_id),
    service: RollupService = Depends(get_rollup_service),
):
    """Partial update; ``version`` must match the stored version."""
    try:
        config = await service.update_rollup(org_id, user_id, rollup_id, body)
    except RollupError as e:
        raise _http_error(e) from e
    return _config_out(config)


@router.delete("/{rollup_id}", status_code=204)
async def delete_rollup(
    rollup_id: str,
    org_id: str = Depends(get_org_id),
    user_id: Optional[str] = Depends(get_user_id),
    service: RollupService = Depends(get_rollup_service),
):
    try:
        await service.delete_rollup(org_id, user_id, rollup_id)
    except RollupError as e:
        raise _http_error(e) from e


@router.post("/{rollup_id}/execute", status_code=202)
async def execute_rollup(
    rollup_id: str,
    body: Optional[ExecuteOptions] = Body(None),
    org_id: str = Depends(get_org_id),
    user_id: Optional[str] = Depends(get_user_id),
    service: RollupService = Depends(get_rollup_service),
):
    """
    Start an execution.

    With ``async`` (the default) the pending execution is returned at once;
    otherwise the request waits for the terminal execution.
    """
    try:
        execution = await service.execute(org_id, user_id, rollup_id, body)
    except RollupError as e:
        raise _http_error(e) from e
    return execution.to_dict()


@router.get("/{rollup_id}/executions")
def list_executions(
    rollup_id: str,
    limit: int = Query(50, ge=1, le=500),
    org_id: str = Depends(get_org_id),
    service: RollupService = Depends(get_rollup_service),
):
    try:
        executions = service.list_executions(org_id, rollup_id, limit)
    except RollupError as e:
        raise _http_error(e) from e
    return {"items": [execution.to_dict() for execution in executions], "total": len(executions)}


@router.post("/{rollup_id}/executions/{execution_id}/blast-radius")
async def blast_radius(
    rollup_id: str,
    execution_id: str,
    body: BlastRadiusQuery,
    org_id: str = Depends(get_org_id),
    service: RollupService = Depends(get_rollup_service),
):
    """Downstream impact of changing the given nodes in a completed rollup."""
    try:
        result = await service.blast_radius(org_id, rollup_id, execution_id, body)
    except RollupError as e:
        raise _http_error(e) from e
    return result.to_dict()
