"""
Dead letter API - inspect and replay FAILED / ABANDONED deliveries.
The calling tenant is identified by the X-Tenant-ID header.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.database import get_db
from eventrelay.models.delivery_log import DeliveryAttemptLog
from eventrelay.schemas.delivery import DeliveryStatus, ErrorCategory
from eventrelay.services.dead_letter import (
    MAX_BULK_REPLAY,
    MAX_PAGE_SIZE,
    list_dead_letters,
    replay_bulk,
    replay_one,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dlq", tags=["dead-letters"])


class BulkReplayRequest(BaseModel):
    status: Optional[str] = None
    category: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    rule_id: Optional[uuid.UUID] = None
    limit: int = Field(default=100, ge=1, le=MAX_BULK_REPLAY)


async def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-ID")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id


def _check_filters(status: Optional[str], category: Optional[str]) -> None:
    if status and status not in DeliveryStatus.DEAD_LETTER:
        raise HTTPException(status_code=422, detail=f"status must be one of {list(DeliveryStatus.DEAD_LETTER)}")
    if category and category not in ErrorCategory.ALL:
        raise HTTPException(status_code=422, detail=f"Unknown error category: {category}")


def serialize_log(log: DeliveryAttemptLog) -> dict:
    return {
        "id": str(log.id),
        "tenant_id": log.tenant_id,
        "rule_id": str(log.rule_id),
        "rule_version": log.rule_version,
        "event_id": log.event_id,
        "event_type": log.event_type,
        "trigger": log.trigger,
        "status": log.status,
        "attempt_count": log.attempt_count,
        "max_retries": log.max_retries,
        "error_category": log.error_category,
        "last_error_message": log.last_error_message,
        "last_http_status": log.last_http_status,
        "response_snippet": log.response_snippet,
        "latency_ms": log.latency_ms,
        "original_payload": log.original_payload,
        "transformed_payload": log.transformed_payload,
        "request_headers": log.request_headers,
        "correlation_id": log.correlation_id,
        "created_at": log.created_at.isoformat() if log.created_at else None,
        "updated_at": log.updated_at.isoformat() if log.updated_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


@router.get("")
async def get_dead_letters(
    status: Optional[str] = None,
    category: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    rule_id: Optional[uuid.UUID] = None,
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    """Paginated dead letters for the tenant, newest first."""
    _check_filters(status, category)
    items, total = await list_dead_letters(
        db, tenant_id,
        status=status, category=category, since=since, until=until, rule_id=rule_id,
        limit=limit, offset=offset,
    )
    return {
        "items": [serialize_log(log) for log in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("/retry")
async def retry_dead_letters(
    body: BulkReplayRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    """Replay every dead letter matching the filters."""
    _check_filters(body.status, body.category)
    count = await replay_bulk(
        db, tenant_id,
        status=body.status, category=body.category, since=body.since, until=body.until,
        rule_id=body.rule_id, limit=body.limit,
    )
    return {"status": "queued", "count": count}


@router.post("/{log_id}/retry")
async def retry_dead_letter(
    log_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
):
    """Replay one dead letter."""
    reset = await replay_one(db, tenant_id, log_id)
    if reset is None:
        raise HTTPException(status_code=404, detail="Delivery log not found")
    if reset is False:
        raise HTTPException(status_code=409, detail="Delivery log is not in a dead letter state")
    return {"status": "queued", "id": str(log_id)}
