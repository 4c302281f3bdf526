"""
Broadcast routes: list, read, create, edit, end, delete own broadcasts.
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.db.database import as_utc, utcnow

router = APIRouter()


class BroadcastCreate(BaseModel):
    started_at: Optional[datetime] = None   # defaults to now
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    peak_viewers: int = Field(0, ge=0)
    total_tokens: int = Field(0, ge=0)
    followers_gained: int = 0
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    room_subject: Optional[str] = None
    auto_detected: bool = False
    source: str = "manual"


class BroadcastUpdate(BaseModel):
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    peak_viewers: Optional[int] = Field(None, ge=0)
    total_tokens: Optional[int] = Field(None, ge=0)
    followers_gained: Optional[int] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    room_subject: Optional[str] = None


class BroadcastEnd(BaseModel):
    peak_viewers: Optional[int] = Field(None, ge=0)
    total_tokens: Optional[int] = Field(None, ge=0)
    followers_gained: Optional[int] = None


def _not_found() -> JSONResponse:
    return JSONResponse({"error": "Broadcast not found"}, status_code=404)


def _repo(request: Request):
    return request.app.state.collector.broadcasts


@router.get("")
async def list_broadcasts(
    request: Request,
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Own broadcasts, newest first, with the total for pagination."""
    repo = _repo(request)
    broadcasts = repo.list_recent(limit=limit, offset=offset)
    total = repo.count()
    return JSONResponse(jsonable_encoder({
        "broadcasts": broadcasts,
        "total": total,
        "has_more": offset + len(broadcasts) < total,
    }))


@router.post("")
async def create_broadcast(body: BroadcastCreate, request: Request):
    """Manual broadcast start (or a complete record when ended_at is given)."""
    fields = body.model_dump()
    fields["started_at"] = as_utc(fields["started_at"]) or utcnow()
    fields["ended_at"] = as_utc(fields["ended_at"])
    if fields["ended_at"] and fields["ended_at"] < fields["started_at"]:
        return JSONResponse({"error": "ended_at is before started_at"}, status_code=400)

    broadcast = _repo(request).create(**fields)
    return JSONResponse(jsonable_encoder(broadcast), status_code=201)


@router.get("/{broadcast_id}")
async def get_broadcast(broadcast_id: str, request: Request):
    broadcast = _repo(request).get_by_id(broadcast_id)
    if broadcast is None:
        return _not_found()
    return JSONResponse(jsonable_encoder(broadcast))


@router.put("/{broadcast_id}")
async def update_broadcast(broadcast_id: str, body: BroadcastUpdate, request: Request):
    """Only provided (non-null) fields are changed. Auto-detected sessions are read-only."""
    broadcast = _repo(request).update(broadcast_id, **body.model_dump(exclude_none=True))
    if broadcast is None:
        return _not_found()
    return JSONResponse(jsonable_encoder(broadcast))


@router.post("/{broadcast_id}/end")
async def end_broadcast(broadcast_id: str, request: Request, body: Optional[BroadcastEnd] = None):
    """Set ended_at to now and merge the final stats."""
    body = body or BroadcastEnd()
    broadcast = _repo(request).end_broadcast(broadcast_id, **body.model_dump())
    if broadcast is None:
        return _not_found()
    return JSONResponse(jsonable_encoder(broadcast))


@router.delete("/{broadcast_id}")
async def delete_broadcast(broadcast_id: str, request: Request):
    if not _repo(request).delete(broadcast_id):
        return _not_found()
    return JSONResponse({"success": True})
