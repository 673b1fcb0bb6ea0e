from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import get_actor, get_db
from app.core.security import require_admin_token
from app.delivery import events
from app.delivery.circuit_breaker import CircuitBreakerRegistry
from app.delivery.dead_letter import (
    get_dead_letter,
    list_dead_letters,
    mark_reviewed,
    purge_dead_letters,
    retry_dead_letter,
    serialize_dead_letter,
    unreviewed_count,
)
from app.delivery.errors import ConflictError, NotFoundError, UnknownProviderError
from app.delivery.health import HealthMonitor
from app.delivery.providers import sync_providers
from app.delivery.queue import queue_stats, serialize_item
from app.delivery.suppression import add_suppression, list_suppressions, remove_suppression, serialize_suppression
from app.schemas.delivery import PurgeRequest, SuppressionRequest

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.get("/providers/health")
def providers_health(db: Session = Depends(get_db)) -> dict:
    sync_providers(db)
    summary = HealthMonitor(db).summary()
    return {"providers": [h.as_dict() for h in summary]}


@router.post("/providers/{provider}/reset")
def reset_circuit(provider: str, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    try:
        snap = CircuitBreakerRegistry(db).reset(provider, actor=actor)
    except UnknownProviderError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "breaker": snap.as_dict()}


@router.get("/dead-letters")
def dead_letters(
    reviewed: bool | None = False,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    items = list_dead_letters(db, reviewed=reviewed, limit=limit)
    return {"items": [serialize_dead_letter(d) for d in items], "unreviewed": unreviewed_count(db)}


@router.get("/dead-letters/{dead_id}")
def dead_letter_detail(dead_id: str, db: Session = Depends(get_db)) -> dict:
    try:
        d = get_dead_letter(db, dead_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {**serialize_dead_letter(d), "payload": d.payload}


@router.post("/dead-letters/{dead_id}/retry")
def retry_dead(dead_id: str, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    try:
        item = retry_dead_letter(db, dead_id, actor=actor)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "queue_item": serialize_item(item)}


@router.post("/dead-letters/{dead_id}/review")
def review_dead(dead_id: str, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    try:
        d = mark_reviewed(db, dead_id, actor=actor)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ok": True, "dead_letter": serialize_dead_letter(d)}


@router.post("/dead-letters/purge")
def purge_dead(body: PurgeRequest, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    try:
        count = purge_dead_letters(db, actor=actor, ids=body.ids, reviewed_before=body.reviewed_before)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "purged": count}


@router.get("/suppressions")
def suppressions(
    reason: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> dict:
    return {"items": [serialize_suppression(s) for s in list_suppressions(db, reason=reason, limit=limit)]}


@router.post("/suppressions", status_code=201)
def suppress(body: SuppressionRequest, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    row = add_suppression(db, body.email, reason=body.reason, notes=body.notes, actor=actor)
    return {"ok": True, "suppression": serialize_suppression(row)}


@router.delete("/suppressions/{email}")
def unsuppress(email: str, db: Session = Depends(get_db)) -> dict:
    if not remove_suppression(db, email):
        raise HTTPException(status_code=404, detail=f"Not suppressed: {email}")
    return {"ok": True, "email": email.strip().lower()}


@router.get("/events")
def recent_events(
    provider: str | None = None,
    event_type: str | None = None,
    severity: str | None = None,
    since: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> dict:
    rows = events.list_events(db, limit=limit, provider=provider, event_type=event_type, severity=severity, since=since)
    return {
        "events": [
            {
                "id": e.id,
                "provider": e.provider,
                "event_type": e.event_type,
                "severity": e.severity,
                "message": e.message,
                "metadata": e.context,
                "created_at": e.created_at,
            }
            for e in rows
        ]
    }


@router.get("/queue/stats")
def stats(db: Session = Depends(get_db)) -> dict:
    return queue_stats(db)
