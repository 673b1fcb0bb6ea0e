from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.core.security import require_admin_token
from app.delivery.errors import EnqueueError
from app.delivery.queue import enqueue, list_items, serialize_item, supersede
from app.schemas.delivery import SupersedeRequest

router = APIRouter()


@router.post("", status_code=201, dependencies=[Depends(require_admin_token)])
def enqueue_email(payload: dict, db: Session = Depends(get_db)) -> dict:
    # Validation happens in enqueue() so HTTP and in-process producers share it.
    data = payload or {}
    try:
        item = enqueue(
            db,
            recipient_email=data.get("recipient_email", ""),
            recipient_id=data.get("recipient_id"),
            category=data.get("category", ""),
            template=data.get("template", ""),
            payload=data.get("payload") or {},
            max_attempts=data.get("max_attempts"),
        )
    except EnqueueError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})
    return serialize_item(item)


@router.get("", dependencies=[Depends(require_admin_token)])
def list_queue(
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    return {"items": [serialize_item(m) for m in list_items(db, status=status, limit=limit)]}


@router.post("/{item_id}/supersede", dependencies=[Depends(require_admin_token)])
def supersede_item(item_id: str, body: SupersedeRequest | None = None, db: Session = Depends(get_db)) -> dict:
    reason = body.reason if body else "superseded"
    if not supersede(db, item_id, reason=reason):
        raise HTTPException(status_code=409, detail="Item is not queued (unknown, in flight or finished)")
    return {"ok": True, "id": item_id}


@router.post("/dispatch", dependencies=[Depends(require_admin_token)])
def trigger_dispatch(batch_size: int | None = Query(default=None, ge=1, le=500)) -> dict:
    """On-demand dispatch cycle (same task the beat schedule runs every minute)."""
    from app.tasks.delivery_tasks import dispatch_queue

    res = dispatch_queue.delay(batch_size=batch_size)
    if res.ready():
        return {"ok": True, "task_id": res.id, "result": res.result}
    return {"ok": True, "task_id": res.id, "queued": True}
