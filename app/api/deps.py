from __future__ import annotations

from fastapi import Header

from app.core.db import SessionLocal


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_admin_actor: str | None = Header(default=None, alias="X-Admin-Actor")) -> str:
    """Who is performing an admin action; recorded on resets, retries and purges."""
    return (x_admin_actor or "").strip() or "admin"
