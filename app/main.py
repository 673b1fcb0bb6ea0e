from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI
from redis import Redis
from sqlalchemy import text

from app.api.routers.admin import router as admin_router
from app.api.routers.queue import router as queue_router
from app.core.config import settings
from app.core.db import SessionLocal, engine
from app.core.logging import configure_logging
from app.delivery.providers import sync_providers

configure_logging(settings.LOG_LEVEL)
log = logging.getLogger("app")

app = FastAPI(title=settings.APP_NAME)


def _retry_backoff(fn, *, attempts: int = 30, base_sleep_s: float = 1.0, max_sleep_s: float = 2.0, what: str) -> bool:
    sleep_s = base_sleep_s
    for i in range(1, attempts + 1):
        try:
            fn()
            return True
        except Exception as e:
            if i == attempts:
                log.error("Startup: %s still not ready after %s attempts: %s", what, attempts, str(e))
                return False
            log.warning("Startup: %s not ready (attempt %s/%s): %s", what, i, attempts, str(e))
            time.sleep(sleep_s)
            sleep_s = min(max_sleep_s, sleep_s * 2.0)
    return False


def _check_postgres() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def _check_redis() -> bool:
    try:
        r = Redis.from_url(settings.REDIS_URL, socket_connect_timeout=1, socket_timeout=1)
        return bool(r.ping())
    except Exception:
        return False


def _sync_providers() -> None:
    with SessionLocal() as db:
        providers = sync_providers(db)
        log.info("Startup: providers enabled: %s", ", ".join(p.id for p in providers) or "none")


@app.on_event("startup")
def _startup() -> None:
    # Do not crash API if the database is temporarily unavailable.
    if not settings.SYNC_PROVIDERS_ON_STARTUP:
        log.info("Startup: SYNC_PROVIDERS_ON_STARTUP=false; skipping provider sync")
        return

    _retry_backoff(_sync_providers, what="database")


@app.get("/health")
def health() -> dict[str, Any]:
    deps = {
        "postgres": _check_postgres(),
        "redis": _check_redis(),
    }
    return {"ok": all(deps.values()), "deps": deps, "app": settings.APP_NAME}


app.include_router(admin_router, prefix="/admin", tags=["admin"])
app.include_router(queue_router, prefix="/queue", tags=["queue"])
