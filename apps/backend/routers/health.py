"""Liveness and readiness probes."""
import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from apps.backend.config import get_settings
from apps.backend.deps import get_db

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok", "service": "flowbot"}


@router.get("/ready")
def ready(db: Session = Depends(get_db)):
    """Database and the outbox queue's Redis must both answer."""
    s = get_settings()
    checks: dict[str, str] = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"[:200]
    try:
        redis.Redis(host=s.redis_host, port=s.redis_port, socket_connect_timeout=2).ping()
        checks["redis"] = "ok"
    except redis.RedisError as e:
        checks["redis"] = f"error: {e}"[:200]

    if any(v != "ok" for v in checks.values()):
        return JSONResponse({"status": "error", "checks": checks}, status_code=503)
    return {"status": "ok", "checks": checks}
