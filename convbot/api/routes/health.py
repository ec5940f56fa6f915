from fastapi import APIRouter, Depends, Request, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from convbot.core.config import settings
from convbot.db.session import get_db


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


def _redis_client(request: Request) -> redis.Redis:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None:
        return runtime.store.client
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


@router.get("/ready")
def readiness(request: Request, response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe: credit database and task store. 503 if either is down."""
    checks = {}
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {e}"
    try:
        _redis_client(request).ping()
        checks["redis"] = "ok"
    except redis.RedisError as e:
        checks["redis"] = f"error: {e}"

    ready = all(v == "ok" for v in checks.values())
    if not ready:
        response.status_code = 503
    return {"status": "ready" if ready else "not_ready", "checks": checks}


@router.get("/scheduler")
def scheduler_stats(request: Request, response: Response) -> dict:
    """Queue depth and worker usage of the in-process scheduler."""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        response.status_code = 503
        return {"status": "not_running"}
    return {"status": "running", **scheduler.stats()}
