"""
Liveness and readiness probes. Responses never include connection details.
"""

import logging
from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from meterchat.core.database import get_engine, metadata

logger = logging.getLogger("meterchat")

router = APIRouter(tags=["health"])


def _missing_tables() -> List[str]:
    engine = get_engine()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    inspector = inspect(engine)
    return [name for name in sorted(metadata.tables) if not inspector.has_table(name)]


def _not_ready(detail: str) -> JSONResponse:
    return JSONResponse(status_code=503, content={"status": "error", "detail": detail})


@router.get("/healthz")
def healthz():
    """Process is up; no dependencies checked."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Database reachable and every table present."""
    try:
        missing = _missing_tables()
    except (SQLAlchemyError, ValueError) as e:
        # ValueError: DATABASE_URL not configured
        logger.error(f"[readyz] database check failed: {e}")
        return _not_ready("database unreachable")

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return _not_ready(detail)
    return {"status": "ok"}
