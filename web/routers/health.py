"""Health and metrics endpoints."""

from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import get_db

router = APIRouter(tags=["Health"])


def ping_database(db: Session) -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)


@router.get("/healthz", summary="Service runtime status")
def read_service_status(db: Session = Depends(get_db)):
    db_ok, db_error = ping_database(db)
    payload = {"status": "ok" if db_ok else "degraded", "database": {"ok": db_ok}}
    if db_error:
        payload["database"]["error"] = db_error
    return payload


@router.get("/metrics", include_in_schema=False)
def read_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["router", "ping_database"]
