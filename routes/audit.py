from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
from database.connection import get_db
from database.models.bitacora import Bitacora
from routes.auth import CurrentUser, require_admin

router = APIRouter(prefix="/api/audit", tags=["Audit"])


@router.get("/logs")
def get_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, le=100),
    action: Optional[str] = None,
    user: Optional[str] = None,
    search: Optional[str] = None,
    connection_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin)
):
    query = db.query(Bitacora)

    # Filters
    if action and action != "all":
        query = query.filter(Bitacora.action == action)

    if user:
        query = query.filter(Bitacora.username.ilike(f"%{user}%"))

    if search:
        query = query.filter(Bitacora.details.ilike(f"%{search}%"))

    if connection_id:
        query = query.filter(Bitacora.connection_id == connection_id)

    # Pagination stats
    total = query.count()
    total_pages = (total + limit - 1) // limit

    # Data
    logs = query.order_by(Bitacora.timestamp.desc(), Bitacora.id.desc()) \
                .offset((page - 1) * limit) \
                .limit(limit) \
                .all()

    return {
        "items": [
            {
                "id": log.id,
                "timestamp": log.timestamp.isoformat() if log.timestamp else None,
                "username": log.username,
                "action": log.action,
                "ip_address": log.ip_address,
                "details": log.details,
                "connection_id": log.connection_id,
                "severity": log.severity,
            }
            for log in logs
        ],
        "total": total,
        "page": page,
        "pages": total_pages
    }
