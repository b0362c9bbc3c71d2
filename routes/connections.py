from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import List
from database.connection import get_db
from app.controllers.connection_controller import ConnectionController
from app.services.audit_service import AuditService
from database.schemas import ConnectionCreate, ConnectionResponse, ConnectionTestResult
from routes.auth import CurrentUser, require_admin

router = APIRouter(prefix="/api/server/connections", tags=["Connections"])
connection_controller = ConnectionController()


@router.get("/", response_model=List[ConnectionResponse])
def list_connections(current_user: CurrentUser = Depends(require_admin)):
    return connection_controller.list_connections()


@router.post("/", response_model=ConnectionResponse, status_code=201)
async def add_connection(definition: ConnectionCreate, request: Request, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    connection = await connection_controller.add_connection(definition)
    AuditService.log_action(db, current_user, "ADD_CONNECTION", request.client.host,
                            f"Added {connection.type} connection {connection.name}", connection_id=connection.id)
    return connection


@router.get("/{connection_id}", response_model=ConnectionResponse)
def get_connection(connection_id: str, current_user: CurrentUser = Depends(require_admin)):
    return connection_controller.get_connection(connection_id)


@router.post("/{connection_id}/test", response_model=ConnectionTestResult)
async def test_connection(connection_id: str, current_user: CurrentUser = Depends(require_admin)):
    return await connection_controller.test_connection(connection_id)


@router.post("/{connection_id}/default", response_model=ConnectionResponse)
def set_default_connection(connection_id: str, request: Request, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    connection = connection_controller.set_default(connection_id)
    AuditService.log_action(db, current_user, "SET_DEFAULT_CONNECTION", request.client.host,
                            f"Default connection is now {connection.name}", connection_id=connection.id)
    return connection


@router.delete("/{connection_id}", response_model=ConnectionResponse)
async def remove_connection(connection_id: str, request: Request, force: bool = False, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    connection = await connection_controller.remove_connection(connection_id, force=force)
    AuditService.log_action(db, current_user, "REMOVE_CONNECTION", request.client.host,
                            f"Removed connection {connection.name} (force={force})", connection_id=connection_id)
    return connection
