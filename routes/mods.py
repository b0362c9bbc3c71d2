from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from typing import List, Optional
from database.connection import get_db
from app.controllers.mod_controller import ModController
from app.services.audit_service import AuditService
from database.schemas import ModCreate, ModReorder, ModResponse, ModSyncReport, ModUpdate
from routes.auth import CurrentUser, require_admin

router = APIRouter(prefix="/api/server/mods", tags=["Mods"])
mod_controller = ModController()


@router.get("/", response_model=List[ModResponse])
async def list_mods(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await mod_controller.list_mods(connection_id)


@router.post("/", response_model=ModResponse, status_code=201)
def add_mod(definition: ModCreate, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mod = mod_controller.add_mod(definition, connection_id)
    AuditService.log_action(db, current_user, "ADD_MOD", request.client.host, f"Added mod {mod.name} ({mod.source})", connection_id=mod.connection_id)
    return mod


# Declared before /{mod_id} so "reorder" and "sync-all" are never taken for an id
@router.put("/reorder", response_model=List[ModResponse])
def reorder_mods(payload: ModReorder, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mods = mod_controller.reorder_mods(payload.mod_ids, connection_id)
    AuditService.log_action(db, current_user, "REORDER_MODS", request.client.host, f"New load order: {payload.mod_ids}", connection_id=connection_id)
    return mods


@router.post("/sync-all", response_model=ModSyncReport)
async def sync_all_mods(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    report = await mod_controller.sync_all(connection_id)
    AuditService.log_action(db, current_user, "SYNC_MODS", request.client.host,
                            f"Synced {report.synced} mod(s), {report.failed} failed", connection_id=connection_id)
    return report


@router.patch("/{mod_id}", response_model=ModResponse)
def update_mod(mod_id: str, changes: ModUpdate, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mod = mod_controller.update_mod(mod_id, changes, connection_id)
    AuditService.log_action(db, current_user, "UPDATE_MOD", request.client.host,
                            f"Updated mod {mod.name}: {changes.model_dump(exclude_unset=True)}", connection_id=mod.connection_id)
    return mod


@router.post("/{mod_id}/toggle", response_model=ModResponse)
def toggle_mod(mod_id: str, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mod = mod_controller.toggle_mod(mod_id, connection_id)
    state = "enabled" if mod.enabled else "disabled"
    AuditService.log_action(db, current_user, "TOGGLE_MOD", request.client.host, f"Mod {mod.name} {state}", connection_id=mod.connection_id)
    return mod


@router.delete("/{mod_id}", response_model=ModResponse)
def remove_mod(mod_id: str, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mod = mod_controller.remove_mod(mod_id, connection_id)
    AuditService.log_action(db, current_user, "REMOVE_MOD", request.client.host, f"Removed mod {mod.name}", connection_id=mod.connection_id)
    return mod


@router.post("/{mod_id}/sync", response_model=ModResponse)
async def sync_mod(mod_id: str, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    mod = await mod_controller.sync_mod(mod_id, connection_id)
    AuditService.log_action(db, current_user, "SYNC_MOD", request.client.host,
                            f"Synced mod {mod.name} to version {mod.version or '-'}", connection_id=mod.connection_id)
    return mod
