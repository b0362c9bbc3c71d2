import asyncio
import json
import logging
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from database.connection import get_db
from app import settings
from app.controllers.server_controller import ServerController
from app.exceptions import ServerManagerError
from app.services.audit_service import AuditService
from app.services.auth_service import decode_token
from app.services.gameserver import events
from database.schemas import (
    CommandRequest,
    CommandResponse,
    InstallProgress,
    KickRequest,
    LogLine,
    OnlinePlayer,
    ProcessStatus,
    ServerConfigResponse,
)
from routes.auth import CurrentUser, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/server", tags=["Server"])
server_controller = ServerController()

WS_EVENTS = {events.STATUS, events.STATUS_UPDATE, events.INSTALL_PROGRESS, events.CONSOLE}


@router.get("/status", response_model=ProcessStatus)
async def get_status(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await server_controller.get_status(connection_id)


# --- Lifecycle ---

@router.post("/install", response_model=InstallProgress, status_code=202)
async def install_server(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    progress = await server_controller.install(connection_id, wait=False)
    AuditService.log_action(db, current_user, "INSTALL_SERVER", request.client.host, "Started server installation", connection_id=connection_id)
    return progress


@router.get("/install/progress", response_model=Optional[InstallProgress])
async def get_install_progress(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await server_controller.get_install_progress(connection_id)


@router.post("/start")
async def start_server(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    res = await server_controller.start(connection_id)
    AuditService.log_action(db, current_user, "START_SERVER", request.client.host, "Server started", connection_id=connection_id)
    return res


@router.post("/stop")
async def stop_server(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    res = await server_controller.stop(connection_id)
    AuditService.log_action(db, current_user, "STOP_SERVER", request.client.host, "Server stopped", connection_id=connection_id)
    return res


@router.post("/restart")
async def restart_server(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    res = await server_controller.restart(connection_id)
    AuditService.log_action(db, current_user, "RESTART_SERVER", request.client.host, "Server restarted", connection_id=connection_id)
    return res


@router.post("/reset")
async def reset_server(request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    res = await server_controller.reset(connection_id)
    AuditService.log_action(db, current_user, "RESET_SERVER", request.client.host, "Server reset from ERROR", connection_id=connection_id)
    return res


# --- Configuration ---

@router.get("/config", response_model=ServerConfigResponse)
def get_config(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return server_controller.get_config(connection_id)


@router.put("/config", response_model=ServerConfigResponse)
def save_config(request: Request, data: Dict[str, Any] = Body(...), connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    result = server_controller.save_config(data, connection_id)
    AuditService.log_action(db, current_user, "UPDATE_CONFIG", request.client.host, f"Saved config version {result.version}", connection_id=connection_id)
    return result


@router.patch("/config", response_model=ServerConfigResponse)
def patch_config(request: Request, changes: Dict[str, Any] = Body(...), connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    result = server_controller.patch_config(changes, connection_id)
    AuditService.log_action(db, current_user, "UPDATE_CONFIG", request.client.host,
                            f"Patched {sorted(changes)} (version {result.version})", connection_id=connection_id)
    return result


# --- RCON ---

@router.post("/command", response_model=CommandResponse)
async def send_command(payload: CommandRequest, request: Request, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    result = await server_controller.send_command(payload.command, connection_id)
    AuditService.log_action(db, current_user, "SEND_COMMAND", request.client.host, f"Command: {result.command}", connection_id=connection_id)
    return result


# --- Players ---

@router.get("/players", response_model=List[OnlinePlayer])
async def list_players(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await server_controller.list_players(connection_id)


@router.post("/players/{player_id}/kick", response_model=OnlinePlayer)
async def kick_player(player_id: str, request: Request, payload: Optional[KickRequest] = None, connection_id: Optional[str] = None, db: Session = Depends(get_db), current_user: CurrentUser = Depends(require_admin)):
    player = await server_controller.kick_player(player_id, connection_id)
    reason = payload.reason if payload and payload.reason else "no reason given"
    AuditService.log_action(db, current_user, "KICK_PLAYER", request.client.host, f"Kicked {player.name} ({player.id}): {reason}", connection_id=connection_id)
    return player


# --- Logs ---

@router.get("/logs", response_model=List[str])
async def list_log_directories(connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await server_controller.list_log_directories(connection_id)


@router.get("/logs/{directory}", response_model=List[str])
async def list_log_files(directory: str, connection_id: Optional[str] = None, current_user: CurrentUser = Depends(require_admin)):
    return await server_controller.list_log_files(directory, connection_id)


@router.get("/logs/{directory}/{file_name}", response_model=List[LogLine])
async def read_log_file(
    directory: str,
    file_name: str,
    lines: int = Query(500, ge=1),
    connection_id: Optional[str] = None,
    current_user: CurrentUser = Depends(require_admin),
):
    return await server_controller.read_log_file(directory, file_name, lines, connection_id)


@router.get("/console", response_model=List[LogLine])
async def get_console(
    lines: Optional[int] = Query(None, ge=1),
    since: Optional[int] = Query(None, ge=0),
    connection_id: Optional[str] = None,
    current_user: CurrentUser = Depends(require_admin),
):
    return await server_controller.get_console(lines, since, connection_id)


# --- Live events ---

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None, connection_id: Optional[str] = None):
    await websocket.accept()
    try:
        user = decode_token(token or "")
    except HTTPException:
        await websocket.close(code=4001, reason="Invalid token")
        return
    if not user.is_admin:
        await websocket.close(code=4003, reason="Administrator privileges required")
        return

    try:
        supervisor = await server_controller.service.supervisor(connection_id)
    except ServerManagerError as e:
        await websocket.close(code=4004, reason=e.message)
        return

    queue: asyncio.Queue = asyncio.Queue(maxsize=settings.EVENT_QUEUE_SIZE)

    def forward(batch):
        for event in batch:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event.to_dict())

    async def send_events():
        status = await supervisor.status()
        await websocket.send_text(json.dumps({
            "type": events.STATUS_UPDATE,
            "connection_id": supervisor.connection_id,
            "data": status.model_dump(mode="json"),
        }))
        while True:
            message = await queue.get()
            await websocket.send_text(json.dumps(message))

    async def wait_for_disconnect():
        # Clients only listen, anything they send is ignored
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    subscription = server_controller.service.bus.subscribe(supervisor.connection_id, forward, kinds=WS_EVENTS)
    tasks = [asyncio.create_task(send_events()), asyncio.create_task(wait_for_disconnect())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"Event stream for {supervisor.connection_id} ended: {error}")
    finally:
        for task in tasks:
            task.cancel()
        server_controller.service.bus.unsubscribe(subscription)
