import sys
import asyncio
import logging

# Enforce ProactorEventLoop on Windows for subprocess support (works with reload)
# Must be set before any other asyncio usage or import that might init loop
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app import settings
from app.exceptions import ServerManagerError
from app.services.gameserver.service import game_server_service
import uvicorn

# Router Imports
from routes import auth, connections, servers, mods, audit

logger = logging.getLogger(__name__)

app = FastAPI(title="Reforger Server Manager")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API Routers
app.include_router(auth.router)
app.include_router(connections.router)
app.include_router(mods.router)
app.include_router(servers.router)
app.include_router(audit.router)


@app.exception_handler(ServerManagerError)
async def server_manager_error_handler(request: Request, exc: ServerManagerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    loop = asyncio.get_running_loop()
    logger.info(f"Event loop: {type(loop).__name__} on {sys.platform}")
    try:
        await game_server_service.initialize()
    except Exception as e:
        logger.error(f"Error loading server connections: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    await game_server_service.shutdown()


@app.get("/api/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    # Force websockets implementation (cross-platform)
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        ws="websockets",
        log_level="info"
    )
