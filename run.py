import sys
import asyncio
import uvicorn

# 1. Enforce ProactorEventLoop on Windows BEFORE ANYTHING ELSE
# This is required for asyncio.create_subprocess_exec to work on Windows
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

if __name__ == "__main__":
    # 2. Verify websockets library is available
    try:
        import websockets
        print(f"✓ WebSockets library loaded: {websockets.__version__}")
    except ImportError as e:
        print(f"ERROR: WebSockets library not available: {e}")
        print("Please run: pip install websockets")
        sys.exit(1)

    # 3. Run Uvicorn with explicit WebSocket configuration
    # Pass the app object directly to avoid import issues and subprocess spawning
    from main import app
    from app import settings

    print(f"Starting Reforger Server Manager on http://{settings.HOST}:{settings.PORT}")
    print(f"WebSocket endpoint: ws://{settings.HOST}:{settings.PORT}/api/server/ws?token=<jwt>")

    # Force uvicorn to use websockets implementation (cross-platform)
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        reload=False,
        ws="websockets",  # Force websockets instead of auto-detection
        log_level="info"
    )
