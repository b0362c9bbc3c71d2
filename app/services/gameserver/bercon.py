"""
BattlEye RCon for the asyncio side of the manager.

``rcon.battleye.Client`` speaks the UDP protocol (login, multi-part command
replies, server message acknowledgement) over a blocking socket. Every call
runs in a worker thread, one at a time per client. Server messages are read
while a command or keep-alive is in flight and handed back to the event loop.
"""
import asyncio
import functools
import logging
from typing import Callable, Optional

from rcon.battleye import Client
from rcon.exceptions import WrongPassword

from app.exceptions import ServerManagerError, ServerProcessError, ServerTimeoutError

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 30


class BERconClient:
    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        timeout: float = 5,
        on_message: Optional[Callable[[str], None]] = None,
        client_class=Client,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.on_message = on_message
        self.client_class = client_class

        self.client = None
        self.closed = False
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()
        self._keepalive: Optional[asyncio.Task] = None

    async def connect(self):
        self.loop = asyncio.get_running_loop()
        self.client = self.client_class(
            self.host,
            self.port,
            timeout=self.timeout,
            passwd=self.password,
            message_handler=self._handle_message,
        )
        try:
            await asyncio.to_thread(functools.partial(self.client.connect, login=True))
        except WrongPassword:
            self.close()
            raise ServerProcessError("RCON login rejected, check the RCON password")
        except TimeoutError:
            self.close()
            raise ServerTimeoutError(f"RCON login to {self.host}:{self.port} timed out")
        except OSError as e:
            self.close()
            raise ServerProcessError(f"RCON connection to {self.host}:{self.port} failed: {e}")
        self._keepalive = self.loop.create_task(self._keepalive_loop())
        logger.info(f"[RCON] Logged in to {self.host}:{self.port}")

    async def command(self, text: str) -> str:
        if self.closed or self.client is None:
            raise ServerProcessError("RCON connection is closed")
        try:
            async with self._lock:
                return await asyncio.to_thread(self.client.run, text)
        except TimeoutError:
            raise ServerTimeoutError(f"RCON command timed out after {self.timeout}s", {"command": text})
        except OSError as e:
            self.close()
            raise ServerProcessError(f"RCON connection lost: {e}")

    def close(self):
        if self._keepalive is not None:
            self._keepalive.cancel()
            self._keepalive = None
        if self.closed:
            return
        self.closed = True
        if self.client is not None:
            try:
                self.client.close()
            except OSError as e:
                logger.debug(f"[RCON] Error closing socket to {self.host}:{self.port}: {e}")

    def _handle_message(self, message):
        # Runs on the worker thread
        text = getattr(message, "message", None)
        if text is None:
            text = str(message)
        if self.on_message is not None and self.loop is not None:
            self.loop.call_soon_threadsafe(self.on_message, text)

    async def _keepalive_loop(self):
        while not self.closed:
            await asyncio.sleep(KEEPALIVE_INTERVAL)
            try:
                await self.command("")
            except ServerManagerError as e:
                logger.warning(f"[RCON] Keep-alive to {self.host}:{self.port} failed: {e.message}")
                return
