"""
Mod metadata from the Arma Reforger workshop.

Workshop pages are server-rendered Next.js; the asset record is read from
the ``__NEXT_DATA__`` JSON embedded in the page instead of the markup.
"""
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import httpx

from app import settings
from app.exceptions import NotFoundError, ServerTimeoutError, ValidationError, WorkshopError

logger = logging.getLogger(__name__)

NEXT_DATA = re.compile(r'<script id="__NEXT_DATA__"[^>]*>(.*?)</script>', re.DOTALL)
WORKSHOP_ID = re.compile(r"^[0-9A-Za-z]+$")
USER_AGENT = "reforger-server-manager"


@dataclass
class WorkshopMod:
    id: str
    name: str
    version: Optional[str] = None
    game_version: Optional[str] = None
    author: Optional[str] = None


def parse_page(html: str, workshop_id: str) -> WorkshopMod:
    match = NEXT_DATA.search(html)
    if not match:
        raise WorkshopError(f"Workshop page of {workshop_id} carries no asset data")
    try:
        data = json.loads(match.group(1))
    except ValueError as e:
        raise WorkshopError(f"Workshop page of {workshop_id} has malformed asset data: {e}")

    asset = ((data.get("props") or {}).get("pageProps") or {}).get("asset")
    if not asset:
        raise NotFoundError(f"Mod {workshop_id} not found on the workshop")

    tree = asset.get("dependencyTree") or {}
    current = asset.get("currentVersion") or {}
    return WorkshopMod(
        id=workshop_id,
        name=asset.get("name") or workshop_id,
        version=asset.get("currentVersionNumber") or tree.get("version") or current.get("tag"),
        game_version=asset.get("gameVersion") or tree.get("gameVersion") or current.get("gameVersionName"),
        author=(asset.get("author") or {}).get("username"),
    )


class WorkshopClient:
    """Fetches workshop pages, keeping each parsed result for ``cache_ttl`` seconds."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_ttl: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.WORKSHOP_URL).rstrip("/")
        self.timeout = settings.WORKSHOP_TIMEOUT if timeout is None else timeout
        self.cache_ttl = settings.WORKSHOP_CACHE_TTL if cache_ttl is None else cache_ttl
        self.transport = transport
        self._cache: Dict[str, Tuple[float, WorkshopMod]] = {}

    async def fetch(self, workshop_id: str) -> WorkshopMod:
        if not WORKSHOP_ID.match(workshop_id or ""):
            raise ValidationError(f"Invalid workshop id '{workshop_id}'", {"source": "Must be alphanumeric"})

        cached = self._cache.get(workshop_id)
        if cached is not None and time.monotonic() - cached[0] < self.cache_ttl:
            return cached[1]

        url = f"{self.base_url}/{workshop_id}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self.transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            raise ServerTimeoutError(f"Workshop did not answer within {self.timeout}s", {"id": workshop_id})
        except httpx.HTTPError as e:
            raise WorkshopError(f"Could not reach the workshop: {e}", {"id": workshop_id})

        if response.status_code == 404:
            raise NotFoundError(f"Mod {workshop_id} not found on the workshop")
        if response.status_code >= 400:
            raise WorkshopError(f"Workshop answered HTTP {response.status_code}", {"id": workshop_id})

        mod = parse_page(response.text, workshop_id)
        self._cache[workshop_id] = (time.monotonic(), mod)
        logger.debug(f"Workshop {workshop_id}: {mod.name} {mod.version} (game {mod.game_version})")
        return mod
