import json

import httpx
import pytest

from app.exceptions import NotFoundError, ServerTimeoutError, ValidationError, WorkshopError
from app.services.gameserver.mods import ModManager
from app.services.gameserver.workshop import WorkshopClient, parse_page
from database.schemas import ModCreate


def workshop_page(asset):
    data = {"props": {"pageProps": {"asset": asset}}}
    return f'<html><script id="__NEXT_DATA__" type="application/json">{json.dumps(data)}</script></html>'


ASSETS = {
    "5965550F24A0C152": {
        "name": "Where Am I",
        "currentVersionNumber": "1.2.3",
        "gameVersion": "1.2.0.95",
        "author": {"username": "modder"},
    },
    "59651354B2904BA6": {
        "name": "Fallbacks",
        "dependencyTree": {"version": "0.9.1"},
        "currentVersion": {"gameVersionName": "1.1.0"},
    },
}


class Workshop:
    """In-process workshop site for httpx.MockTransport."""

    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        workshop_id = request.url.path.rsplit("/", 1)[-1]
        if workshop_id == "BROKEN":
            return httpx.Response(500, text="oops")
        if workshop_id == "SLOW":
            raise httpx.ReadTimeout("slow", request=request)
        asset = ASSETS.get(workshop_id)
        if asset is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, text=workshop_page(asset))


@pytest.fixture
def site():
    return Workshop()


@pytest.fixture
def workshop(site):
    return WorkshopClient(base_url="https://workshop.test/workshop", transport=httpx.MockTransport(site))


@pytest.fixture
def mods(mod_repo, workshop):
    return ModManager(mod_repo, workshop)


@pytest.fixture
def connection_id(connection_repo):
    return connection_repo.create({"name": "main", "type": "local", "install_path": "/srv/reforger"}).id


# ==============================================================================
# Page parsing
# ==============================================================================

def test_parse_page_reads_the_asset():
    mod = parse_page(workshop_page(ASSETS["5965550F24A0C152"]), "5965550F24A0C152")

    assert (mod.name, mod.version, mod.game_version, mod.author) == ("Where Am I", "1.2.3", "1.2.0.95", "modder")


def test_parse_page_falls_back_to_version_records():
    mod = parse_page(workshop_page(ASSETS["59651354B2904BA6"]), "59651354B2904BA6")

    assert (mod.version, mod.game_version, mod.author) == ("0.9.1", "1.1.0", None)


def test_page_without_data_is_an_error():
    with pytest.raises(WorkshopError):
        parse_page("<html></html>", "ABC")
    with pytest.raises(NotFoundError):
        parse_page(workshop_page(None), "ABC")


# ==============================================================================
# Client
# ==============================================================================

@pytest.mark.asyncio
async def test_fetch_is_cached(workshop, site):
    first = await workshop.fetch("5965550F24A0C152")
    second = await workshop.fetch("5965550F24A0C152")

    assert first == second
    assert site.requests == ["/workshop/5965550F24A0C152"]


@pytest.mark.asyncio
async def test_fetch_errors(workshop):
    with pytest.raises(NotFoundError):
        await workshop.fetch("UNKNOWN")
    with pytest.raises(WorkshopError):
        await workshop.fetch("BROKEN")
    with pytest.raises(ServerTimeoutError):
        await workshop.fetch("SLOW")
    with pytest.raises(ValidationError):
        await workshop.fetch("../admin")


# ==============================================================================
# Mod sync
# ==============================================================================

@pytest.mark.asyncio
async def test_sync_updates_metadata(mods, connection_id):
    mod = mods.add(connection_id, ModCreate(name="placeholder", source="5965550F24A0C152"))

    synced = await mods.sync(mod.id)

    assert (synced.name, synced.version, synced.game_version) == ("Where Am I", "1.2.3", "1.2.0.95")


@pytest.mark.asyncio
async def test_unusable_game_version_is_not_stored(mods, connection_id, monkeypatch):
    monkeypatch.setitem(ASSETS, "5965550F24A0C152", dict(ASSETS["5965550F24A0C152"], gameVersion="1.2-beta"))
    mod = mods.add(connection_id, ModCreate(name="A", source="5965550F24A0C152", game_version="1.1.0"))

    synced = await mods.sync(mod.id)

    assert synced.version == "1.2.3"
    assert synced.game_version == "1.1.0"


@pytest.mark.asyncio
async def test_sync_all_reports_each_mod(mods, connection_id):
    mods.add(connection_id, ModCreate(name="A", source="5965550F24A0C152"))
    mods.add(connection_id, ModCreate(name="Gone", source="UNKNOWN"))
    mods.add(connection_id, ModCreate(name="B", source="59651354B2904BA6"))

    report = await mods.sync_all(connection_id)

    assert (report.synced, report.failed) == (2, 1)
    assert [(r.name, r.success) for r in report.results] == [("Where Am I", True), ("Gone", False), ("Fallbacks", True)]
    assert "not found" in report.results[1].error
