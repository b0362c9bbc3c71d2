import logging
from typing import List, Optional

from app.exceptions import NotFoundError, ServerManagerError, ValidationError
from app.services.gameserver.workshop import WorkshopClient
from database.models import Mod
from database.repositories import ModRepository
from database.schemas import ModCreate, ModResponse, ModSyncReport, ModSyncResult, ModUpdate

logger = logging.getLogger(__name__)


def parse_version(value: str, field: str = "version") -> List[int]:
    """'1.2.0.95' -> [1, 2, 0, 95]. Non-numeric components are rejected."""
    parts = value.strip().split(".")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise ValidationError(f"Invalid version '{value}'", {field: "Version components must be integers"})
    if any(n < 0 for n in numbers):
        raise ValidationError(f"Invalid version '{value}'", {field: "Version components must be non-negative"})
    return numbers


def check_compatibility(mod_game_version: Optional[str], server_version: Optional[str]) -> bool:
    """True when a mod requiring ``mod_game_version`` can run on ``server_version``.

    Missing trailing components count as 0 and the first differing
    component decides. Either version being absent means compatible.
    """
    if not mod_game_version or not server_version:
        return True
    required = parse_version(mod_game_version, "game_version")
    actual = parse_version(server_version, "server_version")
    width = max(len(required), len(actual))
    required += [0] * (width - len(required))
    actual += [0] * (width - len(actual))
    for r, a in zip(required, actual):
        if r < a:
            return True
        if r > a:
            return False
    return True


class ModManager:
    def __init__(self, repository: ModRepository, workshop: Optional[WorkshopClient] = None):
        self.repository = repository
        self.workshop = workshop or WorkshopClient()

    def list(self, connection_id: str) -> List[Mod]:
        return self.repository.list(connection_id)

    def list_enabled(self, connection_id: str) -> List[Mod]:
        return self.repository.list_enabled(connection_id)

    def get(self, mod_id: str) -> Mod:
        mod = self.repository.get(mod_id)
        if mod is None:
            raise NotFoundError(f"Mod {mod_id} not found")
        return mod

    def add(self, connection_id: str, definition: ModCreate) -> Mod:
        errors = {}
        if not definition.name.strip():
            errors["name"] = "Mod name is required"
        if not definition.source.strip():
            errors["source"] = "Mod source (workshop id) is required"
        if definition.game_version:
            try:
                parse_version(definition.game_version, "game_version")
            except ValidationError as e:
                errors.update(e.errors)
        if errors:
            raise ValidationError("Invalid mod definition", errors)

        source = definition.source.strip()
        if self.repository.get_by_source(connection_id, source):
            raise ValidationError("Mod already installed", {"source": f"Mod {source} is already installed"})

        mod = self.repository.create(connection_id, {
            "name": definition.name.strip(),
            "source": source,
            "version": definition.version,
            "game_version": definition.game_version,
            "enabled": definition.enabled,
        })
        logger.info(f"Added mod {mod.name} ({mod.source}) to {connection_id} at position {mod.load_order}")
        return mod

    def toggle(self, mod_id: str) -> Mod:
        mod = self.get(mod_id)
        return self.repository.update(mod_id, {"enabled": not mod.enabled})

    def update(self, mod_id: str, changes: ModUpdate) -> Mod:
        self.get(mod_id)
        data = changes.model_dump(exclude_unset=True)
        if data.get("game_version"):
            parse_version(data["game_version"], "game_version")
        if "name" in data and not (data["name"] or "").strip():
            raise ValidationError("Invalid mod update", {"name": "Mod name is required"})
        data = {k: v for k, v in data.items() if not (k in ("name", "enabled") and v is None)}
        return self.repository.update(mod_id, data)

    def remove(self, mod_id: str) -> Mod:
        mod = self.repository.delete(mod_id)
        if mod is None:
            raise NotFoundError(f"Mod {mod_id} not found")
        logger.info(f"Removed mod {mod.name} from {mod.connection_id}")
        return mod

    def reorder(self, connection_id: str, mod_ids: List[str]) -> List[Mod]:
        """Applies a complete new order; either every mod moves or none does."""
        current = {m.id for m in self.repository.list(connection_id)}
        requested = list(mod_ids)
        if len(set(requested)) != len(requested):
            raise ValidationError("Reorder contains duplicate mod ids", {"mod_ids": "Duplicate ids"})
        if set(requested) != current:
            missing = sorted(current - set(requested))
            unknown = sorted(set(requested) - current)
            raise ValidationError(
                "Reorder must list exactly the installed mods",
                {"mod_ids": f"missing={missing} unknown={unknown}"},
            )
        return self.repository.reorder(connection_id, requested)

    def compatibility_report(self, connection_id: str, server_version: Optional[str]) -> List[ModResponse]:
        report = []
        for mod in self.list(connection_id):
            item = ModResponse.model_validate(mod)
            try:
                item.compatible = check_compatibility(mod.game_version, server_version)
            except ValidationError:
                item.compatible = None
            report.append(item)
        return report

    # --- Workshop ---

    async def sync(self, mod_id: str) -> Mod:
        """Refreshes name, version and required game version from the workshop."""
        mod = self.get(mod_id)
        info = await self.workshop.fetch(mod.source)
        changes = {"name": info.name}
        if info.version:
            changes["version"] = info.version
        if info.game_version:
            try:
                parse_version(info.game_version, "game_version")
                changes["game_version"] = info.game_version
            except ValidationError:
                logger.warning(f"Workshop reports unusable game version '{info.game_version}' for {mod.source}")
        updated = self.repository.update(mod_id, changes)
        logger.info(f"Synced mod {updated.name} ({mod.source}): version {updated.version}, game {updated.game_version}")
        return updated

    async def sync_all(self, connection_id: str) -> ModSyncReport:
        """Syncs every mod of a connection; one failing mod does not stop the others."""
        report = ModSyncReport()
        for mod in self.list(connection_id):
            try:
                synced = await self.sync(mod.id)
            except ServerManagerError as e:
                report.failed += 1
                report.results.append(ModSyncResult(id=mod.id, name=mod.name, success=False, error=e.message))
                continue
            report.synced += 1
            report.results.append(ModSyncResult(id=mod.id, name=synced.name, success=True))
        return report
