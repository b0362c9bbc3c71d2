"""
Repositories
Thin persistence layer used by the game-server services. Each repository
opens a short session per operation from the factory it is given, so the
services never hold a session across an ``await``.
"""
import json
import datetime
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.models import ServerConnection, Mod, ServerConfigDocument


class BaseRepository:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def session(self):
        db: Session = self.session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class ConnectionRepository(BaseRepository):
    def list(self) -> List[ServerConnection]:
        with self.session() as db:
            return (
                db.query(ServerConnection)
                .order_by(ServerConnection.is_default.desc(), ServerConnection.created_at.asc(), ServerConnection.id.asc())
                .all()
            )

    def get(self, connection_id: str) -> Optional[ServerConnection]:
        with self.session() as db:
            return db.get(ServerConnection, connection_id)

    def get_by_name(self, name: str) -> Optional[ServerConnection]:
        with self.session() as db:
            return db.query(ServerConnection).filter(ServerConnection.name == name).first()

    def get_default(self) -> Optional[ServerConnection]:
        with self.session() as db:
            return db.query(ServerConnection).filter(ServerConnection.is_default.is_(True)).first()

    def create(self, data: Dict[str, Any]) -> ServerConnection:
        with self.session() as db:
            connection = ServerConnection(**data)
            # First connection becomes the default
            if db.query(func.count(ServerConnection.id)).scalar() == 0:
                connection.is_default = True
            else:
                connection.is_default = False
            db.add(connection)
            db.flush()
            db.refresh(connection)
            return connection

    def delete(self, connection_id: str) -> Optional[ServerConnection]:
        """Deletes a connection with its mods and config, promoting a new default."""
        with self.session() as db:
            connection = db.get(ServerConnection, connection_id)
            if connection is None:
                return None
            was_default = connection.is_default
            db.delete(connection)
            db.flush()

            if was_default:
                oldest = (
                    db.query(ServerConnection)
                    .order_by(ServerConnection.created_at.asc(), ServerConnection.id.asc())
                    .first()
                )
                if oldest is not None:
                    oldest.is_default = True
            return connection

    def set_default(self, connection_id: str) -> Optional[ServerConnection]:
        with self.session() as db:
            connection = db.get(ServerConnection, connection_id)
            if connection is None:
                return None
            db.query(ServerConnection).filter(ServerConnection.id != connection_id).update(
                {ServerConnection.is_default: False}, synchronize_session=False
            )
            connection.is_default = True
            db.flush()
            db.refresh(connection)
            return connection


class ModRepository(BaseRepository):
    def list(self, connection_id: str) -> List[Mod]:
        with self.session() as db:
            return db.query(Mod).filter(Mod.connection_id == connection_id).order_by(Mod.load_order.asc()).all()

    def list_enabled(self, connection_id: str) -> List[Mod]:
        return [m for m in self.list(connection_id) if m.enabled]

    def get(self, mod_id: str) -> Optional[Mod]:
        with self.session() as db:
            return db.get(Mod, mod_id)

    def get_by_source(self, connection_id: str, source: str) -> Optional[Mod]:
        with self.session() as db:
            return db.query(Mod).filter(Mod.connection_id == connection_id, Mod.source == source).first()

    def create(self, connection_id: str, data: Dict[str, Any]) -> Mod:
        with self.session() as db:
            count = db.query(func.count(Mod.id)).filter(Mod.connection_id == connection_id).scalar()
            mod = Mod(connection_id=connection_id, load_order=count, **data)
            db.add(mod)
            db.flush()
            db.refresh(mod)
            return mod

    def update(self, mod_id: str, changes: Dict[str, Any]) -> Optional[Mod]:
        with self.session() as db:
            mod = db.get(Mod, mod_id)
            if mod is None:
                return None
            for key, value in changes.items():
                setattr(mod, key, value)
            db.flush()
            db.refresh(mod)
            return mod

    def delete(self, mod_id: str) -> Optional[Mod]:
        """Deletes a mod and closes the gap it leaves in the load order."""
        with self.session() as db:
            mod = db.get(Mod, mod_id)
            if mod is None:
                return None
            connection_id, removed_order = mod.connection_id, mod.load_order
            db.delete(mod)
            db.flush()
            following = (
                db.query(Mod)
                .filter(Mod.connection_id == connection_id, Mod.load_order > removed_order)
                .order_by(Mod.load_order.asc())
                .all()
            )
            for m in following:
                m.load_order = m.load_order - 1
                db.flush()
            return mod

    def reorder(self, connection_id: str, ordered_ids: List[str]) -> List[Mod]:
        """Applies a full permutation in one transaction.

        Orders are first moved to negative placeholders so the
        (connection_id, load_order) unique constraint holds after every
        statement.
        """
        with self.session() as db:
            mods = {m.id: m for m in db.query(Mod).filter(Mod.connection_id == connection_id).all()}
            for index, mod_id in enumerate(ordered_ids):
                mods[mod_id].load_order = -(index + 1)
            db.flush()
            for index, mod_id in enumerate(ordered_ids):
                mods[mod_id].load_order = index
            db.flush()
            return sorted(mods.values(), key=lambda m: m.load_order)


class ConfigRepository(BaseRepository):
    def get(self, connection_id: str) -> Optional[Dict[str, Any]]:
        with self.session() as db:
            record = db.get(ServerConfigDocument, connection_id)
            if record is None:
                return None
            return json.loads(record.document)

    def get_version(self, connection_id: str) -> int:
        with self.session() as db:
            record = db.get(ServerConfigDocument, connection_id)
            return record.version if record else 0

    def save(self, connection_id: str, document: Dict[str, Any]) -> int:
        with self.session() as db:
            record = db.get(ServerConfigDocument, connection_id)
            if record is None:
                record = ServerConfigDocument(connection_id=connection_id, version=0)
                db.add(record)
            record.document = json.dumps(document)
            record.version = (record.version or 0) + 1
            record.updated_at = datetime.datetime.now(datetime.timezone.utc)
            db.flush()
            return record.version
