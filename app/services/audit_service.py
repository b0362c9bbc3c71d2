import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from database.models.bitacora import Bitacora
import datetime

logger = logging.getLogger(__name__)

CRITICAL_ACTIONS = ("REMOVE_CONNECTION", "INSTALL_SERVER", "RESET_SERVER", "SEND_COMMAND")


class AuditService:
    @staticmethod
    def log_action(db: Session, user, action: str, ip_address: str, details: str = None, connection_id: str = None):
        """
        Logs a user action to the Bitacora (Audit Log).

        Args:
            db (Session): Database session
            user (CurrentUser): The caller taken from the bearer token, None for system actions
            action (str): Short description of the action (e.g., "START_SERVER")
            ip_address (str): IP address of the user
            details (str, optional): Detailed description or JSON payload of the change
            connection_id (str, optional): Server connection the action targeted
        """
        try:
            username = user.username if user else "SYSTEM"

            entry = Bitacora(
                username=username,
                action=action,
                ip_address=ip_address,
                details=details,
                connection_id=connection_id,
                severity="CRITICAL" if action in CRITICAL_ACTIONS else "COMMON",
                timestamp=datetime.datetime.now(datetime.timezone.utc)
            )
            db.add(entry)
            db.commit()
            db.refresh(entry)
            return entry
        except SQLAlchemyError as e:
            logger.error(f"Failed to log action {action}: {e}")
            db.rollback()
            return None

