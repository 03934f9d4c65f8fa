import enum
import logging

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, InterfaceError, OperationalError, connections

from common.errors import ConnectivityError

logger = logging.getLogger(__name__)


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    OFFLINE = "offline"


def get_connection_status(using=DEFAULT_DB_ALIAS):
    if getattr(settings, "LEDGER_OFFLINE", False):
        return ConnectionStatus.OFFLINE

    try:
        connections[using].ensure_connection()
    except (OperationalError, InterfaceError):
        logger.warning("store_unreachable alias=%s", using, exc_info=True)
        return ConnectionStatus.OFFLINE
    return ConnectionStatus.CONNECTED


def require_connection(using=DEFAULT_DB_ALIAS):
    """Reject immediately when the store is offline instead of degrading to a no-op."""
    if get_connection_status(using) is ConnectionStatus.OFFLINE:
        raise ConnectivityError(
            "The data store is offline; ledger mutations are disabled.",
            details={"status": ConnectionStatus.OFFLINE.value},
        )
