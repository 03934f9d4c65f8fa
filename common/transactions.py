import functools
import logging

from django.conf import settings
from django.db import DEFAULT_DB_ALIAS, IntegrityError, InterfaceError, OperationalError, connections, transaction

from common.connectivity import require_connection
from common.errors import ConnectivityError, ConsistencyError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 5000


def _apply_lock_timeout(using):
    connection = connections[using]
    if connection.vendor != "postgresql":
        return
    timeout_ms = int(getattr(settings, "LEDGER_LOCK_TIMEOUT_MS", DEFAULT_LOCK_TIMEOUT_MS))
    with connection.cursor() as cursor:
        cursor.execute("SELECT set_config('lock_timeout', %s, true)", [f"{timeout_ms}ms"])


def ledger_transaction(func=None, *, using=DEFAULT_DB_ALIAS):
    """
    Run a ledger mutation as one all-or-nothing unit of work.

    Offline stores are rejected before any query is issued. Integrity
    violations and driver failures are translated into typed ledger errors
    once the transaction has been rolled back.
    """

    def decorator(view_func):
        @functools.wraps(view_func)
        def wrapper(*args, **kwargs):
            require_connection(using)
            try:
                with transaction.atomic(using=using):
                    _apply_lock_timeout(using)
                    return view_func(*args, **kwargs)
            except IntegrityError as exc:
                logger.error("ledger_integrity_violation operation=%s", view_func.__name__, exc_info=True)
                raise ConsistencyError(
                    "The operation would break a ledger constraint and was rolled back.",
                    details={"operation": view_func.__name__, "error": str(exc)},
                ) from exc
            except (OperationalError, InterfaceError) as exc:
                logger.warning("ledger_store_failure operation=%s", view_func.__name__, exc_info=True)
                raise ConnectivityError(
                    "The data store failed or timed out; no changes were applied.",
                    details={"operation": view_func.__name__, "error": str(exc)},
                ) from exc

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
