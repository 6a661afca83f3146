"""
Error handling helpers and decorators for raffle operations
Turns the raffle error taxonomy into result dicts callers can map to HTTP responses
"""

from functools import wraps
import logging

import psycopg2
from psycopg2 import errorcodes
from sqlalchemy.exc import DBAPIError, OperationalError

from raffle_system.errors import RaffleError, RaffleIntegrityError

logger = logging.getLogger(__name__)

# SQLSTATEs worth retrying with backoff
TRANSIENT_PGCODES = {
    errorcodes.SERIALIZATION_FAILURE,
    errorcodes.DEADLOCK_DETECTED,
    errorcodes.LOCK_NOT_AVAILABLE,
    errorcodes.QUERY_CANCELED,  # statement_timeout
}

SQLITE_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")

BUSY_MESSAGE = "The raffle is busy right now, please try again"
INTERNAL_MESSAGE = "Internal error, please contact an administrator"

STATUS_CODES = {
    'validation': 400,
    'not_found': 404,
    'transient': 409,
    'internal': 500,
}


def is_transient_db_error(exc):
    """
    True for lock-wait timeouts, deadlocks, serialization failures and lost connections

    PostgreSQL errors are identified by SQLSTATE; a psycopg2 OperationalError
    without one is a dropped or refused connection. SQLite only counts as
    transient when the database is busy or locked; every other OperationalError
    (missing table, disk I/O) is an internal fault.
    """
    if not isinstance(exc, DBAPIError):
        return False

    pgcode = getattr(exc.orig, 'pgcode', None)
    if pgcode:
        return pgcode in TRANSIENT_PGCODES
    if isinstance(exc.orig, psycopg2.OperationalError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in SQLITE_BUSY_MARKERS)
    return False


def raffle_result(operation):
    """
    Decorator for raffle operations that return result dicts

    The wrapped function returns a dict on success (success=True is added if
    missing) and raises on failure. Exceptions never escape; they become:

        RaffleError           -> {'success': False, 'error': <reason>, 'error_kind': 'validation'|'not_found'}
        transient DB errors   -> {'success': False, 'error': BUSY_MESSAGE, 'error_kind': 'transient', 'retryable': True}
        RaffleIntegrityError  -> {'success': False, 'error': INTERNAL_MESSAGE, 'error_kind': 'internal'}
        anything else         -> same as integrity, logged with traceback

    Usage:
        @raffle_result("purchasing tickets")
        def purchase_tickets(self, ...):
            ...
            return {'tickets_purchased': quantity}
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                result = func(*args, **kwargs)
            except RaffleError as e:
                logger.warning(f"Rejected {operation}: {e}")
                return {'success': False, 'error': str(e), 'error_kind': e.kind}
            except RaffleIntegrityError as e:
                logger.critical(f"Integrity failure while {operation}: {e}", exc_info=True)
                return {'success': False, 'error': INTERNAL_MESSAGE, 'error_kind': 'internal'}
            except DBAPIError as e:
                if is_transient_db_error(e):
                    logger.warning(f"Transient database error while {operation}: {e}")
                    return {
                        'success': False,
                        'error': BUSY_MESSAGE,
                        'error_kind': 'transient',
                        'retryable': True,
                    }
                logger.error(f"Database error while {operation}: {e}", exc_info=True)
                return {'success': False, 'error': INTERNAL_MESSAGE, 'error_kind': 'internal'}
            except Exception as e:
                logger.error(f"Unexpected error while {operation}: {e}", exc_info=True)
                return {'success': False, 'error': INTERNAL_MESSAGE, 'error_kind': 'internal'}

            response = {'success': True}
            response.update(result or {})
            return response
        return wrapper
    return decorator


def status_code_for(result):
    """
    HTTP status code for a raffle result dict

    Returns:
        int: 200 on success, otherwise by error_kind (400/404/409/500)
    """
    if result.get('success'):
        return 200
    return STATUS_CODES.get(result.get('error_kind'), 500)

