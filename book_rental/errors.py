import enum
import logging
import functools

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession


logger = logging.getLogger(__name__)


class FailureReason(str, enum.Enum):
    """
    Closed set of expected domain outcomes.

    These are never raised. Engine operations return them inside a result
    object so callers (the bulk restore coordinator in particular) can keep
    processing sibling items after one failure.
    """

    NOT_FOUND = "not_found"
    CUSTOMER_NOT_FOUND = "customer_not_found"
    ORDER_NOT_FOUND = "order_not_found"
    GENRE_NOT_FOUND = "genre_not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    NOT_DELETED = "not_deleted"
    ALREADY_DELETED = "already_deleted"
    BOOK_UNAVAILABLE = "book_unavailable"
    BOOKS_UNAVAILABLE = "books_unavailable"
    NO_BOOKS_AVAILABLE = "no_books_available"
    VALIDATION_ERROR = "validation_error"


class ReserveFailure(str, enum.Enum):
    """Why a single-book reservation could not be made."""

    NOT_FOUND = "not_found"
    OUT_OF_STOCK = "out_of_stock"
    UNAVAILABLE = "unavailable"
    INVALID_QUANTITY = "invalid_quantity"


class StorageError(Exception):
    """The persistence layer could not complete the operation."""


class IntegrityViolation(StorageError):
    """A storage constraint (uniqueness, foreign key, check) rejected a write."""


def _find_session(args, kwargs):
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, AsyncSession):
            return value
    return None


def storage_operation(func):
    """
    Translate SQLAlchemy faults raised by an engine coroutine into StorageError.

    The session passed to the coroutine is rolled back first so a failed
    unit of work never leaves half of its writes pending.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except SQLAlchemyError as exc:
            session = _find_session(args, kwargs)
            if session is not None:
                await session.rollback()
            logger.error("Storage fault in %s: %s", func.__qualname__, exc)
            if isinstance(exc, IntegrityError):
                raise IntegrityViolation(str(exc.orig)) from exc
            raise StorageError(str(exc)) from exc

    return wrapper


def closes_transaction(func):
    """
    Roll back whatever transaction a standalone operation returns with.

    Successful paths commit before returning, so a transaction still open
    at that point belongs to a rejection that only read. SQLite transactions
    begin IMMEDIATE and hold the database write lock, so it must not outlive
    the call. Calls made with commit=False belong to the caller's unit of
    work and are left untouched.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        outcome = await func(*args, **kwargs)
        session = _find_session(args, kwargs)
        if kwargs.get("commit", True) and session is not None and session.in_transaction():
            await session.rollback()
        return outcome

    return wrapper
