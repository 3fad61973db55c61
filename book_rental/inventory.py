"""
Inventory ledger: the stock / availability pair on Book.

Book.stock is the only hot shared counter in the system. Reservations are
a single conditional UPDATE ("decrement where stock >= quantity") checked
through the affected-row count, so two concurrent bookings of the last
copy can never both succeed, whatever process they run in.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental.errors import (
    FailureReason,
    ReserveFailure,
    closes_transaction,
    storage_operation,
)
from book_rental.models import Book, EntityStatus, utcnow
from book_rental.schemas import OperationResult, ReservationOutcome
from book_rental import store


logger = logging.getLogger(__name__)


async def _reload(db: AsyncSession, book_id: int) -> Optional[Book]:
    """Fetch the book row as stored now, refreshing any identity-mapped copy."""
    stmt = (
        select(Book)
        .where(Book.id == book_id)
        .execution_options(include_deleted=True, populate_existing=True)
    )
    return (await db.execute(stmt)).scalars().first()


@storage_operation
@closes_transaction
async def try_reserve(
    db: AsyncSession, book_id: int, quantity: int = 1, commit: bool = True
) -> ReservationOutcome:
    """
    Atomically take `quantity` copies of a book.

    Business Logic:
    - Succeeds only for an active book with is_available set and enough
      stock; availability is recomputed as stock > 0 in the same UPDATE
    - On failure nothing is written and the outcome names the reason:
      not_found (absent or soft-deleted), out_of_stock, unavailable,
      invalid_quantity
    - A standalone failure rolls back, releasing the write lock
    """
    if quantity < 1:
        return ReservationOutcome(
            book_id=book_id, reserved=False, failure=ReserveFailure.INVALID_QUANTITY
        )

    stmt = (
        update(Book)
        .where(
            Book.id == book_id,
            Book.status != EntityStatus.DELETED,
            Book.is_available.is_(True),
            Book.stock >= quantity,
        )
        .values(
            stock=Book.stock - quantity,
            is_available=(Book.stock - quantity) > 0,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    book = await _reload(db, book_id)

    if result.rowcount == 1:
        if commit:
            await db.commit()
        logger.debug("Reserved %s of book %s, %s left", quantity, book_id, book.stock)
        return ReservationOutcome(
            book_id=book_id, reserved=True, stock=book.stock, title=book.title
        )

    if book is None or book.status == EntityStatus.DELETED:
        failure = ReserveFailure.NOT_FOUND
    elif book.stock < quantity:
        failure = ReserveFailure.OUT_OF_STOCK
    else:
        failure = ReserveFailure.UNAVAILABLE

    return ReservationOutcome(
        book_id=book_id,
        reserved=False,
        failure=failure,
        stock=book.stock if book is not None else None,
        title=book.title if book is not None else None,
    )


@storage_operation
@closes_transaction
async def release(
    db: AsyncSession, book_id: int, quantity: int = 1, commit: bool = True
) -> bool:
    """
    Put `quantity` copies back on the shelf.

    Works on soft-deleted books too: the historical stock figure stays
    meaningful after a book leaves the catalog. Returns False when
    the row does not exist at all or the quantity is not positive.
    """
    if quantity < 1:
        return False

    stmt = (
        update(Book)
        .where(Book.id == book_id)
        .values(
            stock=Book.stock + quantity,
            is_available=(Book.stock + quantity) > 0,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        return False

    await _reload(db, book_id)
    if commit:
        await db.commit()
    logger.debug("Released %s of book %s", quantity, book_id)
    return True


@storage_operation
@closes_transaction
async def restock(
    db: AsyncSession, book_id: int, quantity: int, commit: bool = True
) -> OperationResult:
    """Add newly acquired copies to an active book."""
    if quantity < 1:
        return OperationResult.fail(
            FailureReason.VALIDATION_ERROR, "Restock quantity must be at least 1"
        )
    if not await store.books.exists(db, book_id):
        return OperationResult.fail(FailureReason.NOT_FOUND, "Book not found")

    await release(db, book_id, quantity, commit=commit)
    logger.info("Restocked book %s with %s copies", book_id, quantity)
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def set_availability(
    db: AsyncSession, book_id: int, is_available: bool, commit: bool = True
) -> OperationResult:
    """
    Administrative override of the availability flag.

    The flag holds until the next stock movement recomputes it.
    """
    book = await store.books.get_by_id(db, book_id)
    if book is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Book not found")

    book.is_available = is_available
    book.updated_at = utcnow()
    await db.flush()
    if commit:
        await db.commit()
    logger.info("Availability of book %s set to %s", book_id, is_available)
    return OperationResult.ok()
