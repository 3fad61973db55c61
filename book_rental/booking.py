"""
Booking orchestrator: turns a multi-book request into one rental order.

The order header, its line items and every stock decrement are written in
one transaction. In strict mode a single unavailable book rolls the whole
attempt back, which also undoes the reservations already taken for the
other books of the same request.
"""

import logging
import secrets
from datetime import timedelta

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental import inventory, store
from book_rental.config import Config
from book_rental.errors import FailureReason, closes_transaction, storage_operation
from book_rental.models import OrderStatus, RentalOrder, RentalOrderDetail, utcnow
from book_rental.schemas import BookingResult, RentalOrderCreate, UnavailableBook


logger = logging.getLogger(__name__)


def generate_order_number(now=None):
    """
    Short human-readable order number: RO + UTC timestamp + random suffix.

    e.g. RO2510191432077F3A. Uniqueness is guaranteed by the storage
    constraint; this only makes collisions unlikely.
    """
    now = now or utcnow()
    return f"RO{now:%y%m%d%H%M%S}{secrets.token_hex(2).upper()}"


async def _unused_order_number(db: AsyncSession, now):
    for _ in range(Config.ORDER_NUMBER_ATTEMPTS):
        number = generate_order_number(now)
        taken = await store.orders.find_one_including_deleted(
            db, RentalOrder.order_number == number
        )
        if taken is None:
            return number
    # Left to the unique constraint to reject.
    return number


@storage_operation
@closes_transaction
async def create_order(
    db: AsyncSession,
    customer_id: int,
    book_ids,
    rental_days: int,
    notes=None,
    allow_partial_order: bool = False,
) -> BookingResult:
    """
    Reserve the requested books and create an Active order for them.

    Business Logic:
    1. The customer must exist and be active, otherwise nothing is created
    2. Each distinct book is reserved through the inventory ledger and
       classified as processed or unavailable (with the reason)
    3. Strict mode (allow_partial_order=False) fails on any unavailable
       book and rolls back every reservation made in this attempt
    4. With nothing reservable the attempt fails in either mode
    5. Otherwise one order is created with one line item per processed
       book (quantity 1, due date = now + rental_days); unavailable books
       are reported alongside success and flag the order as partial
    """
    try:
        request = RentalOrderCreate(
            customer_id=customer_id,
            book_ids=list(book_ids),
            rental_days=rental_days,
            notes=notes,
            allow_partial_order=allow_partial_order,
        )
    except ValidationError as exc:
        return BookingResult.fail(FailureReason.VALIDATION_ERROR, str(exc))

    customer = await store.customers.get_by_id(db, request.customer_id)
    if customer is None:
        logger.warning("Booking rejected: customer %s not found", request.customer_id)
        return BookingResult.fail(FailureReason.CUSTOMER_NOT_FOUND, "Customer not found")

    processed = []
    unavailable = []
    for book_id in request.book_ids:
        outcome = await inventory.try_reserve(db, book_id, commit=False)
        if outcome.reserved:
            processed.append(book_id)
        else:
            unavailable.append(
                UnavailableBook(book_id=book_id, title=outcome.title, reason=outcome.failure)
            )

    if unavailable and not request.allow_partial_order:
        await db.rollback()
        logger.warning(
            "Strict booking for customer %s rejected, unavailable books: %s",
            request.customer_id,
            [item.book_id for item in unavailable],
        )
        return BookingResult.fail(
            FailureReason.BOOKS_UNAVAILABLE,
            "The following books are not available: "
            + ", ".join(f"'{item.title or item.book_id}'" for item in unavailable),
            processed_books=processed,
            unavailable_books=unavailable,
        )

    if not processed:
        await db.rollback()
        logger.warning("Booking for customer %s rejected, no book available", request.customer_id)
        return BookingResult.fail(
            FailureReason.NO_BOOKS_AVAILABLE,
            "None of the requested books are available",
            unavailable_books=unavailable,
        )

    now = utcnow()
    due_date = now + timedelta(days=request.rental_days)
    order = RentalOrder(
        order_number=await _unused_order_number(db, now),
        customer_id=request.customer_id,
        order_date=now,
        due_date=due_date,
        order_status=OrderStatus.ACTIVE,
        notes=request.notes,
        details=[
            RentalOrderDetail(
                book_id=book_id,
                quantity=1,
                rental_days=request.rental_days,
                due_date=due_date,
                is_returned=False,
            )
            for book_id in processed
        ],
    )
    await store.orders.create(db, order, commit=False)
    await db.commit()

    logger.info(
        "Created order %s (%s) for customer %s with %s book(s)%s",
        order.id,
        order.order_number,
        request.customer_id,
        len(processed),
        ", partial" if unavailable else "",
    )
    return BookingResult.ok(
        order_id=order.id,
        order_number=order.order_number,
        processed_books=processed,
        unavailable_books=unavailable,
        is_partial_order=bool(unavailable),
    )
