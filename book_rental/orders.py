"""
Order lifecycle: returns, status overrides, cancellation, edits, delete and
restore of rental orders.

States: PENDING -> ACTIVE -> {RETURNED, OVERDUE, CANCELLED}. ACTIVE and
OVERDUE orders hold one reserved copy per open line item; every transition
out of those states gives the copies back in the same transaction as the
status change. RETURNED and CANCELLED are closed.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from book_rental import inventory, store
from book_rental.errors import FailureReason, closes_transaction, storage_operation
from book_rental.models import (
    INVENTORY_HOLDING_STATUSES,
    OrderStatus,
    RentalOrder,
    RentalOrderDetail,
    not_deleted,
    utcnow,
)
from book_rental.schemas import (
    CreateResult,
    OperationResult,
    OrderChangeResult,
    Page,
    Pagination,
    RentalOrderUpdate,
    ReturnResult,
    UnavailableBook,
)


logger = logging.getLogger(__name__)

CLOSED_STATUSES = (OrderStatus.RETURNED, OrderStatus.CANCELLED)


def _order_with_details(include_deleted=False):
    stmt = (
        select(RentalOrder)
        .options(selectinload(RentalOrder.details))
        .execution_options(populate_existing=True)
    )
    if include_deleted:
        stmt = stmt.execution_options(include_deleted=True)
    return stmt


async def _load_order(db: AsyncSession, order_id: int, include_deleted=False):
    stmt = _order_with_details(include_deleted).where(RentalOrder.id == order_id)
    return (await db.execute(stmt)).scalars().first()


def _live_details(order) -> List[RentalOrderDetail]:
    return [detail for detail in order.details if not detail.is_deleted]


def _open_details(order) -> List[RentalOrderDetail]:
    return [detail for detail in _live_details(order) if not detail.is_returned]


def _rental_days(order) -> int:
    # due_date is always order_date + rental days
    return max(1, (order.due_date - order.order_date).days)


async def _mark_returned(db: AsyncSession, detail, now, release=True):
    detail.is_returned = True
    detail.return_date = now
    detail.updated_at = now
    if release:
        await inventory.release(db, detail.book_id, detail.quantity, commit=False)


async def _release_open_details(db: AsyncSession, order):
    for detail in _open_details(order):
        await inventory.release(db, detail.book_id, detail.quantity, commit=False)


async def _reserve_open_details(db: AsyncSession, order) -> Optional[UnavailableBook]:
    """Take inventory back for every open line item; stop at the first miss."""
    for detail in _open_details(order):
        outcome = await inventory.try_reserve(db, detail.book_id, detail.quantity, commit=False)
        if not outcome.reserved:
            return UnavailableBook(
                book_id=detail.book_id, title=outcome.title, reason=outcome.failure
            )
    return None


def _unavailable_message(item: UnavailableBook) -> str:
    return f"Book {item.book_id} is not available ({item.reason.value})"


# ----------------- queries -----------------


@storage_operation
async def get_order(
    db: AsyncSession, order_id: int, include_deleted: bool = False
) -> Optional[RentalOrder]:
    """Order with its (non-deleted, unless include_deleted) line items."""
    return await _load_order(db, order_id, include_deleted)


def _newest_first(pagination: Optional[Pagination]) -> Pagination:
    pagination = pagination or Pagination()
    if pagination.sort_by is None:
        pagination = pagination.model_copy(
            update={"sort_by": "order_date", "sort_descending": True}
        )
    return pagination


@storage_operation
async def list_orders(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    stmt = store.orders.query().options(selectinload(RentalOrder.details))
    return await store.orders.paginate(db, stmt, _newest_first(pagination))


@storage_operation
async def list_orders_by_customer(
    db: AsyncSession, customer_id: int, pagination: Optional[Pagination] = None
) -> Page:
    stmt = (
        store.orders.query()
        .where(RentalOrder.customer_id == customer_id)
        .options(selectinload(RentalOrder.details))
    )
    return await store.orders.paginate(db, stmt, _newest_first(pagination))


@storage_operation
async def list_deleted_orders(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    stmt = store.orders.query_deleted().options(selectinload(RentalOrder.details))
    return await store.orders.paginate(db, stmt, _newest_first(pagination))


@storage_operation
async def list_overdue_details(db: AsyncSession, now=None) -> List[RentalOrderDetail]:
    """
    Line items past their due date and not yet returned.

    This is the authoritative overdue set; a stored OVERDUE order status is
    only an annotation set through set_status.
    """
    now = now or utcnow()
    stmt = (
        select(RentalOrderDetail)
        .join(RentalOrder, RentalOrderDetail.rental_order_id == RentalOrder.id)
        .where(
            RentalOrderDetail.due_date < now,
            RentalOrderDetail.is_returned.is_(False),
            RentalOrder.order_status.in_(INVENTORY_HOLDING_STATUSES),
            not_deleted(RentalOrder),
        )
        .order_by(RentalOrderDetail.due_date, RentalOrderDetail.id)
    )
    return list((await db.execute(stmt)).scalars().all())


@storage_operation
async def list_overdue_orders(
    db: AsyncSession, pagination: Optional[Pagination] = None, now=None
) -> Page:
    now = now or utcnow()
    stmt = (
        store.orders.query()
        .where(
            RentalOrder.order_status.in_(INVENTORY_HOLDING_STATUSES),
            RentalOrder.details.any(
                and_(
                    RentalOrderDetail.due_date < now,
                    RentalOrderDetail.is_returned.is_(False),
                    not_deleted(RentalOrderDetail),
                )
            ),
        )
        .options(selectinload(RentalOrder.details))
    )
    pagination = pagination or Pagination()
    if pagination.sort_by is None:
        pagination = pagination.model_copy(update={"sort_by": "due_date"})
    return await store.orders.paginate(db, stmt, pagination)


# ----------------- transitions -----------------


@storage_operation
@closes_transaction
async def return_books(db: AsyncSession, order_id: int, book_ids) -> ReturnResult:
    """
    Check in books of an order.

    Business Logic:
    - Each listed book with an open line item is marked returned and one
      copy goes back to inventory; ids without an open line item are
      skipped
    - When no open line item remains the order becomes RETURNED
    - Status change and stock release commit together
    """
    book_ids = list(dict.fromkeys(book_ids or []))
    if not book_ids:
        return ReturnResult.fail(FailureReason.VALIDATION_ERROR, "No book ids provided")

    order = await _load_order(db, order_id)
    if order is None:
        return ReturnResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if order.order_status not in INVENTORY_HOLDING_STATUSES:
        return ReturnResult.fail(
            FailureReason.INVALID_STATE,
            f"Cannot return books of a {order.order_status.value} order",
            order_status=order.order_status,
        )

    now = utcnow()
    open_by_book = {detail.book_id: detail for detail in _open_details(order)}
    returned = []
    for book_id in book_ids:
        detail = open_by_book.get(book_id)
        if detail is None:
            continue
        await _mark_returned(db, detail, now)
        returned.append(book_id)

    if not _open_details(order):
        order.order_status = OrderStatus.RETURNED
        order.return_date = now
    order.updated_at = now
    await db.flush()
    await db.commit()

    logger.info("Order %s: returned books %s, status %s", order_id, returned, order.order_status.value)
    return ReturnResult.ok(returned_book_ids=returned, order_status=order.order_status)


@storage_operation
@closes_transaction
async def set_status(db: AsyncSession, order_id: int, new_status) -> OrderChangeResult:
    """
    Explicit status override.

    Business Logic:
    - RETURNED marks every open line item returned and releases its copy
    - CANCELLED releases the copies but leaves the line items unreturned,
      so "book is back" stays distinguishable from "order voided"
    - Leaving PENDING for ACTIVE / OVERDUE reserves the copies; a missing
      copy rejects the change with BOOK_UNAVAILABLE
    - Closed orders (RETURNED, CANCELLED) cannot change status and no
      order may move back to PENDING
    """
    try:
        new_status = OrderStatus(new_status)
    except ValueError:
        return OrderChangeResult.fail(
            FailureReason.VALIDATION_ERROR, f"Unknown order status {new_status!r}"
        )

    order = await _load_order(db, order_id)
    if order is None:
        return OrderChangeResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")

    current = order.order_status
    if current == new_status:
        return OrderChangeResult.ok()
    if current in CLOSED_STATUSES or new_status == OrderStatus.PENDING:
        return OrderChangeResult.fail(
            FailureReason.INVALID_STATE,
            f"Cannot change a {current.value} order to {new_status.value}",
        )

    now = utcnow()
    holds_inventory = current in INVENTORY_HOLDING_STATUSES
    if new_status == OrderStatus.RETURNED:
        for detail in _open_details(order):
            await _mark_returned(db, detail, now, release=holds_inventory)
        order.return_date = now
    elif new_status == OrderStatus.CANCELLED:
        if holds_inventory:
            await _release_open_details(db, order)
    elif not holds_inventory:
        missing = await _reserve_open_details(db, order)
        if missing is not None:
            await db.rollback()
            return OrderChangeResult.fail(
                FailureReason.BOOK_UNAVAILABLE,
                _unavailable_message(missing),
                unavailable_book=missing,
            )

    order.order_status = new_status
    order.updated_at = now
    await db.flush()
    await db.commit()
    logger.info("Order %s status %s -> %s", order_id, current.value, new_status.value)
    return OrderChangeResult.ok()


@storage_operation
@closes_transaction
async def cancel(db: AsyncSession, order_id: int) -> OperationResult:
    """Void an ACTIVE order, giving its unreturned copies back to inventory."""
    order = await _load_order(db, order_id)
    if order is None:
        return OperationResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if order.order_status != OrderStatus.ACTIVE:
        return OperationResult.fail(
            FailureReason.INVALID_STATE,
            f"Only active orders can be cancelled, this one is {order.order_status.value}",
        )

    await _release_open_details(db, order)
    order.order_status = OrderStatus.CANCELLED
    order.updated_at = utcnow()
    await db.flush()
    await db.commit()
    logger.info("Order %s cancelled", order_id)
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def update_order(db: AsyncSession, order_id: int, changes) -> OrderChangeResult:
    """
    Patch an ACTIVE order.

    Business Logic:
    - customer_id must name an active customer
    - rental_days recomputes the due date from the order date and pushes
      it to every open line item
    - book_ids is the desired book set: dropped books are checked in,
      added books are reserved; one unreservable book rejects the whole
      update and nothing is written
    - notes replaces the notes (None clears them)
    """
    if not isinstance(changes, RentalOrderUpdate):
        try:
            changes = RentalOrderUpdate.model_validate(changes)
        except ValidationError as exc:
            return OrderChangeResult.fail(FailureReason.VALIDATION_ERROR, str(exc))
    fields = changes.model_dump(exclude_unset=True)

    order = await _load_order(db, order_id)
    if order is None:
        return OrderChangeResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if order.order_status != OrderStatus.ACTIVE:
        return OrderChangeResult.fail(
            FailureReason.INVALID_STATE,
            f"Cannot update a {order.order_status.value} order",
        )

    if fields.get("customer_id") is not None:
        if await store.customers.get_by_id(db, fields["customer_id"]) is None:
            return OrderChangeResult.fail(FailureReason.CUSTOMER_NOT_FOUND, "Customer not found")
        order.customer_id = fields["customer_id"]

    now = utcnow()
    if fields.get("rental_days") is not None:
        order.due_date = order.order_date + timedelta(days=fields["rental_days"])
        for detail in _open_details(order):
            detail.rental_days = fields["rental_days"]
            detail.due_date = order.due_date
            detail.updated_at = now

    if fields.get("book_ids") is not None:
        desired = fields["book_ids"]
        open_by_book = {detail.book_id: detail for detail in _open_details(order)}
        returned_by_book = {
            detail.book_id: detail for detail in _live_details(order) if detail.is_returned
        }

        for book_id in desired:
            if book_id in open_by_book:
                continue
            outcome = await inventory.try_reserve(db, book_id, commit=False)
            if not outcome.reserved:
                await db.rollback()
                missing = UnavailableBook(
                    book_id=book_id, title=outcome.title, reason=outcome.failure
                )
                logger.warning("Order %s update rejected: %s", order_id, _unavailable_message(missing))
                return OrderChangeResult.fail(
                    FailureReason.BOOK_UNAVAILABLE,
                    _unavailable_message(missing),
                    unavailable_book=missing,
                )

            detail = returned_by_book.get(book_id)
            if detail is None:
                detail = RentalOrderDetail(book_id=book_id, quantity=1, created_at=now)
                order.details.append(detail)
            detail.is_returned = False
            detail.return_date = None
            detail.rental_days = _rental_days(order)
            detail.due_date = order.due_date
            detail.updated_at = now

        for book_id, detail in open_by_book.items():
            if book_id not in desired:
                await _mark_returned(db, detail, now)

    if "notes" in fields:
        order.notes = fields["notes"]

    order.updated_at = now
    await db.flush()
    await db.commit()
    logger.info("Order %s updated (%s)", order_id, ", ".join(sorted(fields)))
    return OrderChangeResult.ok()


@storage_operation
@closes_transaction
async def add_book(db: AsyncSession, order_id: int, book_id: int, notes=None) -> CreateResult:
    """
    Add one line item to an ACTIVE order.

    A book may appear only once among an order's non-deleted line items;
    a second one is a CONFLICT (the partial unique index backs this up
    against concurrent writers).
    """
    order = await _load_order(db, order_id)
    if order is None:
        return CreateResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if order.order_status != OrderStatus.ACTIVE:
        return CreateResult.fail(
            FailureReason.INVALID_STATE, f"Cannot add books to a {order.order_status.value} order"
        )
    if any(detail.book_id == book_id for detail in _live_details(order)):
        return CreateResult.fail(
            FailureReason.CONFLICT, f"Book {book_id} is already part of order {order_id}"
        )

    outcome = await inventory.try_reserve(db, book_id, commit=False)
    if not outcome.reserved:
        await db.rollback()
        return CreateResult.fail(
            FailureReason.BOOK_UNAVAILABLE,
            f"Book {book_id} is not available ({outcome.failure.value})",
        )

    detail = RentalOrderDetail(
        rental_order_id=order.id,
        book_id=book_id,
        quantity=1,
        rental_days=_rental_days(order),
        due_date=order.due_date,
        is_returned=False,
        notes=notes,
    )
    await store.order_details.create(db, detail, commit=False)
    order.updated_at = utcnow()
    await db.flush()
    await db.commit()
    logger.info("Order %s: added book %s", order_id, book_id)
    return CreateResult.ok(id=detail.id)


@storage_operation
@closes_transaction
async def delete_order(db: AsyncSession, order_id: int) -> OperationResult:
    """
    Soft-delete an order.

    Copies still held by the order go back to inventory first, since a
    deleted order leaves active accounting. Cancelled orders are already
    settled and are rejected.
    """
    order = await _load_order(db, order_id, include_deleted=True)
    if order is None:
        return OperationResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if order.is_deleted:
        return OperationResult.fail(FailureReason.ALREADY_DELETED, "Rental order is already deleted")
    if order.order_status == OrderStatus.CANCELLED:
        return OperationResult.fail(
            FailureReason.INVALID_STATE, "Cancelled orders cannot be deleted"
        )

    if order.order_status in INVENTORY_HOLDING_STATUSES:
        await _release_open_details(db, order)
    await store.orders.soft_delete(db, order_id, commit=False)
    await db.commit()
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def restore_order(db: AsyncSession, order_id: int) -> OrderChangeResult:
    """
    Bring a soft-deleted order back.

    An order that held inventory when it was deleted takes its copies back;
    if any of them is gone the restore is rejected and nothing changes.
    """
    order = await _load_order(db, order_id, include_deleted=True)
    if order is None:
        return OrderChangeResult.fail(FailureReason.ORDER_NOT_FOUND, "Rental order not found")
    if not order.is_deleted:
        return OrderChangeResult.fail(FailureReason.NOT_DELETED, "Rental order is not deleted")

    if order.order_status in INVENTORY_HOLDING_STATUSES:
        missing = await _reserve_open_details(db, order)
        if missing is not None:
            await db.rollback()
            return OrderChangeResult.fail(
                FailureReason.BOOK_UNAVAILABLE,
                _unavailable_message(missing),
                unavailable_book=missing,
            )

    await store.orders.restore(db, order_id, commit=False)
    await db.commit()
    return OrderChangeResult.ok()
