"""
Administrative views over soft-deleted records and bulk restore.

Bulk restore is best-effort: every id is restored in its own transaction
and reported individually, so one failure never blocks its siblings.
"""

import logging

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental import books, customers, genres, orders, store
from book_rental.errors import FailureReason, StorageError
from book_rental.schemas import (
    BulkRestoreRequest,
    BulkRestoreResult,
    DeletedEntities,
    DeletedSummary,
    EntityCounts,
    Pagination,
    RestoreItemResult,
)


logger = logging.getLogger(__name__)


async def _restore_each(db: AsyncSession, ids, restore, kind):
    results = []
    for entity_id in ids:
        try:
            outcome = await restore(db, entity_id)
        except StorageError as exc:
            # storage_operation already rolled the session back
            logger.exception("Restoring %s %s failed", kind, entity_id)
            results.append(RestoreItemResult(id=entity_id, success=False, error=str(exc)))
            continue
        results.append(
            RestoreItemResult(id=entity_id, success=outcome.success, error=outcome.message)
        )
    return results


async def bulk_restore(db: AsyncSession, request) -> BulkRestoreResult:
    """
    Restore books, customers, genres and orders by id.

    Each id goes through its entity's own restore operation; restoring an
    id that is not deleted reports "not deleted" and changes nothing.
    """
    try:
        request = BulkRestoreRequest.model_validate(request)
    except ValidationError as exc:
        return BulkRestoreResult.fail(FailureReason.VALIDATION_ERROR, str(exc))
    if request.is_empty:
        return BulkRestoreResult.fail(
            FailureReason.VALIDATION_ERROR,
            "At least one entity ID must be provided for restoration",
        )

    result = BulkRestoreResult.ok(
        books=await _restore_each(db, request.book_ids, books.restore_book, "book"),
        customers=await _restore_each(
            db, request.customer_ids, customers.restore_customer, "customer"
        ),
        genres=await _restore_each(db, request.genre_ids, genres.restore_genre, "genre"),
        orders=await _restore_each(db, request.order_ids, orders.restore_order, "order"),
    )
    restored = sum(
        item.success
        for item in result.books + result.customers + result.genres + result.orders
    )
    logger.info("Bulk restore finished: %s restored", restored)
    return result


async def _counts(db: AsyncSession, entity_store) -> EntityCounts:
    total = await entity_store.count_including_deleted(db)
    active = await entity_store.count(db)
    return EntityCounts(total=total, active=active, deleted=total - active)


async def deleted_summary(db: AsyncSession) -> DeletedSummary:
    """Total / active / deleted counts per entity type."""
    return DeletedSummary(
        books=await _counts(db, store.books),
        customers=await _counts(db, store.customers),
        genres=await _counts(db, store.genres),
        orders=await _counts(db, store.orders),
    )


async def deleted_entities(db: AsyncSession, page: int = 1, page_size: int = 10) -> DeletedEntities:
    """Soft-deleted records of every type, for review before restoring."""
    pagination = Pagination(page=page, page_size=page_size)
    return DeletedEntities(
        books=await books.list_deleted_books(db, pagination),
        customers=await customers.list_deleted_customers(db, pagination),
        genres=await genres.list_deleted_genres(db, pagination),
        orders=await orders.list_deleted_orders(db, pagination),
    )
