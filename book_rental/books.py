import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental import store
from book_rental.errors import FailureReason, closes_transaction, storage_operation
from book_rental.models import Book
from book_rental.schemas import (
    BookCreate,
    BookUpdate,
    CreateResult,
    OperationResult,
    Page,
    Pagination,
)


logger = logging.getLogger(__name__)


async def _isbn_taken(db: AsyncSession, isbn, exclude_id=None) -> bool:
    criteria = [Book.isbn == isbn]
    if exclude_id is not None:
        criteria.append(Book.id != exclude_id)
    return await store.books.find_one_including_deleted(db, *criteria) is not None


@storage_operation
@closes_transaction
async def create_book(db: AsyncSession, data) -> CreateResult:
    """
    Add a book to the catalog.

    Business Logic:
    - The genre must exist and be active
    - ISBN, when given, must be unique across all books, deleted included
    - Availability starts as stock > 0
    """
    try:
        data = BookCreate.model_validate(data)
    except ValidationError as exc:
        return CreateResult.fail(FailureReason.VALIDATION_ERROR, str(exc))

    if not await store.genres.exists(db, data.genre_id):
        return CreateResult.fail(FailureReason.GENRE_NOT_FOUND, "Genre not found")
    if data.isbn and await _isbn_taken(db, data.isbn):
        return CreateResult.fail(
            FailureReason.CONFLICT, f"Book with ISBN {data.isbn} already exists"
        )

    book = Book(**data.model_dump(), is_available=data.stock > 0)
    await store.books.create(db, book)
    logger.info("Created book %s (%s)", book.id, book.title)
    return CreateResult.ok(id=book.id)


@storage_operation
@closes_transaction
async def update_book(db: AsyncSession, book_id: int, changes) -> OperationResult:
    """
    Apply a patch to an active book.

    Only fields present in the patch are written. A stock change
    recomputes availability unless is_available is part of the same
    patch, in which case the explicit value wins.
    """
    try:
        changes = BookUpdate.model_validate(changes)
    except ValidationError as exc:
        return OperationResult.fail(FailureReason.VALIDATION_ERROR, str(exc))
    update_data = {
        key: value
        for key, value in changes.model_dump(exclude_unset=True).items()
        if value is not None or key in ("isbn", "description", "image_url")
    }

    book = await store.books.get_by_id(db, book_id)
    if book is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Book not found")

    if "genre_id" in update_data and not await store.genres.exists(db, update_data["genre_id"]):
        return OperationResult.fail(FailureReason.GENRE_NOT_FOUND, "Genre not found")
    if (
        update_data.get("isbn")
        and update_data["isbn"] != book.isbn
        and await _isbn_taken(db, update_data["isbn"], exclude_id=book_id)
    ):
        return OperationResult.fail(
            FailureReason.CONFLICT, f"Book with ISBN {update_data['isbn']} already exists"
        )

    for key, value in update_data.items():
        setattr(book, key, value)
    if "stock" in update_data and "is_available" not in update_data:
        book.is_available = book.stock > 0

    await store.books.update(db, book)
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def delete_book(db: AsyncSession, book_id: int) -> OperationResult:
    if not await store.books.soft_delete(db, book_id):
        return OperationResult.fail(FailureReason.NOT_FOUND, "Book not found")
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def restore_book(db: AsyncSession, book_id: int) -> OperationResult:
    book = await store.books.get_by_id_including_deleted(db, book_id)
    if book is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Book not found")
    if not book.is_deleted:
        return OperationResult.fail(FailureReason.NOT_DELETED, "Book is not deleted")

    await store.books.restore(db, book_id)
    return OperationResult.ok()


@storage_operation
async def get_book(db: AsyncSession, book_id: int) -> Optional[Book]:
    return await store.books.get_by_id(db, book_id)


@storage_operation
async def list_books(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    """Active books; pagination.search matches title, author or ISBN."""
    return await store.books.paginate(db, store.books.query(), pagination)


@storage_operation
async def search_books(db: AsyncSession, title: str) -> List[Book]:
    return await store.books.find(db, Book.title.ilike(f"%{title}%"))


@storage_operation
async def list_books_by_genre(
    db: AsyncSession, genre_id: int, pagination: Optional[Pagination] = None
) -> Page:
    stmt = store.books.query().where(Book.genre_id == genre_id)
    return await store.books.paginate(db, stmt, pagination)


@storage_operation
async def list_available_books(
    db: AsyncSession, pagination: Optional[Pagination] = None
) -> Page:
    stmt = store.books.query().where(Book.is_available.is_(True), Book.stock > 0)
    return await store.books.paginate(db, stmt, pagination)


@storage_operation
async def list_deleted_books(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    return await store.books.paginate(db, store.books.query_deleted(), pagination)
