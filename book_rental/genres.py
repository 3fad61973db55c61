import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental import store
from book_rental.errors import FailureReason, closes_transaction, storage_operation
from book_rental.models import Book, Genre, not_deleted
from book_rental.schemas import (
    CreateResult,
    GenreCreate,
    GenreUpdate,
    GenreWithCount,
    OperationResult,
    Page,
    Pagination,
)


logger = logging.getLogger(__name__)


def _same_name(name):
    return func.lower(Genre.name) == name.lower()


@storage_operation
@closes_transaction
async def create_genre(db: AsyncSession, data) -> CreateResult:
    try:
        data = GenreCreate.model_validate(data)
    except ValidationError as exc:
        return CreateResult.fail(FailureReason.VALIDATION_ERROR, str(exc))

    name = data.name.strip()
    if await store.genres.find_one_including_deleted(db, _same_name(name)):
        return CreateResult.fail(FailureReason.CONFLICT, f"Genre {name} already exists")

    genre = Genre(name=name)
    await store.genres.create(db, genre)
    logger.info("Created genre %s (%s)", genre.id, genre.name)
    return CreateResult.ok(id=genre.id)


@storage_operation
@closes_transaction
async def update_genre(db: AsyncSession, genre_id: int, changes) -> OperationResult:
    try:
        changes = GenreUpdate.model_validate(changes)
    except ValidationError as exc:
        return OperationResult.fail(FailureReason.VALIDATION_ERROR, str(exc))

    genre = await store.genres.get_by_id(db, genre_id)
    if genre is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Genre not found")

    if changes.name is not None:
        name = changes.name.strip()
        if await store.genres.find_one_including_deleted(
            db, _same_name(name), Genre.id != genre_id
        ):
            return OperationResult.fail(FailureReason.CONFLICT, f"Genre {name} already exists")
        genre.name = name

    await store.genres.update(db, genre)
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def delete_genre(db: AsyncSession, genre_id: int) -> OperationResult:
    if not await store.genres.soft_delete(db, genre_id):
        return OperationResult.fail(FailureReason.NOT_FOUND, "Genre not found")
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def restore_genre(db: AsyncSession, genre_id: int) -> OperationResult:
    """
    Restore a soft-deleted genre.

    Names stay reserved while a genre is deleted, so a restore never
    collides with an active one.
    """
    genre = await store.genres.get_by_id_including_deleted(db, genre_id)
    if genre is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Genre not found")
    if not genre.is_deleted:
        return OperationResult.fail(FailureReason.NOT_DELETED, "Genre is not deleted")

    await store.genres.restore(db, genre_id)
    return OperationResult.ok()


@storage_operation
async def get_genre(db: AsyncSession, genre_id: int) -> Optional[Genre]:
    return await store.genres.get_by_id(db, genre_id)


@storage_operation
async def list_genres(db: AsyncSession) -> List[GenreWithCount]:
    """Active genres with the number of active books referencing each."""
    stmt = (
        select(Genre.id, Genre.name, func.count(Book.id))
        .outerjoin(Book, and_(Book.genre_id == Genre.id, not_deleted(Book)))
        .where(not_deleted(Genre))
        .group_by(Genre.id, Genre.name)
        .order_by(Genre.name)
        .execution_options(include_deleted=True)
    )
    rows = (await db.execute(stmt)).all()
    return [
        GenreWithCount(id=genre_id, name=name, total_books=total)
        for genre_id, name, total in rows
    ]


@storage_operation
async def list_deleted_genres(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    return await store.genres.paginate(db, store.genres.query_deleted(), pagination)
