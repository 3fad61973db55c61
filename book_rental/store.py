"""
Generic lifecycle store over any model carrying the LifecycleMixin contract.

"Not found" and "precondition not met" come back as None / False; only
storage faults raise (as StorageError, via storage_operation).
"""

import logging
from typing import Generic, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, inspect, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental.errors import storage_operation
from book_rental.models import (
    Book,
    Customer,
    EntityStatus,
    Genre,
    RentalOrder,
    RentalOrderDetail,
    not_deleted,
    utcnow,
)
from book_rental.schemas import Page, Pagination


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Columns owned by the lifecycle itself; Update() never copies them.
_LIFECYCLE_COLUMNS = frozenset({"id", "status", "created_at", "updated_at"})


def _original_value(instance, key):
    """Value as loaded from storage, ignoring unflushed in-memory edits."""
    history = inspect(instance).attrs[key].history
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(instance, key)


class EntityStore(Generic[T]):
    """
    CRUD and soft-delete lifecycle for one model.

    Internal Working:
    - Reads go through select() statements so the global soft-delete
      filter applies; the *_including_deleted variants set the
      include_deleted execution option to bypass it
    - Every mutating method flushes, then commits unless commit=False;
      callers composing a larger unit of work (booking, order lifecycle)
      pass commit=False and own the transaction
    """

    def __init__(self, model: Type[T], search_fields: Sequence[str] = ()):
        self.model = model
        self.search_fields = tuple(search_fields)

    # ----------------- query handles -----------------

    def query(self):
        return select(self.model)

    def query_including_deleted(self):
        return select(self.model).execution_options(include_deleted=True)

    def query_deleted(self):
        return self.query_including_deleted().where(
            self.model.status == EntityStatus.DELETED
        )

    # ----------------- reads -----------------

    @storage_operation
    async def get_all(self, db: AsyncSession) -> List[T]:
        result = await db.execute(self.query().order_by(self.model.id))
        return list(result.scalars().all())

    @storage_operation
    async def get_all_including_deleted(self, db: AsyncSession) -> List[T]:
        result = await db.execute(self.query_including_deleted().order_by(self.model.id))
        return list(result.scalars().all())

    @storage_operation
    async def get_by_id(self, db: AsyncSession, entity_id: int) -> Optional[T]:
        result = await db.execute(self.query().where(self.model.id == entity_id))
        return result.scalars().first()

    @storage_operation
    async def get_by_id_including_deleted(
        self, db: AsyncSession, entity_id: int
    ) -> Optional[T]:
        result = await db.execute(
            self.query_including_deleted().where(self.model.id == entity_id)
        )
        return result.scalars().first()

    @storage_operation
    async def find(self, db: AsyncSession, *criteria) -> List[T]:
        result = await db.execute(self.query().where(*criteria).order_by(self.model.id))
        return list(result.scalars().all())

    @storage_operation
    async def find_one(self, db: AsyncSession, *criteria) -> Optional[T]:
        result = await db.execute(self.query().where(*criteria).limit(1))
        return result.scalars().first()

    @storage_operation
    async def find_one_including_deleted(self, db: AsyncSession, *criteria) -> Optional[T]:
        result = await db.execute(self.query_including_deleted().where(*criteria).limit(1))
        return result.scalars().first()

    @storage_operation
    async def exists(self, db: AsyncSession, entity_id: int) -> bool:
        return await self.get_by_id(db, entity_id) is not None

    @storage_operation
    async def count(self, db: AsyncSession) -> int:
        stmt = select(func.count()).select_from(self.model).where(not_deleted(self.model))
        return (await db.execute(stmt)).scalar_one()

    @storage_operation
    async def count_including_deleted(self, db: AsyncSession) -> int:
        stmt = (
            select(func.count())
            .select_from(self.model)
            .execution_options(include_deleted=True)
        )
        return (await db.execute(stmt)).scalar_one()

    # ----------------- writes -----------------

    @storage_operation
    async def create(self, db: AsyncSession, entity: T, commit: bool = True) -> T:
        entity.status = EntityStatus.ACTIVE
        entity.created_at = utcnow()
        entity.updated_at = None
        db.add(entity)
        await db.flush()
        if commit:
            await db.commit()
        return entity

    @storage_operation
    async def update(self, db: AsyncSession, entity: T, commit: bool = True) -> Optional[T]:
        """
        Copy scalar fields of `entity` onto the tracked active record.

        Returns None when no active record has that id; Update never
        creates. created_at keeps its stored value whatever the caller
        supplied.
        """
        existing = await self.get_by_id(db, entity.id)
        if existing is None:
            return None

        created_at = _original_value(existing, "created_at")
        if existing is not entity:
            for attr in inspect(self.model).column_attrs:
                if attr.key not in _LIFECYCLE_COLUMNS:
                    setattr(existing, attr.key, getattr(entity, attr.key))

        existing.created_at = created_at
        existing.updated_at = utcnow()
        await db.flush()
        if commit:
            await db.commit()
        return existing

    @storage_operation
    async def soft_delete(self, db: AsyncSession, entity_id: int, commit: bool = True) -> bool:
        entity = await self.get_by_id(db, entity_id)
        if entity is None:
            return False

        entity.status = EntityStatus.DELETED
        entity.updated_at = utcnow()
        await db.flush()
        if commit:
            await db.commit()
        logger.info("Soft-deleted %s %s", self.model.__name__, entity_id)
        return True

    @storage_operation
    async def restore(self, db: AsyncSession, entity_id: int, commit: bool = True) -> bool:
        entity = await self.get_by_id_including_deleted(db, entity_id)
        if entity is None or entity.status != EntityStatus.DELETED:
            return False

        entity.status = EntityStatus.ACTIVE
        entity.updated_at = utcnow()
        await db.flush()
        if commit:
            await db.commit()
        logger.info("Restored %s %s", self.model.__name__, entity_id)
        return True

    @storage_operation
    async def hard_delete(self, db: AsyncSession, entity_id: int, commit: bool = True) -> bool:
        entity = await self.get_by_id_including_deleted(db, entity_id)
        if entity is None:
            return False

        await db.delete(entity)
        await db.flush()
        if commit:
            await db.commit()
        logger.info("Permanently deleted %s %s", self.model.__name__, entity_id)
        return True

    # ----------------- paging -----------------

    def _apply_listing(self, stmt, pagination: Pagination):
        if pagination.search and self.search_fields:
            pattern = f"%{pagination.search}%"
            stmt = stmt.where(
                or_(*(getattr(self.model, name).ilike(pattern) for name in self.search_fields))
            )

        sortable = {attr.key for attr in inspect(self.model).column_attrs}
        if pagination.sort_by in sortable:
            sort_column = getattr(self.model, pagination.sort_by)
        else:
            sort_column = self.model.id
        return stmt.order_by(sort_column.desc() if pagination.sort_descending else sort_column)

    @storage_operation
    async def paginate(self, db: AsyncSession, stmt, pagination: Optional[Pagination] = None) -> Page:
        """
        Run `stmt` (a query handle from this store) one page at a time.

        Search and sort from the pagination options are applied on top of
        whatever filters the caller already added.
        """
        pagination = pagination or Pagination()
        stmt = self._apply_listing(stmt, pagination)

        counted = stmt.order_by(None)
        if not stmt.get_execution_options().get("include_deleted", False):
            counted = counted.where(not_deleted(self.model))
        count_stmt = select(func.count()).select_from(counted.subquery())
        total = (await db.execute(count_stmt.execution_options(include_deleted=True))).scalar_one()

        result = await db.execute(stmt.offset(pagination.offset).limit(pagination.page_size))
        return Page(
            items=list(result.scalars().all()),
            page=pagination.page,
            page_size=pagination.page_size,
            total_count=total,
        )


books = EntityStore(Book, search_fields=("title", "author", "isbn"))
customers = EntityStore(Customer, search_fields=("first_name", "last_name", "email", "dni"))
genres = EntityStore(Genre, search_fields=("name",))
orders = EntityStore(RentalOrder, search_fields=("order_number", "notes"))
order_details = EntityStore(RentalOrderDetail, search_fields=("notes",))
