import logging
from collections import Counter
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from book_rental import store
from book_rental.errors import FailureReason, closes_transaction, storage_operation
from book_rental.models import (
    Book,
    Customer,
    Genre,
    OrderStatus,
    RentalOrder,
    RentalOrderDetail,
    not_deleted,
)
from book_rental.schemas import (
    CreateResult,
    CustomerCreate,
    CustomerUpdate,
    OperationResult,
    Page,
    Pagination,
    RentalSummary,
    RentedBook,
)


logger = logging.getLogger(__name__)


async def _identity_conflict(db: AsyncSession, email=None, dni=None, exclude_id=None):
    """
    Message describing which unique customer field is already taken, if any.

    Deleted customers count: their email and DNI stay reserved.
    """
    lookup = store.customers.find_one_including_deleted
    exclude = [Customer.id != exclude_id] if exclude_id is not None else []

    if email and await lookup(db, func.lower(Customer.email) == email.lower(), *exclude):
        return f"A customer with email {email} already exists"
    if dni and await lookup(db, Customer.dni == dni, *exclude):
        return f"A customer with DNI {dni} already exists"
    return None


@storage_operation
@closes_transaction
async def create_customer(db: AsyncSession, data) -> CreateResult:
    try:
        data = CustomerCreate.model_validate(data)
    except ValidationError as exc:
        return CreateResult.fail(FailureReason.VALIDATION_ERROR, str(exc))

    conflict = await _identity_conflict(db, email=data.email, dni=data.dni)
    if conflict:
        return CreateResult.fail(FailureReason.CONFLICT, conflict)

    customer = Customer(**data.model_dump())
    await store.customers.create(db, customer)
    logger.info("Created customer %s", customer.id)
    return CreateResult.ok(id=customer.id)


@storage_operation
@closes_transaction
async def update_customer(db: AsyncSession, customer_id: int, changes) -> OperationResult:
    try:
        changes = CustomerUpdate.model_validate(changes)
    except ValidationError as exc:
        return OperationResult.fail(FailureReason.VALIDATION_ERROR, str(exc))
    update_data = {
        key: value
        for key, value in changes.model_dump(exclude_unset=True).items()
        if value is not None or key == "phone_number"
    }

    customer = await store.customers.get_by_id(db, customer_id)
    if customer is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Customer not found")

    conflict = await _identity_conflict(
        db,
        email=update_data.get("email"),
        dni=update_data.get("dni"),
        exclude_id=customer_id,
    )
    if conflict:
        return OperationResult.fail(FailureReason.CONFLICT, conflict)

    for key, value in update_data.items():
        setattr(customer, key, value)
    await store.customers.update(db, customer)
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def delete_customer(db: AsyncSession, customer_id: int) -> OperationResult:
    if not await store.customers.soft_delete(db, customer_id):
        return OperationResult.fail(FailureReason.NOT_FOUND, "Customer not found")
    return OperationResult.ok()


@storage_operation
@closes_transaction
async def restore_customer(db: AsyncSession, customer_id: int) -> OperationResult:
    """
    Restore a soft-deleted customer.

    Email and DNI stay reserved while a customer is deleted, so a restore
    never collides with an active customer.
    """
    customer = await store.customers.get_by_id_including_deleted(db, customer_id)
    if customer is None:
        return OperationResult.fail(FailureReason.NOT_FOUND, "Customer not found")
    if not customer.is_deleted:
        return OperationResult.fail(FailureReason.NOT_DELETED, "Customer is not deleted")

    await store.customers.restore(db, customer_id)
    return OperationResult.ok()


@storage_operation
async def get_customer(db: AsyncSession, customer_id: int) -> Optional[Customer]:
    return await store.customers.get_by_id(db, customer_id)


@storage_operation
async def get_customer_by_dni(db: AsyncSession, dni: str) -> Optional[Customer]:
    return await store.customers.find_one(db, Customer.dni == dni)


@storage_operation
async def get_customer_by_user_id(db: AsyncSession, user_id: str) -> Optional[Customer]:
    """Customer linked to an external identity reference."""
    return await store.customers.find_one(db, Customer.user_id == user_id)


@storage_operation
async def search_customers_by_name(db: AsyncSession, name: str) -> List[Customer]:
    pattern = f"%{name}%"
    return await store.customers.find(
        db, or_(Customer.first_name.ilike(pattern), Customer.last_name.ilike(pattern))
    )


@storage_operation
async def list_customers(db: AsyncSession, pagination: Optional[Pagination] = None) -> Page:
    return await store.customers.paginate(db, store.customers.query(), pagination)


@storage_operation
async def list_deleted_customers(
    db: AsyncSession, pagination: Optional[Pagination] = None
) -> Page:
    return await store.customers.paginate(db, store.customers.query_deleted(), pagination)


@storage_operation
async def list_rented_books(db: AsyncSession, dni: str) -> Optional[List[RentedBook]]:
    """
    Every book a customer has rented, newest order first.

    Returns None when no active customer has that DNI. Books and genres
    are read through the including-deleted view: rental history stays
    complete after a book leaves the catalog.
    """
    customer = await get_customer_by_dni(db, dni)
    if customer is None:
        return None

    stmt = (
        select(RentalOrderDetail, RentalOrder, Book, Genre)
        .join(RentalOrder, RentalOrderDetail.rental_order_id == RentalOrder.id)
        .join(Book, RentalOrderDetail.book_id == Book.id)
        .outerjoin(Genre, Book.genre_id == Genre.id)
        .where(
            RentalOrder.customer_id == customer.id,
            not_deleted(RentalOrder),
            not_deleted(RentalOrderDetail),
        )
        .order_by(RentalOrder.order_date.desc(), Book.title)
        .execution_options(include_deleted=True)
    )
    rows = (await db.execute(stmt)).all()
    return [
        RentedBook(
            book_id=book.id,
            title=book.title,
            author=book.author,
            isbn=book.isbn,
            genre=genre.name if genre is not None else None,
            rental_order_id=order.id,
            order_number=order.order_number,
            order_date=order.order_date,
            due_date=detail.due_date,
            return_date=detail.return_date,
            is_returned=detail.is_returned,
            quantity=detail.quantity,
            rental_days=detail.rental_days,
            notes=detail.notes,
            order_status=order.order_status,
        )
        for detail, order, book, genre in rows
    ]


@storage_operation
async def rental_summary(db: AsyncSession, dni: str) -> Optional[RentalSummary]:
    """Totals of a customer's rentals by order status plus their top 3 genres."""
    customer = await get_customer_by_dni(db, dni)
    if customer is None:
        return None

    rentals = await list_rented_books(db, dni)
    statuses = Counter(rental.order_status for rental in rentals)
    genres = Counter(rental.genre for rental in rentals if rental.genre)

    return RentalSummary(
        customer_name=customer.full_name,
        customer_dni=customer.dni,
        customer_email=customer.email,
        total_rentals=len(rentals),
        active_rentals=statuses[OrderStatus.ACTIVE],
        returned_rentals=statuses[OrderStatus.RETURNED],
        overdue_rentals=statuses[OrderStatus.OVERDUE],
        last_rental_date=max((rental.order_date for rental in rentals), default=None),
        favorite_genres=dict(genres.most_common(3)),
    )
