import enum
from datetime import datetime, timezone

from book_rental.database import Base
from sqlalchemy.orm import Session, relationship, with_loader_criteria
from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    DateTime,
    Boolean,
    Enum,
    Index,
    CheckConstraint,
    event,
    text,
)


def utcnow():
    """Naive UTC timestamp; SQLite round-trips DateTime without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DELETED = "DELETED"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"


# Orders in these states have inventory reserved for their open line items.
INVENTORY_HOLDING_STATUSES = (OrderStatus.ACTIVE, OrderStatus.OVERDUE)


class LifecycleMixin:
    """
    Shared record contract: {id, status, created_at, updated_at}.

    Every model carries it, and the store / admin operations are written
    against these four columns only. Column defaults make line items built
    through the order relationship start Active without passing through
    the store.
    """

    id = Column(Integer, primary_key=True, index=True)
    status = Column(
        Enum(EntityStatus, name="entity_status"),
        nullable=False,
        default=EntityStatus.ACTIVE,
        index=True,
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True)

    @property
    def is_deleted(self):
        return self.status == EntityStatus.DELETED


def not_deleted(cls):
    return cls.status != EntityStatus.DELETED


@event.listens_for(Session, "do_orm_execute")
def _exclude_deleted_records(execute_state):
    """
    Hide soft-deleted rows from every ORM SELECT.

    Internal Working:
    - with_loader_criteria attaches the predicate to every mapped subclass
      of LifecycleMixin wherever it appears in the statement (FROM, joins,
      aliases) and propagates it to eager loaders such as selectinload
    - Statements carrying execution_options(include_deleted=True) bypass
      the filter; that is how the "including deleted" views are built
    """
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
        and not execute_state.execution_options.get("include_deleted", False)
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                LifecycleMixin,
                lambda cls: cls.status != EntityStatus.DELETED,
                include_aliases=True,
            )
        )


class Genre(LifecycleMixin, Base):
    __tablename__ = "genres"

    name = Column(String(50), unique=True, nullable=False, index=True)


class Book(LifecycleMixin, Base):
    """
    Book model carrying the inventory counter.

    Business Logic:
    - stock is the number of copies on the shelf and never drops below zero
    - is_available follows stock > 0 whenever stock changes, unless an
      administrator explicitly overrides it
    """

    __tablename__ = "books"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_books_stock_non_negative"),)

    title = Column(String(200), nullable=False, index=True)
    author = Column(String(100), nullable=False, index=True)
    isbn = Column(String(13), unique=True, nullable=True, index=True)
    description = Column(String(1000), nullable=True)
    image_url = Column(String(500), nullable=True)
    stock = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    genre_id = Column(
        Integer, ForeignKey("genres.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    genre = relationship("Genre")


class Customer(LifecycleMixin, Base):
    __tablename__ = "customers"

    email = Column(String(200), unique=True, nullable=False, index=True)
    dni = Column(String(20), unique=True, nullable=False, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    age = Column(Integer, nullable=False)
    phone_number = Column(String(20), nullable=True)
    user_id = Column(String(450), nullable=True, index=True)

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}"


class RentalOrder(LifecycleMixin, Base):
    """
    RentalOrder model owning its line items.

    Relationships:
    - Many orders belong to one customer (RESTRICT: order history must
      survive, so a referenced customer cannot be hard-deleted)
    - One order owns many RentalOrderDetail rows; a hard delete of the
      order cascades in the database (passive_deletes avoids loading the
      collection just to delete it)
    """

    __tablename__ = "rental_orders"

    order_number = Column(String(20), unique=True, nullable=False, index=True)
    order_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    order_status = Column(
        Enum(OrderStatus, name="order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    notes = Column(String(500), nullable=True)
    customer_id = Column(
        Integer, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    customer = relationship("Customer")
    details = relationship(
        "RentalOrderDetail",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="RentalOrderDetail.id",
    )


class RentalOrderDetail(LifecycleMixin, Base):
    """
    One book within an order, tracking its own due and return state.

    A book appears at most once among the non-deleted line items of an
    order; the partial unique index enforces it in storage.
    """

    __tablename__ = "rental_order_details"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_rental_order_details_quantity"),
        Index(
            "ux_rental_order_details_order_book_active",
            "rental_order_id",
            "book_id",
            unique=True,
            sqlite_where=text("status != 'DELETED'"),
            postgresql_where=text("status != 'DELETED'"),
        ),
    )

    quantity = Column(Integer, nullable=False, default=1)
    rental_days = Column(Integer, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    is_returned = Column(Boolean, nullable=False, default=False)
    notes = Column(String(200), nullable=True)
    rental_order_id = Column(
        Integer, ForeignKey("rental_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    book_id = Column(
        Integer, ForeignKey("books.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    order = relationship("RentalOrder", back_populates="details")
    book = relationship("Book")
