from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from book_rental.config import Config
from book_rental.errors import FailureReason, ReserveFailure
from book_rental.models import OrderStatus


class Pagination(BaseModel):
    """
    Paging and sorting options shared by every list operation.

    Out-of-range values are clamped rather than rejected: page falls back
    to 1 and page_size is held within [1, MAX_PAGE_SIZE].
    """

    page: int = 1
    page_size: int = Config.DEFAULT_PAGE_SIZE
    search: Optional[str] = None
    sort_by: Optional[str] = None
    sort_descending: bool = False

    @field_validator("page", mode="before")
    @classmethod
    def clamp_page(cls, value):
        if value is None:
            return 1
        return max(1, int(value))

    @field_validator("page_size", mode="before")
    @classmethod
    def clamp_page_size(cls, value):
        if value is None:
            return Config.DEFAULT_PAGE_SIZE
        return min(max(1, int(value)), Config.MAX_PAGE_SIZE)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class Page(BaseModel):
    """One page of records plus the totals a caller needs to page further."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[Any] = []
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        return -(-self.total_count // self.page_size) if self.total_count else 0

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


class GenreCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)


class GenreUpdate(BaseModel):
    """Patch: only provided fields are applied."""

    name: Optional[str] = Field(None, min_length=1, max_length=50)


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=100)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    description: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = Field(None, max_length=500)
    stock: int = Field(0, ge=0)
    genre_id: int = Field(..., gt=0)


class BookUpdate(BaseModel):
    """
    Patch for a book.

    Setting is_available is an administrative override: when present it
    wins over the stock-derived availability for this update.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    isbn: Optional[str] = Field(None, min_length=10, max_length=13)
    description: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = Field(None, max_length=500)
    stock: Optional[int] = Field(None, ge=0)
    is_available: Optional[bool] = None
    genre_id: Optional[int] = Field(None, gt=0)


class CustomerCreate(BaseModel):
    email: str = Field(..., min_length=5, max_length=200, pattern=r"^[^@\s]+@[^@\s]+$")
    dni: str = Field(..., min_length=1, max_length=20)
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    age: int = Field(..., ge=1, le=120)
    phone_number: Optional[str] = Field(None, max_length=20)
    user_id: Optional[str] = Field(None, max_length=450)


class CustomerUpdate(BaseModel):
    email: Optional[str] = Field(
        None, min_length=5, max_length=200, pattern=r"^[^@\s]+@[^@\s]+$"
    )
    dni: Optional[str] = Field(None, min_length=1, max_length=20)
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    age: Optional[int] = Field(None, ge=1, le=120)
    phone_number: Optional[str] = Field(None, max_length=20)


class RentalOrderCreate(BaseModel):
    """
    Booking request.

    Duplicate book ids are collapsed (order of first appearance is kept).
    allow_partial_order selects best-effort booking over all-or-nothing.
    """

    customer_id: int = Field(..., gt=0)
    book_ids: List[int] = Field(..., min_length=1)
    rental_days: int = Field(..., ge=Config.MIN_RENTAL_DAYS, le=Config.MAX_RENTAL_DAYS)
    notes: Optional[str] = Field(None, max_length=500)
    allow_partial_order: bool = False

    @field_validator("book_ids")
    @classmethod
    def collapse_duplicates(cls, value):
        return list(dict.fromkeys(value))


class RentalOrderUpdate(BaseModel):
    """
    Patch for an active order.

    book_ids, when given, is the complete desired book set: books missing
    from it are returned to inventory, new ones are reserved.
    """

    customer_id: Optional[int] = Field(None, gt=0)
    rental_days: Optional[int] = Field(
        None, ge=Config.MIN_RENTAL_DAYS, le=Config.MAX_RENTAL_DAYS
    )
    notes: Optional[str] = Field(None, max_length=500)
    book_ids: Optional[List[int]] = Field(None, min_length=1)

    @field_validator("book_ids")
    @classmethod
    def collapse_duplicates(cls, value):
        return list(dict.fromkeys(value)) if value is not None else value


class BulkRestoreRequest(BaseModel):
    book_ids: List[int] = []
    customer_ids: List[int] = []
    genre_ids: List[int] = []
    order_ids: List[int] = []

    @property
    def is_empty(self) -> bool:
        return not (self.book_ids or self.customer_ids or self.genre_ids or self.order_ids)


class OperationResult(BaseModel):
    """Outcome of an engine operation: a success flag plus a closed reason."""

    success: bool
    reason: Optional[FailureReason] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, **kwargs):
        return cls(success=True, **kwargs)

    @classmethod
    def fail(cls, reason, message=None, **kwargs):
        return cls(success=False, reason=reason, message=message, **kwargs)


class CreateResult(OperationResult):
    id: Optional[int] = None


class UnavailableBook(BaseModel):
    book_id: int
    title: Optional[str] = None
    reason: ReserveFailure


class ReservationOutcome(BaseModel):
    """Result of a single atomic check-and-decrement on a book."""

    book_id: int
    reserved: bool
    failure: Optional[ReserveFailure] = None
    stock: Optional[int] = None
    title: Optional[str] = None


class BookingResult(OperationResult):
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    processed_books: List[int] = []
    unavailable_books: List[UnavailableBook] = []
    is_partial_order: bool = False


class OrderChangeResult(OperationResult):
    """Outcome of an order mutation that may need to reserve a book."""

    unavailable_book: Optional[UnavailableBook] = None


class ReturnResult(OperationResult):
    returned_book_ids: List[int] = []
    order_status: Optional[OrderStatus] = None


class RestoreItemResult(BaseModel):
    id: int
    success: bool
    error: Optional[str] = None


class BulkRestoreResult(OperationResult):
    books: List[RestoreItemResult] = []
    customers: List[RestoreItemResult] = []
    genres: List[RestoreItemResult] = []
    orders: List[RestoreItemResult] = []


class EntityCounts(BaseModel):
    total: int
    active: int
    deleted: int


class DeletedSummary(BaseModel):
    books: EntityCounts
    customers: EntityCounts
    genres: EntityCounts
    orders: EntityCounts


class DeletedEntities(BaseModel):
    books: Page
    customers: Page
    genres: Page
    orders: Page


class GenreWithCount(BaseModel):
    id: int
    name: str
    total_books: int


class RentedBook(BaseModel):
    """A line item as seen from the customer's rental history."""

    model_config = ConfigDict(from_attributes=True)

    book_id: int
    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None
    rental_order_id: int
    order_number: str
    order_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    is_returned: bool
    quantity: int
    rental_days: int
    notes: Optional[str] = None
    order_status: OrderStatus


class RentalSummary(BaseModel):
    customer_name: str
    customer_dni: str
    customer_email: str
    total_rentals: int = 0
    active_rentals: int = 0
    returned_rentals: int = 0
    overdue_rentals: int = 0
    last_rental_date: Optional[datetime] = None
    favorite_genres: Dict[str, int] = {}
