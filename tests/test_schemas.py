import asyncio

from book_rental.config import Config, configure_logging
from book_rental.database import bounded, get_db
from book_rental.errors import FailureReason, IntegrityViolation, StorageError
from book_rental.models import Book
from book_rental.schemas import (
    BookUpdate,
    OperationResult,
    Page,
    Pagination,
    RentalOrderCreate,
)
from book_rental import store

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession


@pytest.mark.parametrize(
    "page, page_size, expected",
    [
        (0, 10, (1, 10)),
        (-3, None, (1, Config.DEFAULT_PAGE_SIZE)),
        (2, 500, (2, Config.MAX_PAGE_SIZE)),
        (1, 0, (1, 1)),
    ],
)
def test_pagination_is_clamped(page, page_size, expected):
    pagination = Pagination(page=page, page_size=page_size)

    assert (pagination.page, pagination.page_size) == expected


def test_pagination_offset():
    assert Pagination(page=3, page_size=20).offset == 40


def test_page_navigation():
    """
    Test the derived page properties.

    Verifies:
    - total_pages rounds up
    - Previous / next flags at the edges
    """
    first = Page(items=[], page=1, page_size=10, total_count=21)
    last = Page(items=[], page=3, page_size=10, total_count=21)
    empty = Page(items=[], page=1, page_size=10, total_count=0)

    assert first.total_pages == 3
    assert (first.has_previous_page, first.has_next_page) == (False, True)
    assert (last.has_previous_page, last.has_next_page) == (True, False)
    assert empty.total_pages == 0
    assert empty.has_next_page is False


def test_rental_order_create_collapses_duplicates():
    request = RentalOrderCreate(customer_id=1, book_ids=[3, 1, 3, 2, 1], rental_days=7)

    assert request.book_ids == [3, 1, 2]
    assert request.allow_partial_order is False


@pytest.mark.parametrize("rental_days", [0, 366])
def test_rental_order_create_rejects_rental_days(rental_days):
    with pytest.raises(ValidationError):
        RentalOrderCreate(customer_id=1, book_ids=[1], rental_days=rental_days)


def test_book_update_is_a_patch():
    """
    Test that update models only carry the fields the caller set.

    Verifies:
    - exclude_unset drops untouched fields
    - An explicit None is kept
    """
    patch = BookUpdate(stock=3, description=None)

    assert patch.model_dump(exclude_unset=True) == {"stock": 3, "description": None}


def test_operation_result_helpers():
    ok = OperationResult.ok()
    failed = OperationResult.fail(FailureReason.CONFLICT, "Taken")

    assert (ok.success, ok.reason) == (True, None)
    assert (failed.success, failed.reason, failed.message) == (
        False,
        FailureReason.CONFLICT,
        "Taken",
    )


@pytest.mark.asyncio
async def test_bounded_turns_timeout_into_storage_error():
    with pytest.raises(StorageError):
        await bounded(asyncio.sleep(1), 0.01)


@pytest.mark.asyncio
async def test_bounded_returns_result():
    async def answer():
        return 42

    assert await bounded(answer(), 1) == 42


@pytest.mark.asyncio
async def test_foreign_keys_are_enforced(db):
    """
    Test that SQLite enforces foreign keys on every connection.

    Verifies:
    - A book pointing at a missing genre is rejected as IntegrityViolation
    """
    with pytest.raises(IntegrityViolation):
        await store.books.create(db, Book(title="Orphan", author="Nobody", stock=1, genre_id=4040))


@pytest.mark.asyncio
async def test_stock_check_constraint(db, make_book):
    book = await make_book(stock=1)
    book.stock = -1

    with pytest.raises(IntegrityViolation):
        await store.books.update(db, book)


@pytest.mark.asyncio
async def test_get_db_yields_a_session():
    """
    Test the session dependency used by the request layer.

    Verifies:
    - One AsyncSession is yielded and closed when the generator finishes
    """
    sessions = [session async for session in get_db()]

    assert len(sessions) == 1
    assert isinstance(sessions[0], AsyncSession)


def test_configure_logging(monkeypatch):
    """
    Test the start-up logging hook.

    Internal Working:
    1. logging.basicConfig is replaced so the test leaves the root logger alone
    2. The hook is called with and without an explicit level

    Verifies:
    - Without a level, Config.LOG_LEVEL is used
    - An explicit level wins
    - Records carry level and logger name
    """
    calls = []
    monkeypatch.setattr("logging.basicConfig", lambda **kwargs: calls.append(kwargs))
    monkeypatch.setattr(Config, "LOG_LEVEL", "WARNING")

    configure_logging()
    configure_logging("DEBUG")

    assert [call["level"] for call in calls] == ["WARNING", "DEBUG"]
    assert "%(levelname)s %(name)s" in calls[0]["format"]
