from datetime import datetime

from book_rental import booking, store
from book_rental.errors import IntegrityViolation
from book_rental.models import EntityStatus, Genre
from book_rental.schemas import Pagination

import pytest


pytestmark = pytest.mark.asyncio


async def test_create_sets_lifecycle_fields(db):
    """
    Test that create() stamps the lifecycle contract.

    Verifies:
    - Record is Active with a creation timestamp
    - updated_at stays empty until the first update
    - An id is assigned on flush
    """
    genre = await store.genres.create(db, Genre(name="Fantasy", status=EntityStatus.DELETED))

    assert genre.id is not None
    assert genre.status == EntityStatus.ACTIVE
    assert genre.created_at is not None
    assert genre.updated_at is None


async def test_soft_delete_twice_returns_true_then_false(db, make_genre):
    """
    Test soft delete idempotence.

    Verifies:
    - First call deletes, second finds nothing in the active view
    - The record disappears from default reads but not from the
      including-deleted view
    """
    genre = await make_genre("Horror")

    assert await store.genres.soft_delete(db, genre.id) is True
    assert await store.genres.soft_delete(db, genre.id) is False

    assert await store.genres.get_by_id(db, genre.id) is None
    assert await store.genres.get_all(db) == []
    assert [g.id for g in await store.genres.get_all_including_deleted(db)] == [genre.id]
    deleted = await store.genres.get_by_id_including_deleted(db, genre.id)
    assert deleted.status == EntityStatus.DELETED
    assert deleted.updated_at is not None


async def test_restore_round_trip(db, make_genre):
    """
    Test soft delete followed by restore.

    Verifies:
    - Restore of a non-deleted record returns False and changes nothing
    - After delete + restore the record is Active again, keeps its fields
      and shows up in get_all()
    """
    genre = await make_genre("Poetry")
    assert await store.genres.restore(db, genre.id) is False
    assert genre.updated_at is None

    await store.genres.soft_delete(db, genre.id)
    assert await store.genres.restore(db, genre.id) is True

    restored = await store.genres.get_by_id(db, genre.id)
    assert restored.status == EntityStatus.ACTIVE
    assert restored.name == "Poetry"
    assert [g.id for g in await store.genres.get_all(db)] == [genre.id]


async def test_restore_missing_record(db):
    assert await store.genres.restore(db, 404) is False


async def test_update_missing_record_does_not_create(db):
    """
    Test that update() never inserts.

    Verifies:
    - Unknown id returns None
    - No row is written
    """
    result = await store.genres.update(db, Genre(id=999, name="Ghost"))

    assert result is None
    assert await store.genres.count_including_deleted(db) == 0


async def test_update_preserves_created_at(db, make_genre):
    """
    Test that update() keeps the stored creation timestamp.

    Internal Working:
    1. Caller edits the tracked record, including created_at
    2. update() restores the loaded created_at and stamps updated_at

    Verifies:
    - Field edits are persisted
    - created_at is unchanged whatever the caller supplied
    """
    genre = await make_genre("Drama")
    created_at = genre.created_at

    genre.name = "Stage Drama"
    genre.created_at = datetime(2000, 1, 1)
    updated = await store.genres.update(db, genre)

    assert updated.name == "Stage Drama"
    assert updated.created_at == created_at
    assert updated.updated_at is not None


async def test_update_copies_fields_from_detached_entity(db, make_genre):
    genre = await make_genre("Essay")

    updated = await store.genres.update(
        db, Genre(id=genre.id, name="Essays", created_at=datetime(1999, 1, 1))
    )

    assert updated is genre
    assert genre.name == "Essays"
    assert genre.created_at != datetime(1999, 1, 1)


async def test_update_ignores_deleted_record(db, make_genre):
    genre = await make_genre("Satire")
    await store.genres.soft_delete(db, genre.id)

    assert await store.genres.update(db, Genre(id=genre.id, name="Parody")) is None


async def test_hard_delete(db, make_genre):
    """
    Test permanent removal.

    Verifies:
    - Works on soft-deleted records too
    - Second call returns False
    """
    genre = await make_genre("Western")
    await store.genres.soft_delete(db, genre.id)

    assert await store.genres.hard_delete(db, genre.id) is True
    assert await store.genres.hard_delete(db, genre.id) is False
    assert await store.genres.count_including_deleted(db) == 0


async def test_counts_and_exists(db, make_genre):
    first = await make_genre("Mystery")
    second = await make_genre("Thriller")
    await store.genres.soft_delete(db, second.id)

    assert await store.genres.count(db) == 1
    assert await store.genres.count_including_deleted(db) == 2
    assert await store.genres.exists(db, first.id) is True
    assert await store.genres.exists(db, second.id) is False


async def test_find_respects_soft_delete(db, make_genre):
    await make_genre("Romance")
    gone = await make_genre("Romantic Comedy")
    await store.genres.soft_delete(db, gone.id)

    found = await store.genres.find(db, Genre.name.like("Roman%"))

    assert [g.name for g in found] == ["Romance"]
    assert await store.genres.find_one_including_deleted(db, Genre.name == "Romantic Comedy")


async def test_unique_violation_raises_integrity_violation(db, make_genre):
    """
    Test that a storage constraint surfaces as IntegrityViolation.

    Verifies:
    - The raw IntegrityError is translated
    - The session is usable again afterwards
    """
    await make_genre("History")

    with pytest.raises(IntegrityViolation):
        await store.genres.create(db, Genre(name="History"))

    assert await store.genres.count(db) == 1


async def test_paginate_pages_and_totals(db, make_genre):
    """
    Test paging over an active-only query.

    Verifies:
    - page / page_size slice the ordered result
    - total_count ignores deleted records
    - has_next_page / has_previous_page follow the totals
    """
    for index in range(12):
        await make_genre(f"Genre {index:02d}")
    deleted = await make_genre("Deleted genre")
    await store.genres.soft_delete(db, deleted.id)

    page = await store.genres.paginate(
        db, store.genres.query(), Pagination(page=3, page_size=5)
    )

    assert page.total_count == 12
    assert page.total_pages == 3
    assert [g.name for g in page.items] == ["Genre 10", "Genre 11"]
    assert page.has_previous_page is True
    assert page.has_next_page is False


async def test_paginate_search_and_sort(db, make_genre):
    for name in ("Biography", "Autobiography", "Cooking"):
        await make_genre(name)

    page = await store.genres.paginate(
        db,
        store.genres.query(),
        Pagination(search="bio", sort_by="name", sort_descending=True),
    )

    assert [g.name for g in page.items] == ["Biography", "Autobiography"]
    assert page.total_count == 2


async def test_paginate_unknown_sort_field_falls_back_to_id(db, make_genre):
    for name in ("B", "A"):
        await make_genre(name)

    page = await store.genres.paginate(
        db, store.genres.query(), Pagination(sort_by="no_such_column")
    )

    assert [g.name for g in page.items] == ["B", "A"]


async def test_paginate_deleted_view(db, make_genre):
    kept = await make_genre("Kept")
    gone = await make_genre("Gone")
    await store.genres.soft_delete(db, gone.id)

    page = await store.genres.paginate(db, store.genres.query_deleted())

    assert [g.id for g in page.items] == [gone.id]
    assert page.total_count == 1
    assert kept.id not in [g.id for g in page.items]


async def test_hard_delete_of_referenced_book_or_customer_is_refused(db, customer, make_book):
    """
    Test that line items keep their book and orders keep their customer.

    Verifies:
    - Hard-deleting a book named by a line item raises IntegrityViolation
    - Hard-deleting a customer owning an order raises IntegrityViolation
    - Both rows survive
    """
    book = await make_book(stock=2)
    book_id, customer_id = book.id, customer.id
    result = await booking.create_order(db, customer_id, [book_id], 7)
    assert result.success is True

    with pytest.raises(IntegrityViolation):
        await store.books.hard_delete(db, book_id)
    with pytest.raises(IntegrityViolation):
        await store.customers.hard_delete(db, customer_id)

    assert await store.books.exists(db, book_id) is True
    assert await store.customers.exists(db, customer_id) is True


async def test_hard_delete_of_order_removes_its_line_items(db, customer, make_book):
    """
    Test that line items go with their order.

    Verifies:
    - The order is removed
    - No line item is left, deleted ones included
    """
    first = await make_book("Dune", stock=1)
    second = await make_book("Emma", stock=1)
    result = await booking.create_order(db, customer.id, [first.id, second.id], 7)
    assert await store.order_details.count_including_deleted(db) == 2

    assert await store.orders.hard_delete(db, result.order_id) is True

    assert await store.orders.count_including_deleted(db) == 0
    assert await store.order_details.count_including_deleted(db) == 0
