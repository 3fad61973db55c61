from book_rental import store
from book_rental.database import build_engine, build_session_factory, create_all, drop_all
from book_rental.models import Book, Customer, Genre

import pytest
import pytest_asyncio


@pytest_asyncio.fixture
async def engine(tmp_path):
    """
    Fixture providing a fresh file-backed SQLite database for each test.

    Internal Working:
    1. The database file lives under pytest's tmp_path, so every test gets
       its own file and concurrent sessions see real locking
    2. Before yield: Create all tables
    3. After yield: Drop all tables and dispose of the connection pool
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await create_all(engine)
    yield engine
    await drop_all(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test database, for tests needing several sessions."""
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    """
    Session used by most tests.

    Closed (and anything uncommitted rolled back) before the tables are
    dropped.
    """
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def genre(db):
    return await store.genres.create(db, Genre(name="Science Fiction"))


@pytest.fixture
def make_genre(db):
    async def _make(name):
        return await store.genres.create(db, Genre(name=name))

    return _make


@pytest.fixture
def make_book(db, genre):
    """
    Factory creating an active book.

    Availability follows stock unless is_available is passed explicitly.
    """
    genre_id = genre.id

    async def _make(title="Dune", stock=1, author="Frank Herbert", **fields):
        fields.setdefault("is_available", stock > 0)
        fields.setdefault("genre_id", genre_id)
        return await store.books.create(
            db, Book(title=title, author=author, stock=stock, **fields)
        )

    return _make


@pytest.fixture
def make_customer(db):
    async def _make(dni="30111222", email=None, first_name="Ada", last_name="Lovelace", **fields):
        return await store.customers.create(
            db,
            Customer(
                dni=dni,
                email=email or f"{dni}@example.com",
                first_name=first_name,
                last_name=last_name,
                age=fields.pop("age", 36),
                **fields,
            ),
        )

    return _make


@pytest_asyncio.fixture
async def customer(make_customer):
    return await make_customer()
