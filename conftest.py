from datetime import date

import pytest

from library import Library

TODAY = date(2025, 6, 1)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / "test.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file, today=lambda: TODAY)
    yield lib
    lib.close()


@pytest.fixture
def book(lib):
    return lib.add_book("Ulysses", "James Joyce", "9780199535675", published_date="1922-02-02")


@pytest.fixture
def member(lib):
    return lib.register_user("Alice Johnson", "alice@example.com")


@pytest.fixture
def client(lib):
    from fastapi.testclient import TestClient

    import api as api_module

    api_module.app.dependency_overrides[api_module.get_library] = lambda: lib
    try:
        yield TestClient(api_module.app)
    finally:
        api_module.app.dependency_overrides.clear()
