import sqlite3

import pytest

from lostfound_board.app import app as flask_app
from lostfound_board.db_init import create_schema, ensure_default_users
from lostfound_board.store import ListingStore



@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "lostfound.db")


@pytest.fixture
def conn(db_path):
    connection = sqlite3.connect(db_path)
    create_schema(connection)
    ensure_default_users(connection)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def store(conn):
    """Empty board: no seed directory, so every collection starts as []."""
    return ListingStore(conn).load_all()


@pytest.fixture
def seeded_store(conn):
    return ListingStore(conn, seed_dir=flask_app.config["SEED_DATA_DIR"]).load_all()


@pytest.fixture
def app(db_path, tmp_path):
    flask_app.config.update(
        TESTING=True,
        DATABASE=db_path,
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
        SECRET_KEY="test",
    )
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def _login_as(client, username, role):
    with client.session_transaction() as sess:
        sess["user"] = username
        sess["role"] = role
    return client


@pytest.fixture
def admin_client(client):
    return _login_as(client, "admin", "admin")


@pytest.fixture
def student_client(client):
    return _login_as(client, "student", "student")


@pytest.fixture
def stored(db_path):
    """Read a collection straight from the database the app writes to."""
    def _read(kind):
        connection = sqlite3.connect(db_path)
        try:
            return ListingStore(connection).load_all()[kind]
        finally:
            connection.close()
    return _read
