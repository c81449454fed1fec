import argparse
import logging
import os
import sqlite3

logger = logging.getLogger(__name__)

DB = "lostfound.db"

# Users table: username, password (plaintext intentionally), role
USERS_SCHEMA = '''
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    password TEXT NOT NULL,
    role TEXT NOT NULL
)
'''

# One JSON array per collection, keyed like the browser storage it replaces
STORAGE_SCHEMA = '''
CREATE TABLE IF NOT EXISTS storage (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
)
'''

DEFAULT_USERS = [
    ("admin", "1234", "admin"),
    ("student", "1234", "student"),
]


def create_schema(conn):
    c = conn.cursor()
    c.execute(USERS_SCHEMA)
    c.execute(STORAGE_SCHEMA)
    conn.commit()


def ensure_default_users(conn):
    c = conn.cursor()
    for username, password, role in DEFAULT_USERS:
        c.execute("SELECT 1 FROM users WHERE username = ?", (username,))
        if c.fetchone() is None:
            c.execute("INSERT INTO users (username, password, role) VALUES (?, ?, ?)",
                      (username, password, role))
            logger.info("Seeded default user %s (%s)", username, role)
    conn.commit()


def init_db(path=DB, seed_dir=None, reset=False):
    """Create the schema, default users and seeded collections at ``path``."""
    from .store import ListingStore

    if reset and os.path.exists(path):
        logger.info("Removing old DB %s", path)
        os.remove(path)

    conn = sqlite3.connect(path)
    try:
        create_schema(conn)
        ensure_default_users(conn)
        # Loading seeds any collection that has never been stored
        ListingStore(conn, seed_dir=seed_dir).load_all()
    finally:
        conn.close()
    return path


def main(argv=None):
    from .app import app

    parser = argparse.ArgumentParser(description="Initialise the lost-and-found database")
    parser.add_argument("--db", default=app.config["DATABASE"], help="sqlite database path")
    parser.add_argument("--seed-dir", default=app.config["SEED_DATA_DIR"],
                        help="directory holding the seed JSON files")
    parser.add_argument("--reset", action="store_true", help="delete the database first")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    init_db(args.db, seed_dir=args.seed_dir, reset=args.reset)
    print("Database initialized as", args.db)


if __name__ == "__main__":
    main()
