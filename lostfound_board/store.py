"""Server-side replacement for the board's browser storage.

Each collection is one JSON array stored under ``pcclnf_<collection>`` in the
``storage`` table. Collections that were never stored are seeded from the JSON
files in the seed directory.
"""
import json
import logging
import os
import secrets
import string
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "pcclnf_"

LOST, FOUND, CLAIMED, PENDING = "lost", "found", "claimed", "pending"
COLLECTIONS = (LOST, FOUND, CLAIMED, PENDING)
PUBLIC_COLLECTIONS = (LOST, FOUND, CLAIMED)

SEED_FILES = {
    LOST: "lostItems.json",
    FOUND: "foundItems.json",
    CLAIMED: "claimedItems.json",
    PENDING: "pendingList.json",
}

ID_PREFIXES = {LOST: "L-", FOUND: "F-", CLAIMED: "C-"}

BASE36 = string.digits + string.ascii_uppercase


def to_base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(BASE36[rem])
    return "".join(reversed(out))


def now_ms() -> int:
    return int(time.time() * 1000)


def detect_kind(item_id):
    """Collection a public id belongs to, from its prefix."""
    if not item_id:
        return None
    for kind, prefix in ID_PREFIXES.items():
        if item_id.startswith(prefix):
            return kind
    return None


def generate_pid() -> str:
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"PID-{to_base36(now_ms())}-{suffix}"


def ensure_pending_pid(item):
    if not item.get("_pid"):
        item["_pid"] = generate_pid()
    return item["_pid"]


class ListingStore:
    """In-memory mirror of the four collections over a sqlite connection."""

    def __init__(self, conn, seed_dir=None):
        self.conn = conn
        self.seed_dir = seed_dir
        self.collections = {kind: [] for kind in COLLECTIONS}
        self._in_transaction = False

    def __getitem__(self, kind):
        return self.collections[kind]

    # ---- raw key/value access ----

    def _read(self, kind):
        cur = self.conn.cursor()
        cur.execute("SELECT value FROM storage WHERE key = ?", (STORAGE_PREFIX + kind,))
        row = cur.fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Stored %s collection is not valid JSON, reseeding", kind)
            return None

    def save(self, kind):
        cur = self.conn.cursor()
        cur.execute(
            "INSERT OR REPLACE INTO storage (key, value) VALUES (?, ?)",
            (STORAGE_PREFIX + kind, json.dumps(self.collections[kind])),
        )
        if not self._in_transaction:
            self.conn.commit()

    @contextmanager
    def transaction(self):
        """Hold the sqlite write lock from load to the last save."""
        self.conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()
        finally:
            self._in_transaction = False

    def _seed(self, kind):
        data = self.read_seed(kind)
        cur = self.conn.cursor()
        # Another writer may have stored the collection since it was read
        cur.execute(
            "INSERT OR IGNORE INTO storage (key, value) VALUES (?, ?)",
            (STORAGE_PREFIX + kind, json.dumps(data)),
        )
        if cur.rowcount:
            logger.info("Seeded %s with %d records", kind, len(data))
        if not self._in_transaction:
            self.conn.commit()
        stored = self._read(kind)
        if isinstance(stored, list):
            return stored
        # The stored value is unreadable; replace it with the seed
        self.collections[kind] = data
        self.save(kind)
        return data

    def read_seed(self, kind):
        if not self.seed_dir:
            return []
        path = os.path.join(self.seed_dir, SEED_FILES[kind])
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Could not read seed file %s: %s", path, e)
            return []
        return data if isinstance(data, list) else []

    def load_all(self):
        for kind in COLLECTIONS:
            stored = self._read(kind)
            if isinstance(stored, list):
                self.collections[kind] = stored
            else:
                self.collections[kind] = self._seed(kind)
        missing = [item for item in self.collections[PENDING] if not item.get("_pid")]
        for item in missing:
            ensure_pending_pid(item)
        if missing:
            self.save(PENDING)
        return self

    # ---- lookups ----

    def index_of(self, kind, item_id):
        for i, item in enumerate(self.collections[kind]):
            if item.get("id") == item_id:
                return i
        return -1

    def get(self, kind, item_id):
        idx = self.index_of(kind, item_id)
        return self.collections[kind][idx] if idx >= 0 else None

    def pending_index(self, pid):
        for i, item in enumerate(self.collections[PENDING]):
            if item.get("_pid") == pid:
                return i
        return -1

    def get_pending(self, pid):
        idx = self.pending_index(pid)
        return self.collections[PENDING][idx] if idx >= 0 else None

    def all_ids(self):
        ids = set()
        for kind in PUBLIC_COLLECTIONS:
            ids.update(item.get("id") for item in self.collections[kind] if item.get("id"))
            ids.update(item.get("originalId") for item in self.collections[kind]
                       if item.get("originalId"))
        return ids

    def generate_id(self, kind):
        """Prefix plus epoch milliseconds in base 36, unique on this board."""
        prefix = ID_PREFIXES.get(kind, ID_PREFIXES[CLAIMED])
        taken = self.all_ids()
        ts = now_ms()
        candidate = prefix + to_base36(ts)
        while candidate in taken:
            ts += 1
            candidate = prefix + to_base36(ts)
        return candidate
