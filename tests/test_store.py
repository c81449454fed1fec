import json
import sqlite3

import pytest

from lostfound_board import transitions
from lostfound_board import store as store_module
from lostfound_board.store import (
    CLAIMED,
    FOUND,
    LOST,
    PENDING,
    ListingStore,
    detect_kind,
    generate_pid,
    to_base36,
)


def write_seed(directory, name, payload):
    (directory / name).write_text(payload if isinstance(payload, str) else json.dumps(payload))


class TestSeeding:

    def test_missing_collections_are_seeded_and_persisted(self, conn, tmp_path):
        write_seed(tmp_path, "lostItems.json", [{"id": "L-1", "category": "Documents"}])
        loaded = ListingStore(conn, seed_dir=str(tmp_path)).load_all()
        assert loaded[LOST] == [{"id": "L-1", "category": "Documents"}]
        assert loaded[FOUND] == []

        # A second load reads storage, not the seed file
        write_seed(tmp_path, "lostItems.json", [])
        again = ListingStore(conn, seed_dir=str(tmp_path)).load_all()
        assert again[LOST][0]["id"] == "L-1"

    def test_stored_empty_collection_is_not_reseeded(self, conn, tmp_path):
        first = ListingStore(conn).load_all()
        assert first[LOST] == []
        write_seed(tmp_path, "lostItems.json", [{"id": "L-1"}])
        assert ListingStore(conn, seed_dir=str(tmp_path)).load_all()[LOST] == []

    @pytest.mark.parametrize("payload", ["{not json", json.dumps({"id": "L-1"})])
    def test_unusable_seed_file_yields_empty_collection(self, conn, tmp_path, payload):
        write_seed(tmp_path, "foundItems.json", payload)
        assert ListingStore(conn, seed_dir=str(tmp_path)).load_all()[FOUND] == []

    def test_pending_records_get_stable_pids(self, conn, tmp_path):
        write_seed(tmp_path, "pendingList.json", [{"type": "Bag"}, {"type": "Pen", "_pid": "PID-KEEP"}])
        loaded = ListingStore(conn, seed_dir=str(tmp_path)).load_all()
        pids = [item["_pid"] for item in loaded[PENDING]]
        assert pids[0].startswith("PID-")
        assert pids[1] == "PID-KEEP"
        assert [item["_pid"] for item in ListingStore(conn).load_all()[PENDING]] == pids

    def test_packaged_seed_data_loads(self, seeded_store):
        assert seeded_store[LOST] and seeded_store[FOUND] and seeded_store[CLAIMED]
        assert all(item["_pid"] for item in seeded_store[PENDING])


class TestLookups:

    def test_get_and_index_of(self, store):
        store[FOUND].append({"id": "F-1"})
        assert store.get(FOUND, "F-1") == {"id": "F-1"}
        assert store.get(FOUND, "F-2") is None
        assert store.index_of(LOST, "F-1") == -1

    def test_pending_lookup_by_pid(self, store):
        store[PENDING].append({"_pid": "PID-A", "type": "Key"})
        assert store.get_pending("PID-A")["type"] == "Key"
        assert store.pending_index("PID-B") == -1


@pytest.mark.parametrize("item_id,kind", [
    ("L-ABC", LOST),
    ("F-ABC", FOUND),
    ("C-F-ABC", CLAIMED),
    ("X-ABC", None),
    ("", None),
    (None, None),
])
def test_detect_kind(item_id, kind):
    assert detect_kind(item_id) == kind


def test_to_base36():
    assert to_base36(0) == "0"
    assert to_base36(35) == "Z"
    assert to_base36(36) == "10"


def test_generate_pid_format():
    pid = generate_pid()
    prefix, stamp, suffix = pid.split("-")
    assert prefix == "PID"
    assert stamp.isalnum() and stamp == stamp.upper()
    assert len(suffix) == 4


def test_generate_id_skips_taken_ids(store, monkeypatch):
    monkeypatch.setattr(store_module, "now_ms", lambda: 1000)
    store[LOST].append({"id": "L-" + to_base36(1000)})
    store[CLAIMED].append({"id": "C-X", "originalId": "L-" + to_base36(1001)})
    assert store.generate_id(LOST) == "L-" + to_base36(1002)
    assert store.generate_id(FOUND) == "F-" + to_base36(1000)


class TestTransactions:

    @pytest.fixture
    def other_conn(self, db_path, conn):
        connection = sqlite3.connect(db_path, timeout=0)
        try:
            yield connection
        finally:
            connection.close()

    def submit_type(self, conn, type_):
        writer = ListingStore(conn)
        with writer.transaction():
            writer.load_all()
            transitions.submit(writer, {"reportAs": LOST, "category": "Documents", "type": type_})

    def test_load_does_not_write_when_pids_exist(self, store, conn):
        store[PENDING].append({"_pid": "PID-A", "type": "Key"})
        store.save(PENDING)
        before = conn.total_changes
        assert ListingStore(conn).load_all()[PENDING][0]["_pid"] == "PID-A"
        assert conn.total_changes == before

    def test_second_writer_waits_for_the_first(self, store, conn, other_conn):
        first = ListingStore(conn)
        second = ListingStore(other_conn)
        with first.transaction():
            first.load_all()
            with pytest.raises(sqlite3.OperationalError):
                with second.transaction():
                    pass
        with second.transaction():
            second.load_all()

    def test_writers_on_two_connections_keep_both_submissions(self, store, conn, other_conn):
        self.submit_type(conn, "Wallet")
        self.submit_type(other_conn, "Keys")
        types = sorted(item["type"] for item in ListingStore(conn).load_all()[PENDING])
        assert types == ["Keys", "Wallet"]

    def test_failed_transaction_saves_nothing(self, store, conn):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store[LOST].append({"id": "L-1"})
                store.save(LOST)
                raise RuntimeError("boom")
        assert ListingStore(conn).load_all()[LOST] == []
