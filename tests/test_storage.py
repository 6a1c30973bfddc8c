"""
Test suite for storage backends

Both backends must honour the same contract: plain CRUD, unique inserts,
single-step compare-and-set and all-or-nothing atomic blocks.
"""

import threading

import pytest

from netbank.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each test runs against both backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestBasicOperations:
    """Test CRUD behaviour"""

    def test_save_and_load(self, storage):
        """Test a saved record loads back unchanged"""
        storage.save("items", "a", {"id": "a", "name": "first", "count": 1})

        assert storage.load("items", "a") == {"id": "a", "name": "first", "count": 1}
        assert storage.load("items", "missing") is None

    def test_loaded_record_is_a_copy(self, storage):
        """Test mutating a loaded record does not change storage"""
        storage.save("items", "a", {"id": "a", "count": 1})
        record = storage.load("items", "a")
        record["count"] = 99

        assert storage.load("items", "a")["count"] == 1

    def test_exists_count_and_clear(self, storage):
        """Test exists, count and clear_table"""
        storage.save("items", "a", {"id": "a"})
        storage.save("items", "b", {"id": "b"})

        assert storage.exists("items", "a")
        assert not storage.exists("items", "c")
        assert storage.count("items") == 2

        storage.clear_table("items")
        assert storage.count("items") == 0

    def test_find_with_filters(self, storage):
        """Test find matches every filter field"""
        storage.save("items", "a", {"id": "a", "owner": "x", "active": True})
        storage.save("items", "b", {"id": "b", "owner": "x", "active": False})
        storage.save("items", "c", {"id": "c", "owner": "y", "active": True})

        found = storage.find("items", {"owner": "x", "active": True})
        assert [r["id"] for r in found] == ["a"]

    def test_load_all_insertion_order(self, storage):
        """Test load_all returns records in insertion order"""
        for record_id in ["c", "a", "b"]:
            storage.save("items", record_id, {"id": record_id})

        assert [r["id"] for r in storage.load_all("items")] == ["c", "a", "b"]


class TestGuardedPrimitives:
    """Test insert_if_absent and compare_and_set"""

    def test_insert_if_absent(self, storage):
        """Test the second insert with the same id is refused"""
        assert storage.insert_if_absent("keys", "k1", {"value": 1}) is True
        assert storage.insert_if_absent("keys", "k1", {"value": 2}) is False
        assert storage.load("keys", "k1") == {"value": 1}

    def test_compare_and_set_success(self, storage):
        """Test CAS applies updates when the expected values hold"""
        storage.save("tx", "t1", {"id": "t1", "status": "pending", "amount": 10})

        updated = storage.compare_and_set("tx", "t1", {"status": "pending"}, {"status": "approved"})

        assert updated["status"] == "approved"
        assert updated["amount"] == 10
        assert storage.load("tx", "t1")["status"] == "approved"

    def test_compare_and_set_mismatch(self, storage):
        """Test CAS leaves the record alone when a field differs"""
        storage.save("tx", "t1", {"id": "t1", "status": "approved"})

        assert storage.compare_and_set("tx", "t1", {"status": "pending"}, {"status": "rejected"}) is None
        assert storage.load("tx", "t1")["status"] == "approved"

    def test_compare_and_set_missing_record(self, storage):
        """Test CAS on a missing record returns None"""
        assert storage.compare_and_set("tx", "nope", {"status": "pending"}, {"status": "x"}) is None

    def test_compare_and_set_booleans_and_none(self, storage):
        """Test CAS compares booleans and nulls correctly"""
        storage.save("sessions", "s1", {"id": "s1", "revoked": False, "reason": None, "generation": 1})

        assert storage.compare_and_set(
            "sessions", "s1", {"revoked": True}, {"generation": 2}
        ) is None
        updated = storage.compare_and_set(
            "sessions", "s1", {"revoked": False, "reason": None, "generation": 1}, {"generation": 2}
        )
        assert updated["generation"] == 2

    def test_concurrent_compare_and_set_single_winner(self, storage):
        """Test exactly one of many concurrent CAS calls wins"""
        storage.save("tx", "t1", {"id": "t1", "status": "pending"})
        winners = []
        barrier = threading.Barrier(8)

        def decide(worker):
            barrier.wait()
            if storage.compare_and_set("tx", "t1", {"status": "pending"}, {"status": f"done-{worker}"}):
                winners.append(worker)

        threads = [threading.Thread(target=decide, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert storage.load("tx", "t1")["status"] == f"done-{winners[0]}"


class TestAtomicBlocks:
    """Test atomic() and update()"""

    def test_atomic_commits(self, storage):
        """Test writes inside a successful block persist"""
        with storage.atomic():
            storage.save("items", "a", {"id": "a"})
            storage.save("items", "b", {"id": "b"})

        assert storage.count("items") == 2

    def test_atomic_rolls_back_on_error(self, storage):
        """Test an exception undoes every write in the block"""
        storage.save("items", "a", {"id": "a", "value": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("items", "a", {"id": "a", "value": 2})
                storage.insert_if_absent("items", "b", {"id": "b"})
                raise RuntimeError("boom")

        assert storage.load("items", "a")["value"] == 1
        assert storage.load("items", "b") is None

    def test_rollback_restores_compare_and_set(self, storage):
        """Test a conditional update inside a failed block is undone"""
        storage.save("items", "a", {"id": "a", "status": "pending"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.compare_and_set("items", "a", {"status": "pending"}, {"status": "approved"})
                storage.compare_and_set("items", "a", {"status": "approved"}, {"status": "completed"})
                raise RuntimeError("boom")

        assert storage.load("items", "a")["status"] == "pending"

    def test_nested_blocks_join_outer(self, storage):
        """Test an inner block's writes roll back with the outer block"""
        with pytest.raises(ValueError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("items", "inner", {"id": "inner"})
                storage.save("items", "outer", {"id": "outer"})
                raise ValueError("outer failure")

        assert storage.count("items") == 0

    def test_rollback_of_first_table_use(self, storage):
        """Test a table first touched in a rolled-back block is usable afterwards"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", "a", {"id": "a"})
                raise RuntimeError("boom")

        storage.save("fresh", "b", {"id": "b"})
        assert storage.count("fresh") == 1

    def test_update_mutates_record(self, storage):
        """Test update applies the mutation and returns the stored record"""
        storage.save("accounts", "a", {"id": "a", "balance": 100})

        def add_ten(record):
            record["balance"] += 10
            return record

        assert storage.update("accounts", "a", add_ten)["balance"] == 110
        assert storage.update("accounts", "missing", add_ten) is None

    def test_update_mutation_error_writes_nothing(self, storage):
        """Test a raising mutation leaves the record unchanged"""
        storage.save("accounts", "a", {"id": "a", "balance": 100})

        def fail(record):
            record["balance"] = 0
            raise ValueError("rejected")

        with pytest.raises(ValueError):
            storage.update("accounts", "a", fail)
        assert storage.load("accounts", "a")["balance"] == 100


class TestInMemoryUndoJournal:
    """Test the in-memory backend journals only the records a block writes"""

    def test_journal_holds_touched_records_only(self):
        """Test a block over a large table journals one entry per written record"""
        storage = InMemoryStorage()
        for i in range(500):
            storage.save("items", str(i), {"id": str(i), "value": i})

        with storage.atomic():
            storage.save("items", "1", {"id": "1", "value": -1})
            storage.compare_and_set("items", "1", {"value": -1}, {"value": -2})
            storage.insert_if_absent("items", "new", {"id": "new"})
            assert len(storage._journal) == 2

        assert storage._journal == {}
        assert storage.load("items", "1")["value"] == -2

    def test_rollback_restores_cleared_table(self):
        """Test clear_table inside a failed block is undone"""
        storage = InMemoryStorage()
        storage.save("items", "a", {"id": "a"})
        storage.save("items", "b", {"id": "b"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.clear_table("items")
                storage.save("items", "c", {"id": "c"})
                raise RuntimeError("boom")

        assert sorted(r["id"] for r in storage.load_all("items")) == ["a", "b"]
        assert storage._journal == {}


class TestSQLitePersistence:
    """Test SQLite durability across connections"""

    def test_data_survives_reopen(self, tmp_path):
        """Test records written before close are visible to a new connection"""
        path = tmp_path / "bank.db"
        first = SQLiteStorage(path)
        first.save("items", "a", {"id": "a", "value": 42})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("items", "a") == {"id": "a", "value": 42}
        second.close()


class TestCreateStorage:
    """Test backend selection from a database URL"""

    def test_memory_url(self):
        """Test memory:// selects the in-memory backend"""
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self, tmp_path):
        """Test sqlite URLs select SQLite, in memory or on disk"""
        in_memory = create_storage("sqlite://")
        on_disk = create_storage(f"sqlite:///{tmp_path / 'x.db'}")

        assert isinstance(in_memory, SQLiteStorage)
        assert in_memory.db_path == ":memory:"
        assert on_disk.db_path.endswith("x.db")
        in_memory.close()
        on_disk.close()

    def test_unknown_url(self):
        """Test unsupported schemes are rejected"""
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/bank")
