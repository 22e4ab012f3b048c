"""
Tests for the account store: snapshots, locking and JSON persistence
"""

import json
import threading

import pytest

from wallet.auth import AuthService
from wallet.errors import IdentifierCollisionError, KeyConflictError, StorageIOError, StoreBusyError
from wallet.models import Account
from wallet.service import LedgerService
from wallet.store import AccountStore


def new_account(username, number="1234567890", code="OPAY-ABCD1234", balance=0):
    return Account(
        username=username,
        password_hash="hash",
        password_salt="salt",
        account_number=number,
        referral_code=code,
        balance=balance,
    )


class TestReadsAndPuts:

    def test_put_and_get(self, store):
        """Test that a stored account is readable by username and both indexes."""
        store.put(new_account("alice", balance=100))

        account = store.get("alice")
        assert account.balance == 100
        assert store.find_by_account_number("1234567890") == "alice"
        assert store.find_by_referral_code("OPAY-ABCD1234") == "alice"
        assert store.get("nobody") is None

    def test_get_returns_detached_copy(self, store):
        """Test that mutating a read copy does not touch the stored account."""
        store.put(new_account("alice", balance=100))

        copy = store.get("alice")
        copy.balance = 1

        assert store.get("alice").balance == 100

    def test_duplicate_username_rejected(self, store):
        """Test that a second account with the same username is rejected."""
        store.put(new_account("alice"))

        with pytest.raises(KeyConflictError):
            store.put(new_account("alice", number="9999999999", code="OPAY-OTHER000"))

    def test_duplicate_account_number_rejected(self, store):
        """Test that a reused account number is rejected as a collision."""
        store.put(new_account("alice"))

        with pytest.raises(IdentifierCollisionError):
            store.put(new_account("bob", code="OPAY-OTHER000"))
        assert store.get("bob") is None

    def test_duplicate_referral_code_rejected(self, store):
        """Test that a reused referral code is rejected as a collision."""
        store.put(new_account("alice"))

        with pytest.raises(IdentifierCollisionError):
            store.put(new_account("bob", number="9999999999"))

    def test_collision_is_a_key_conflict(self):
        """Test that identifier collisions still count as key conflicts."""
        assert issubclass(IdentifierCollisionError, KeyConflictError)

    def test_account_number_is_immutable(self, store):
        """Test that an account number cannot be reassigned."""
        store.put(new_account("alice"))

        with pytest.raises(ValueError):
            with store.locked(["alice"]) as snapshot:
                snapshot["alice"].account_number = "5555555555"
        assert store.get("alice").account_number == "1234567890"

    def test_transaction_ids_increase(self, store):
        """Test that transaction ids are unique and increasing."""
        ids = [store.next_transaction_id() for _ in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5


class TestLocking:

    def test_changes_commit_on_clean_exit(self, store):
        """Test that snapshot changes commit when the block exits cleanly."""
        store.put(new_account("alice", balance=100))

        with store.locked(["alice"]) as snapshot:
            snapshot["alice"].balance = 250

        assert store.get("alice").balance == 250

    def test_changes_discarded_on_error(self, store):
        """Test that snapshot changes are dropped when the block raises."""
        store.put(new_account("alice", balance=100))

        with pytest.raises(RuntimeError):
            with store.locked(["alice"]) as snapshot:
                snapshot["alice"].balance = 0
                raise RuntimeError("boom")

        assert store.get("alice").balance == 100

    def test_with_lock_returns_callable_result(self, store):
        """Test that with_lock commits and returns the callable's result."""
        store.put(new_account("alice", balance=100))

        def bump(snapshot):
            snapshot["alice"].balance += 5
            return snapshot["alice"].balance

        assert store.with_lock(["alice"], bump) == 105
        assert store.get("alice").balance == 105

    def test_missing_accounts_are_absent_from_snapshot(self, store):
        """Test that locking an unknown username yields no account."""
        with store.locked(["ghost"]) as snapshot:
            assert "ghost" not in snapshot
            assert snapshot.get("ghost") is None

    def test_add_requires_lock_on_username(self, store):
        """Test that a snapshot only accepts accounts it holds the lock for."""
        with pytest.raises(KeyError):
            with store.locked(["alice"]) as snapshot:
                snapshot.add(new_account("bob"))

    def test_lock_timeout_raises_store_busy(self, store):
        """Test that waiting past the timeout raises StoreBusyError."""
        store.put(new_account("alice"))

        with store.locked(["alice"]):
            with pytest.raises(StoreBusyError):
                with store.locked(["alice"], timeout=0.05):
                    pass

        # Released afterwards
        with store.locked(["alice"], timeout=0.05):
            pass

    def test_partial_acquisition_is_released_on_timeout(self, store):
        """Test that locks taken before a timeout are released."""
        store.put(new_account("alice"))
        store.put(new_account("bob", number="9999999999", code="OPAY-OTHER000"))

        with store.locked(["bob"]):
            with pytest.raises(StoreBusyError):
                with store.locked(["alice", "bob"], timeout=0.05):
                    pass

        with store.locked(["alice"], timeout=0.05):
            pass

    def test_opposite_lock_orders_do_not_deadlock(self, store):
        """Test that callers naming accounts in opposite orders both finish."""
        store.put(new_account("alice"))
        store.put(new_account("bob", number="9999999999", code="OPAY-OTHER000"))
        errors = []

        def worker(names):
            try:
                for _ in range(200):
                    with store.locked(names) as snapshot:
                        snapshot[names[0]].referrals += 1
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=worker, args=(["alice", "bob"],)),
            threading.Thread(target=worker, args=(["bob", "alice"],)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert not any(t.is_alive() for t in threads)
        assert errors == []
        assert store.get("alice").referrals == 200
        assert store.get("bob").referrals == 200
        assert store.lock_count == 0

    def test_locks_are_dropped_after_use(self, store):
        """Test that per-account locks do not accumulate for unknown usernames."""
        for i in range(1000):
            with store.locked([f"ghost-{i}"]):
                assert store.lock_count == 1

        assert store.lock_count == 0

    def test_locks_are_dropped_after_error_and_timeout(self, store):
        """Test that lock entries are cleaned up on both failure paths."""
        store.put(new_account("alice"))

        with pytest.raises(RuntimeError):
            with store.locked(["alice", "bob"]):
                raise RuntimeError("boom")
        assert store.lock_count == 0

        with store.locked(["alice"]):
            with pytest.raises(StoreBusyError):
                with store.locked(["alice", "zed"], timeout=0.05):
                    pass
            assert store.lock_count == 1

        assert store.lock_count == 0


class TestPersistence:

    def test_round_trip_across_instances(self, tmp_path):
        """Test that a second store on the same file sees committed accounts."""
        path = tmp_path / "db.json"
        first = AccountStore(path)
        first.put(new_account("alice", balance=42))

        second = AccountStore(path)

        assert second.get("alice").balance == 42
        assert second.find_by_account_number("1234567890") == "alice"

    def test_file_uses_users_mapping_with_camel_case(self, tmp_path):
        """Test the on-disk layout of the users mapping."""
        path = tmp_path / "db.json"
        AccountStore(path).put(new_account("alice", balance=42))

        data = json.loads(path.read_text())
        assert data["users"]["alice"]["accountNumber"] == "1234567890"
        assert data["users"]["alice"]["balance"] == 42

    def test_missing_file_starts_empty_and_is_not_created_by_reads(self, tmp_path):
        """Test that a missing file means an empty store and no write on reads."""
        path = tmp_path / "db.json"
        store = AccountStore(path)

        with store.locked(["alice"]):
            pass

        assert len(store) == 0
        assert not path.exists()

    def test_transaction_counter_resumes_after_reload(self, tmp_path):
        """Test that transaction ids keep increasing across a reload."""
        path = tmp_path / "db.json"
        store = AccountStore(path)
        store.put(new_account("alice"))
        with store.locked(["alice"]) as snapshot:
            LedgerService(store).credit(snapshot["alice"], 5, "seed")
        last_id = store.get("alice").transactions[0].id

        reloaded = AccountStore(path)

        assert reloaded.next_transaction_id() > last_id

    def test_malformed_file_raises_storage_error(self, tmp_path):
        """Test that an unreadable data file raises StorageIOError."""
        path = tmp_path / "db.json"
        path.write_text("{not json")

        with pytest.raises(StorageIOError):
            AccountStore(path)

    def test_failed_write_leaves_file_and_memory_unchanged(self, tmp_path, monkeypatch):
        """Test that a failed save changes neither the file nor memory."""
        path = tmp_path / "db.json"
        store = AccountStore(path)
        store.put(new_account("alice", balance=100))
        before = path.read_text()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("wallet.store.os.replace", broken_replace)

        with pytest.raises(StorageIOError):
            with store.locked(["alice"]) as snapshot:
                snapshot["alice"].balance = 0

        assert path.read_text() == before
        assert store.get("alice").balance == 100
        assert [p.name for p in tmp_path.iterdir()] == ["db.json"]


class TestFileBackedServices:

    def test_services_keep_an_empty_file_backed_store(self, tmp_path, config):
        """Test that services built on an empty store keep using that store."""
        store = AccountStore(tmp_path / "db.json")
        ledger = LedgerService(store)
        auth = AuthService(ledger, config)

        assert len(store) == 0
        assert ledger.store is store
        assert auth.store is store

    def test_signup_and_transfer_survive_reload(self, tmp_path, config):
        """Test that signups and transfers on a fresh file are on disk after a reload."""
        path = tmp_path / "db.json"
        ledger = LedgerService(AccountStore(path))
        auth = AuthService(ledger, config)

        alice = auth.signup("alice", "pw")
        bob = auth.signup("bob", "pw")
        result = ledger.transfer("alice", bob.account_number, 1000)

        assert path.exists()
        reloaded = AccountStore(path)
        assert len(reloaded) == 2
        assert reloaded.get("alice").balance == config.welcome_bonus - 1000
        assert reloaded.get("bob").balance == config.welcome_bonus + 1000
        assert reloaded.get("alice").transactions[0].id == result.transaction_id
        assert reloaded.find_by_account_number(alice.account_number) == "alice"
        assert AuthService(LedgerService(reloaded), config).login("bob", "pw").username == "bob"
