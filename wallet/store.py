"""
Account Store

Holds every account in memory, keyed by username, with secondary indexes on
account number and referral code. Mutations go through ``locked()``, which
hands out detached working copies of the named accounts and commits them
together when the block exits cleanly. Each commit writes the full state to a
JSON file (temp file + fsync + rename) before it becomes visible in memory.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, TypeVar, Union

from .errors import IdentifierCollisionError, KeyConflictError, StorageIOError, StoreBusyError
from .models import Account

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JsonFileBackend:
    """Persists the account map as ``{"users": {username: account}}``."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> dict[str, Account]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            users = raw["users"] if isinstance(raw, dict) else None
            if not isinstance(users, dict):
                raise ValueError("missing 'users' mapping")
            return {name: Account.model_validate(data) for name, data in users.items()}
        except (OSError, ValueError) as e:
            raise StorageIOError(f"Cannot load account data from {self.path}: {e}") from e

    def save(self, accounts: dict[str, Account]) -> None:
        payload = {
            "users": {
                name: account.model_dump(mode="json", by_alias=True)
                for name, account in accounts.items()
            }
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_path, self.path)
            except Exception:
                with suppress(OSError):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageIOError(f"Cannot write account data to {self.path}: {e}") from e


class AccountSnapshot:
    """Working copies of the accounts held by one ``AccountStore.locked()`` block."""

    def __init__(self, accounts: dict[str, Optional[Account]]):
        self._accounts = accounts
        self._added: dict[str, Account] = {}

    def get(self, username: str) -> Optional[Account]:
        if username in self._added:
            return self._added[username]
        return self._accounts.get(username)

    def __getitem__(self, username: str) -> Account:
        account = self.get(username)
        if account is None:
            raise KeyError(username)
        return account

    def __contains__(self, username: object) -> bool:
        return isinstance(username, str) and self.get(username) is not None

    def add(self, account: Account) -> None:
        if account.username not in self._accounts:
            raise KeyError(f"{account.username!r} is not locked by this snapshot")
        if self.get(account.username) is not None:
            raise KeyConflictError(f"Username {account.username!r} already exists")
        self._added[account.username] = account

    @property
    def added(self) -> list[Account]:
        return list(self._added.values())

    @property
    def existing(self) -> list[Account]:
        return [account for account in self._accounts.values() if account is not None]


class _AccountLock:
    """A lock plus the number of callers holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class AccountStore:
    def __init__(self, data_file: Optional[Union[str, Path]] = None, lock_timeout: float = 2.0):
        self._backend = JsonFileBackend(data_file) if data_file else None
        self.lock_timeout = lock_timeout

        self._accounts: dict[str, Account] = self._backend.load() if self._backend else {}
        self._by_account_number = {a.account_number: a.username for a in self._accounts.values()}
        self._by_referral_code = {a.referral_code: a.username for a in self._accounts.values()}

        self._locks: dict[str, _AccountLock] = {}
        self._locks_guard = threading.Lock()
        self._commit_lock = threading.Lock()
        self._txn_lock = threading.Lock()
        self._last_transaction_id = max(
            (t.id for a in self._accounts.values() for t in a.transactions), default=0
        )

        if self._backend:
            logger.info(
                "Loaded %d accounts from %s", len(self._accounts), self._backend.path,
                extra={"action": "store_load", "resource": str(self._backend.path)},
            )

    # Reads. Committed Account objects are replaced, never mutated, so
    # lock-free reads see a consistent record.

    def get(self, username: str) -> Optional[Account]:
        account = self._accounts.get(username)
        return account.model_copy(deep=True) if account is not None else None

    def find_by_account_number(self, account_number: str) -> Optional[str]:
        return self._by_account_number.get(account_number)

    def find_by_referral_code(self, referral_code: str) -> Optional[str]:
        return self._by_referral_code.get(referral_code)

    def account_number_taken(self, account_number: str) -> bool:
        return account_number in self._by_account_number

    def referral_code_taken(self, referral_code: str) -> bool:
        return referral_code in self._by_referral_code

    def all_accounts(self) -> list[Account]:
        return [account.model_copy(deep=True) for account in list(self._accounts.values())]

    def __len__(self) -> int:
        return len(self._accounts)

    def next_transaction_id(self) -> int:
        with self._txn_lock:
            self._last_transaction_id += 1
            return self._last_transaction_id

    # Writes

    @contextmanager
    def locked(self, usernames: Iterable[str], timeout: Optional[float] = None) -> Iterator[AccountSnapshot]:
        """
        Lock the named accounts and yield working copies of them.

        Locks are taken in sorted username order so two callers naming the same
        accounts can never deadlock. Raises StoreBusyError if a lock is not
        acquired within ``timeout`` seconds. Changes commit when the block exits
        without an exception and are discarded otherwise.
        """
        names = sorted(set(usernames))
        timeout = self.lock_timeout if timeout is None else timeout
        checked_out: list[str] = []
        acquired: list[threading.Lock] = []
        try:
            for name in names:
                lock = self._checkout_lock(name)
                checked_out.append(name)
                if not lock.acquire(timeout=timeout):
                    logger.warning(
                        "Timed out waiting for account lock", extra={"action": "lock_timeout", "user_id": name}
                    )
                    raise StoreBusyError("Account is busy, please retry.")
                acquired.append(lock)

            snapshot = AccountSnapshot({name: self.get(name) for name in names})
            yield snapshot
            self._commit(snapshot)
        finally:
            for lock in reversed(acquired):
                lock.release()
            for name in checked_out:
                self._checkin_lock(name)

    def with_lock(self, usernames: Iterable[str], fn: Callable[[AccountSnapshot], T]) -> T:
        with self.locked(usernames) as snapshot:
            return fn(snapshot)

    def put(self, account: Account) -> None:
        with self.locked([account.username]) as snapshot:
            snapshot.add(account)

    def _checkout_lock(self, username: str) -> threading.Lock:
        with self._locks_guard:
            entry = self._locks.get(username)
            if entry is None:
                entry = self._locks[username] = _AccountLock()
            entry.users += 1
            return entry.lock

    def _checkin_lock(self, username: str) -> None:
        # Entries only live while someone holds or waits on them.
        with self._locks_guard:
            entry = self._locks[username]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[username]

    @property
    def lock_count(self) -> int:
        """Number of per-account locks currently held or awaited."""
        with self._locks_guard:
            return len(self._locks)

    def _commit(self, snapshot: AccountSnapshot) -> None:
        changed = [a for a in snapshot.existing if a != self._accounts.get(a.username)]
        added = snapshot.added
        if not changed and not added:
            return

        with self._commit_lock:
            self._check_unique(added)

            accounts = dict(self._accounts)
            for account in changed + added:
                accounts[account.username] = account.model_copy(deep=True)

            if self._backend:
                self._backend.save(accounts)

            self._accounts = accounts
            for account in added:
                self._by_account_number[account.account_number] = account.username
                self._by_referral_code[account.referral_code] = account.username

    def _check_unique(self, added: list[Account]) -> None:
        numbers: set[str] = set()
        codes: set[str] = set()
        for account in added:
            if account.username in self._accounts:
                raise KeyConflictError(f"Username {account.username!r} already exists")
            if account.account_number in self._by_account_number or account.account_number in numbers:
                raise IdentifierCollisionError(f"Account number {account.account_number} already exists")
            if account.referral_code in self._by_referral_code or account.referral_code in codes:
                raise IdentifierCollisionError(f"Referral code {account.referral_code} already exists")
            numbers.add(account.account_number)
            codes.add(account.referral_code)
