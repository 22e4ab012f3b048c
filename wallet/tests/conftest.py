import itertools
import os

# Keep tests off the default db.json before wallet.config is imported.
os.environ.setdefault("WALLET_DATA_FILE", "")
os.environ.setdefault("WALLET_LOG_LEVEL", "WARNING")

import pytest

from wallet.config import WalletConfig
from wallet.models import Account
from wallet.service import LedgerService
from wallet.store import AccountStore


@pytest.fixture
def store():
    return AccountStore(lock_timeout=1.0)


@pytest.fixture
def ledger(store):
    return LedgerService(store)


@pytest.fixture
def config():
    return WalletConfig(data_file=None, lock_timeout_seconds=1.0)


@pytest.fixture
def make_account(store):
    """Insert an account directly, skipping password hashing and bonuses."""
    counter = itertools.count(1)

    def _make(username, balance=0, **kwargs):
        n = next(counter)
        account = Account(
            username=username,
            password_hash="unused",
            password_salt="unused",
            account_number=str(1_000_000_000 + n),
            referral_code=f"OPAY-TEST{n:04d}",
            balance=balance,
            **kwargs,
        )
        store.put(account)
        return store.get(username)

    return _make
