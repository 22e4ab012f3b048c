import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Optional

from .errors import (
    AccountNotFoundError,
    IdempotencyConflictError,
    InsufficientFundsError,
    RecipientNotFoundError,
    SelfTransferError,
    SenderNotFoundError,
    StoreBusyError,
    ValidationError,
)
from .models import (
    Account,
    Transaction,
    TransactionType,
    TransferResult,
    TransactionHistoryResponse,
)
from .store import AccountStore

logger = logging.getLogger(__name__)


class LedgerService:
    def __init__(self, store: Optional[AccountStore] = None, idempotency_cache_size: int = 10_000):
        self.store = store if store is not None else AccountStore()
        self.idempotency_cache_size = idempotency_cache_size
        self._idempotency_index: OrderedDict[str, tuple[tuple, TransferResult]] = OrderedDict()
        self._idempotency_lock = threading.Lock()

    def credit(self, account: Account, amount: int, description: str) -> Transaction:
        self._check_amount(amount)
        account.balance += amount
        return self._append(account, TransactionType.CREDIT, amount, description)

    def debit(self, account: Account, amount: int, description: str) -> Transaction:
        self._check_amount(amount)
        if amount > account.balance:
            raise InsufficientFundsError("Insufficient funds.")
        account.balance -= amount
        return self._append(account, TransactionType.DEBIT, amount, description)

    def transfer(
        self,
        from_username: str,
        to_account_number: str,
        amount: int,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        if not idempotency_key:
            return self._transfer(from_username, to_account_number, amount)

        # Keyed transfers run one at a time so a replay can never slip in
        # between the commit and the index update.
        if not self._idempotency_lock.acquire(timeout=self.store.lock_timeout):
            raise StoreBusyError("Transfer service is busy, please retry.")
        try:
            params = (from_username, to_account_number, amount)
            existing = self._idempotency_index.get(idempotency_key)
            if existing is not None:
                seen_params, result = existing
                if seen_params != params:
                    raise IdempotencyConflictError(
                        f"Idempotency key {idempotency_key!r} was already used for a different transfer."
                    )
                return result.model_copy(update={"message": "Transfer already processed (idempotent return)"})

            result = self._transfer(from_username, to_account_number, amount)
            self._idempotency_index[idempotency_key] = (params, result)
            while len(self._idempotency_index) > self.idempotency_cache_size:
                self._idempotency_index.popitem(last=False)
            return result
        finally:
            self._idempotency_lock.release()

    def _transfer(self, from_username: str, to_account_number: str, amount: int) -> TransferResult:
        recipient_username = self.store.find_by_account_number(to_account_number)
        usernames = [from_username] if recipient_username is None else [from_username, recipient_username]

        with self.store.locked(usernames) as snapshot:
            sender = snapshot.get(from_username)
            if sender is None:
                raise SenderNotFoundError("Sender not found.")
            if recipient_username is None:
                raise RecipientNotFoundError("Recipient account not found.")
            recipient = snapshot[recipient_username]
            if sender.username == recipient.username:
                raise SelfTransferError("Cannot transfer to yourself.")
            self._check_amount(amount)
            if amount > sender.balance:
                raise InsufficientFundsError("Insufficient funds.")

            debit_entry = self.debit(sender, amount, f"Transfer to {recipient.username}")
            self.credit(recipient, amount, f"Transfer from {sender.username}")
            new_balance = sender.balance

        logger.info(
            "Transfer of %d from %s to %s", amount, from_username, recipient_username,
            extra={"action": "transfer", "user_id": from_username, "resource": to_account_number},
        )
        return TransferResult(
            new_balance=new_balance,
            transaction_id=debit_entry.id,
            recipient_username=recipient_username,
        )

    def get_account(self, username: str) -> Account:
        account = self.store.get(username)
        if account is None:
            raise AccountNotFoundError(f"User {username} not found.")
        return account

    def get_transaction_history(self, username: str, limit: int = 50, offset: int = 0) -> TransactionHistoryResponse:
        account = self.get_account(username)
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative.")

        return TransactionHistoryResponse(
            username=username,
            transactions=account.transactions[offset:offset + limit],
            total_count=len(account.transactions),
            current_balance=account.balance,
        )

    def total_balance(self) -> int:
        return sum(account.balance for account in self.store.all_accounts())

    def _append(self, account: Account, entry_type: TransactionType, amount: int, description: str) -> Transaction:
        entry = Transaction(
            id=self.store.next_transaction_id(),
            type=entry_type,
            description=description,
            amount=amount,
            timestamp=datetime.now(timezone.utc),
        )
        account.transactions.insert(0, entry)
        return entry

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Amount must be a positive whole number.")
