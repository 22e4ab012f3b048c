class WalletError(Exception):
    pass


class ValidationError(WalletError):
    pass


class NotFoundError(WalletError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class SenderNotFoundError(NotFoundError):
    pass


class RecipientNotFoundError(NotFoundError):
    pass


class ConflictError(WalletError):
    pass


class UsernameTakenError(ConflictError):
    pass


class KeyConflictError(ConflictError):
    pass


class IdempotencyConflictError(ConflictError):
    pass


class InvalidCredentialsError(WalletError):
    pass


class InsufficientFundsError(WalletError):
    pass


class SelfTransferError(WalletError):
    pass


class StoreBusyError(WalletError):
    """Lock acquisition timed out. The request can be retried."""


class StorageIOError(WalletError):
    """The persistence layer failed. Message is internal and must not reach clients."""


class IdentifierCollisionError(KeyConflictError):
    """A generated account number or referral code was claimed concurrently."""
