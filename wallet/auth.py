import hashlib
import hmac
import logging
import secrets
import string
from typing import Optional

from .config import WalletConfig, get_config
from .errors import (
    IdentifierCollisionError,
    InvalidCredentialsError,
    KeyConflictError,
    UsernameTakenError,
    ValidationError,
)
from .models import Account
from .service import LedgerService

logger = logging.getLogger(__name__)

SCRYPT_PARAMS = {"n": 16384, "r": 8, "p": 1}
REFERRAL_CODE_PREFIX = "OPAY-"
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
WELCOME_DESCRIPTION = "Welcome Bonus"

# Hashed against when the username is unknown so failed logins cost the same.
_DUMMY_SALT = "0" * 32


def generate_salt() -> str:
    return secrets.token_hex(16)


def hash_password(password: str, salt: str) -> str:
    return hashlib.scrypt(password.encode(), salt=salt.encode(), **SCRYPT_PARAMS).hex()


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password, salt), expected_hash)


class AuthService:
    def __init__(self, ledger: Optional[LedgerService] = None, config: Optional[WalletConfig] = None):
        self.ledger = ledger if ledger is not None else LedgerService()
        self.store = self.ledger.store
        self.config = config if config is not None else get_config()

    def signup(self, username: str, password: str, referral_code: Optional[str] = None) -> Account:
        """
        Create an account and pay its signup bonus.

        Usernames are taken verbatim everywhere, so surrounding whitespace is
        rejected rather than silently stripped. If a concurrent signup claims
        the same generated account number or referral code first, the whole
        signup is retried with fresh identifiers.
        """
        username = username or ""
        if not username.strip() or not password:
            raise ValidationError("Username and password are required.")
        if username != username.strip():
            raise ValidationError("Username must not start or end with whitespace.")

        code = (referral_code or "").strip()
        referrer_username = self.store.find_by_referral_code(code) if code else None

        salt = generate_salt()
        password_hash = hash_password(password, salt)

        for _ in range(self.config.account_number_attempts):
            try:
                account = self._create_account(username, password_hash, salt, referrer_username)
                break
            except IdentifierCollisionError as e:
                logger.warning("Signup identifier collision, retrying: %s", e, extra={"action": "signup", "user_id": username})
        else:
            raise KeyConflictError("Could not allocate a unique account number.")

        logger.info(
            "Created account %s", account.account_number,
            extra={"action": "signup", "user_id": username, "resource": referrer_username},
        )
        return account

    def _create_account(
        self, username: str, password_hash: str, salt: str, referrer_username: Optional[str]
    ) -> Account:
        usernames = [username] if referrer_username is None else [username, referrer_username]

        with self.store.locked(usernames) as snapshot:
            if username in snapshot:
                raise UsernameTakenError("Username already exists.")

            account = Account(
                username=username,
                password_hash=password_hash,
                password_salt=salt,
                account_number=self._generate_account_number(),
                referral_code=self._generate_referral_code(),
                balance=0,
            )

            referrer = snapshot.get(referrer_username) if referrer_username else None
            if referrer is not None:
                bonus = self.config.boosted_referral_bonus if referrer.has_cheat else self.config.referral_bonus
                self.ledger.credit(referrer, bonus, f"Referral Bonus for {username}")
                referrer.referrals += 1

            if referrer is not None and self.config.referral_credits_new_account:
                self.ledger.credit(account, bonus, f"Referral Bonus from {referrer.username}")
            elif self.config.welcome_bonus > 0:
                self.ledger.credit(account, self.config.welcome_bonus, WELCOME_DESCRIPTION)

            snapshot.add(account)

        return account

    def login(self, username: str, password: str) -> Account:
        account = self.store.get(username) if username else None
        if account is None:
            verify_password(password or "", _DUMMY_SALT, "")
            logger.warning("Login failed for unknown user", extra={"action": "login", "user_id": username})
            raise InvalidCredentialsError("Invalid credentials.")

        if not verify_password(password or "", account.password_salt, account.password_hash):
            logger.warning("Login failed: bad password", extra={"action": "login", "user_id": username})
            raise InvalidCredentialsError("Invalid credentials.")

        logger.info("Login succeeded", extra={"action": "login", "user_id": username})
        return account

    def _generate_account_number(self) -> str:
        for _ in range(self.config.account_number_attempts):
            candidate = str(1_000_000_000 + secrets.randbelow(9_000_000_000))
            if not self.store.account_number_taken(candidate):
                return candidate
        raise KeyConflictError("Could not allocate a unique account number.")

    def _generate_referral_code(self) -> str:
        for _ in range(self.config.account_number_attempts):
            suffix = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(8))
            candidate = f"{REFERRAL_CODE_PREFIX}{suffix}"
            if not self.store.referral_code_taken(candidate):
                return candidate
        raise KeyConflictError("Could not allocate a unique referral code.")
