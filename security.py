"""
Auth gate: password hashing, JWTs and login lockout.

Login failures are counted per admin account, whether it was addressed by
username or email; names that match no account are counted by the typed
name. The fifth failure within LOCKOUT_MINUTES locks the key for
LOCKOUT_MINUTES, and while locked every attempt is refused before the
password is checked.
Counters live in process memory, so a restart clears them.
"""
import hmac
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from database import create_document, to_object_id, utcnow
from errors import Forbidden, RateLimited, Unauthorized, ValidationError
from schemas import AdminUser
from validation import normalize_email

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

UNSUBSCRIBE_PURPOSE = "unsubscribe"
INVALID_CREDENTIALS = "Neteisingi prisijungimo duomenys"
INVALID_TOKEN = "Netinkamas arba pasibaigęs prisijungimo raktas"


# ---------------------- Password helpers ----------------------
def verify_password(plain_password, hashed_password):
    if not plain_password or not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


@lru_cache(maxsize=1)
def _dummy_hash():
    return pwd_context.hash("not-a-real-password")


# ---------------------- Login lockout ----------------------
class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOCKED = "locked"


@dataclass
class _Attempts:
    first_failure: float
    failed: int = 0
    locked_until: Optional[float] = None


class LoginGuard:
    """
    Failure counters per key. A counter lives for `lockout_seconds` from its
    first failure; reaching `max_attempts` inside that window locks the key
    for `lockout_seconds`.
    """

    def __init__(self, max_attempts: int = 5, lockout_seconds: float = 15 * 60,
                 clock: Callable[[], float] = time.monotonic, max_entries: int = 10000):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.clock = clock
        self.max_entries = max_entries
        self._attempts: Dict[str, _Attempts] = {}
        self._lock = threading.Lock()

    def _expired(self, entry: _Attempts, now: float) -> bool:
        if entry.locked_until is not None:
            return now >= entry.locked_until
        return now - entry.first_failure >= self.lockout_seconds

    def _entry(self, key: str) -> Optional[_Attempts]:
        entry = self._attempts.get(key)
        if entry and self._expired(entry, self.clock()):
            # Lock or counting window over: start again from zero
            del self._attempts[key]
            return None
        return entry

    def _prune(self) -> None:
        now = self.clock()
        stale = [k for k, entry in self._attempts.items() if self._expired(entry, now)]
        for k in stale:
            del self._attempts[k]

    def state(self, key: str) -> AuthState:
        with self._lock:
            entry = self._entry(key)
        if entry and entry.locked_until is not None:
            return AuthState.LOCKED
        return AuthState.UNAUTHENTICATED

    def remaining_lockout(self, key: str) -> float:
        with self._lock:
            entry = self._entry(key)
            if not entry or entry.locked_until is None:
                return 0
            return max(entry.locked_until - self.clock(), 0)

    def failed_attempts(self, key: str) -> int:
        with self._lock:
            entry = self._entry(key)
            return entry.failed if entry else 0

    def tracked(self) -> int:
        with self._lock:
            return len(self._attempts)

    def record_failure(self, key: str) -> int:
        with self._lock:
            entry = self._entry(key)
            if entry is None:
                if len(self._attempts) >= self.max_entries:
                    self._prune()
                entry = self._attempts[key] = _Attempts(first_failure=self.clock())
            entry.failed += 1
            if entry.failed >= self.max_attempts:
                entry.locked_until = self.clock() + self.lockout_seconds
            return entry.failed

    def record_success(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)


# ---------------------- Auth gate ----------------------
class AuthGate:
    def __init__(self, app_config, guard: LoginGuard, db):
        self.config = app_config
        self.guard = guard
        self.db = db

    @property
    def users(self):
        return self.db["adminuser"]

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=self.config.ACCESS_TOKEN_EXPIRE_MINUTES))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, self.config.JWT_SECRET, algorithm=self.config.JWT_ALGORITHM)

    def _decode(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, self.config.JWT_SECRET, algorithms=[self.config.JWT_ALGORITHM])
        except JWTError:
            return None

    @staticmethod
    def _user_view(user: dict) -> dict:
        return {
            "id": str(user["_id"]),
            "username": user.get("username"),
            "email": user.get("email"),
            "role": user.get("role", "admin"),
        }

    def _find_user(self, key: str) -> Optional[dict]:
        return self.users.find_one({"$or": [{"username": key}, {"email": key}]})

    @staticmethod
    def _account_key(user: dict) -> str:
        return f"admin:{user['_id']}"

    def guard_key(self, identity: Optional[str]) -> str:
        """Lockout key for an identity: the account when it exists, else the typed name."""
        key = (identity or "").strip().lower()
        user = self._find_user(key) if key else None
        return self._account_key(user) if user else key

    def login(self, identity: Optional[str], password: Optional[str]) -> dict:
        key = (identity or "").strip().lower()
        if not key or not password:
            raise ValidationError(["Įveskite prisijungimo vardą ir slaptažodį"])

        # Username and email share one counter once they resolve to an account
        user = self._find_user(key)
        guard_key = self._account_key(user) if user else key
        remaining = max(self.guard.remaining_lockout(guard_key), self.guard.remaining_lockout(key))
        if remaining:
            logger.warning(f"Login attempt for locked identity {key!r}")
            raise RateLimited(
                f"Per daug nesėkmingų bandymų. Bandykite po {math.ceil(remaining / 60)} min.",
                retry_after=math.ceil(remaining),
            )

        if user:
            valid = verify_password(password, user.get("password_hash"))
        else:
            # Unknown names pay the same bcrypt cost as real accounts
            pwd_context.verify(password, _dummy_hash())
            valid = False

        if not valid:
            attempts = self.guard.record_failure(guard_key)
            logger.warning(f"Failed login for {key!r} ({attempts}/{self.guard.max_attempts})")
            if self.guard.state(guard_key) is AuthState.LOCKED:
                logger.warning(f"Identity {key!r} locked for {self.guard.lockout_seconds} seconds")
                raise RateLimited(
                    f"Per daug nesėkmingų bandymų. Paskyra užblokuota {self.config.LOCKOUT_MINUTES} min.",
                    retry_after=math.ceil(self.guard.lockout_seconds),
                )
            raise Unauthorized(INVALID_CREDENTIALS)

        self.guard.record_success(guard_key)
        self.users.update_one({"_id": user["_id"]}, {"$set": {"last_login": utcnow()}})
        token = self.create_access_token({"sub": str(user["_id"]), "role": user.get("role", "admin")})
        logger.info(f"Admin {user.get('username')!r} logged in")
        return {"token": token, "user": self._user_view(user)}

    def verify(self, token: Optional[str]) -> dict:
        payload = self._decode(token) if token else None
        if not payload or payload.get("purpose"):
            raise Unauthorized(INVALID_TOKEN)
        oid = to_object_id(payload.get("sub"))
        user = self.users.find_one({"_id": oid}) if oid else None
        if not user or user.get("role") != "admin":
            raise Unauthorized(INVALID_TOKEN)
        return self._user_view(user)

    # ---------------------- Unsubscribe links ----------------------
    def unsubscribe_token(self, email: str) -> str:
        return jwt.encode({"sub": email, "purpose": UNSUBSCRIBE_PURPOSE},
                          self.config.JWT_SECRET, algorithm=self.config.JWT_ALGORITHM)

    def verify_unsubscribe_token(self, email, token) -> bool:
        payload = self._decode(token) if token else None
        if not payload or payload.get("purpose") != UNSUBSCRIBE_PURPOSE:
            return False
        address = normalize_email(email)
        return bool(address) and payload.get("sub") == address

    # ---------------------- One-time setup ----------------------
    def admin_exists(self) -> bool:
        return self.users.count_documents({"role": "admin"}) > 0

    def setup_admin(self, setup_key, username, email, password) -> dict:
        expected = self.config.ADMIN_SETUP_KEY
        if not expected:
            raise Forbidden("Administratoriaus kūrimas išjungtas")
        if not setup_key or not hmac.compare_digest(str(setup_key).encode(), expected.encode()):
            logger.warning("Admin setup attempted with a wrong setup key")
            raise Forbidden("Neteisingas nustatymo raktas")
        if self.admin_exists():
            raise Forbidden("Administratorius jau sukurtas")

        errors = []
        username = (username or "").strip().lower()
        if len(username) < 3:
            errors.append("Prisijungimo vardas turi būti bent 3 simbolių")
        address = normalize_email(email)
        if not address:
            errors.append("Neteisingas el. pašto adresas")
        if not password or len(password) < 8:
            errors.append("Slaptažodis turi būti bent 8 simbolių")
        if errors:
            raise ValidationError(errors)

        admin = AdminUser(username=username, email=address, password_hash=get_password_hash(password))
        admin_id = create_document("adminuser", admin, database=self.db)
        logger.info(f"Admin user {username!r} created")
        return {"id": admin_id, "username": username, "email": address, "role": "admin"}
