"""Email/password identity provider backed by the `accounts` and `sessions` collections."""
import hashlib
import logging
import secrets
import threading
from collections import deque
from datetime import timedelta
from typing import Callable, Deque, Dict, Optional

import config
from database import DocumentStore, Subscription
from errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)


def hash_password(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityProvider:
    def __init__(self, store: DocumentStore,
                 session_ttl: timedelta = timedelta(days=config.SESSION_TTL_DAYS),
                 max_attempts: int = config.LOGIN_MAX_ATTEMPTS,
                 window: timedelta = timedelta(seconds=config.LOGIN_WINDOW_SECONDS)):
        self.store = store
        self.session_ttl = session_ttl
        self.max_attempts = max_attempts
        self.window = window
        self._failures: Dict[str, Deque] = {}
        self._lock = threading.Lock()

    def create_account(self, email: str, password: str, account_id: Optional[str] = None) -> str:
        email = normalize_email(email)
        if self.store.find_one("accounts", {"email": email}):
            raise ValidationError("Email already registered")
        return self.store.create_document(
            "accounts", {"email": email, "password_hash": hash_password(password)}, doc_id=account_id
        )

    def delete_account(self, account_id: str) -> bool:
        self.store.delete_documents("sessions", {"user_id": account_id})
        return self.store.delete_document("accounts", account_id)

    def authenticate(self, email: str, password: str) -> str:
        """Return the principal id for valid credentials."""
        email = normalize_email(email)
        self._check_rate_limit(email)
        account = self.store.find_one("accounts", {"email": email})
        if not account or account.get("password_hash") != hash_password(password):
            self._record_failure(email)
            logger.info("Rejected sign-in for %s", email)
            raise AuthenticationError("Invalid email or password")
        with self._lock:
            self._failures.pop(email, None)
        return str(account["_id"])

    def _check_rate_limit(self, email: str):
        with self._lock:
            attempts = self._failures.get(email)
            if not attempts:
                return
            cutoff = self.store.now() - self.window
            while attempts and attempts[0] < cutoff:
                attempts.popleft()
            if not attempts:
                del self._failures[email]
                return
            if len(attempts) >= self.max_attempts:
                logger.warning("Sign-in for %s is rate limited", email)
                raise AuthenticationError("Too many failed attempts. Please try again later")

    def _record_failure(self, email: str):
        with self._lock:
            self._failures.setdefault(email, deque()).append(self.store.now())

    # -----------------------------
    # Sessions
    # -----------------------------
    def issue_session(self, principal_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self.store.create_document("sessions", {
            "user_id": principal_id,
            "token": token,
            "expires_at": self.store.now() + self.session_ttl,
        })
        return token

    def _live(self, session: Optional[dict]) -> Optional[str]:
        if not session:
            return None
        if session["expires_at"] < self.store.now():
            return None
        return str(session["user_id"])

    def resolve(self, token: str) -> Optional[str]:
        """Principal behind `token`, or None if it is unknown or expired."""
        if not token:
            return None
        session = self.store.find_one("sessions", {"token": token})
        principal = self._live(session)
        if session and principal is None:
            logger.info("Session for %s expired", session["user_id"])
            self.revoke(token)
        return principal

    def revoke(self, token: str) -> bool:
        return self.store.delete_documents("sessions", {"token": token}) > 0

    def revoke_all(self, principal_id: str) -> int:
        return self.store.delete_documents("sessions", {"user_id": principal_id})

    def on_session_change(self, token: str, callback: Callable[[Optional[str]], None]) -> Subscription:
        """Call `callback` with the principal (or None) whenever the session record changes."""
        return self.store.watch(
            "sessions", {"token": token}, lambda docs: callback(self._live(docs[0] if docs else None))
        )
