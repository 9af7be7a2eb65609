"""
Session store: the signed-in identity of one client.

Also holds the profile lookups shared by the other services, since the
`users` collection mirrors the identity provider's accounts.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from database import DocumentStore, Subscription, to_public
from errors import AuthenticationError
from identity import IdentityProvider, normalize_email
from schemas import AI_ASSISTANT_ID, User, UserInfo

logger = logging.getLogger(__name__)

UNKNOWN_USER = "Unknown User"

ASSISTANT_INFO = UserInfo(id=AI_ASSISTANT_ID, display_name="Ed AI", email="ai@assistant.com", role="ai")


def load_profile(store: DocumentStore, user_id: str) -> User:
    doc = store.get_document("users", user_id)
    if not doc:
        # an authenticated principal without a profile is an inconsistency
        logger.error("No profile found for principal %s", user_id)
        raise AuthenticationError("User data not found")
    return User(**to_public(doc))


def unknown_user(user_id: str) -> UserInfo:
    return UserInfo(id=user_id, display_name=UNKNOWN_USER)


def lookup_users(store: DocumentStore, user_ids: Iterable[str]) -> Dict[str, UserInfo]:
    """Display info for every id; ids without a profile map to "Unknown User"."""
    ids = [uid for uid in set(user_ids) if uid]
    info: Dict[str, UserInfo] = {}
    if AI_ASSISTANT_ID in ids:
        info[AI_ASSISTANT_ID] = ASSISTANT_INFO
        ids.remove(AI_ASSISTANT_ID)
    if ids:
        for doc in store.get_documents("users", {"_id": {"$in": ids}}):
            info[str(doc["_id"])] = UserInfo(
                id=str(doc["_id"]),
                display_name=doc.get("display_name") or UNKNOWN_USER,
                email=doc.get("email", ""),
                role=doc.get("role", "student"),
                photo_url=doc.get("photo_url"),
            )
    for uid in ids:
        info.setdefault(uid, unknown_user(uid))
    return info


def register_user(identity: IdentityProvider, email: str, password: str, display_name: str,
                  role: str, user_id: Optional[str] = None, **profile) -> User:
    """Create the identity account and its mirrored profile."""
    uid = identity.create_account(email, password, account_id=user_id)
    identity.store.create_document("users", {
        "email": normalize_email(email),
        "display_name": display_name,
        "role": role,
        "photo_url": None,
        **profile,
    }, doc_id=uid)
    logger.info("Registered %s %s", role, uid)
    return load_profile(identity.store, uid)


class SessionStore:
    """Current identity plus a loading flag, kept in sync with the identity provider.

    The store watches its own session record, so a logout from another
    client (or an administrative wipe) drops the identity here too.
    """

    def __init__(self, identity: IdentityProvider, store: DocumentStore):
        self.identity = identity
        self.store = store
        self.current_user: Optional[User] = None
        self.token: Optional[str] = None
        self.loading = False
        self._watch: Optional[Subscription] = None
        self._listeners: List[Callable[[Optional[User]], None]] = []

    def sign_in(self, email: str, password: str) -> User:
        self.loading = True
        try:
            principal = self.identity.authenticate(email, password)
            user = load_profile(self.store, principal)
            token = self.identity.issue_session(principal)
        finally:
            self.loading = False
        self._attach(token, user)
        self.store.update_document("users", user.id, {"last_active": self.store.now()})
        logger.info("Signed in %s as %s", user.id, user.role)
        return user

    def restore(self, token: str) -> Optional[User]:
        """Resume an existing session; None when the token is no longer valid."""
        self.loading = True
        try:
            principal = self.identity.resolve(token)
            user = load_profile(self.store, principal) if principal else None
        finally:
            self.loading = False
        if user is not None:
            self._attach(token, user)
        return user

    def sign_out(self):
        if self.token:
            self.identity.revoke(self.token)
        self._drop()

    def release(self):
        """Stop tracking the session without revoking it."""
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        self._listeners.clear()

    def subscribe(self, listener: Callable[[Optional[User]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _attach(self, token: str, user: User):
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        self.token = token
        self.current_user = user
        self._notify()
        watch = self.identity.on_session_change(token, self._on_session_change)
        if self.token == token:
            self._watch = watch
        else:
            # the session vanished during the initial push
            watch.cancel()

    def _on_session_change(self, principal: Optional[str]):
        if principal is None:
            if self.current_user is not None:
                logger.info("Session for %s ended elsewhere", self.current_user.id)
            self._drop()
        elif self.current_user is None or principal != self.current_user.id:
            self.current_user = load_profile(self.store, principal)
            self._notify()

    def _drop(self):
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        had_user = self.current_user is not None
        self.token = None
        self.current_user = None
        if had_user:
            self._notify()

    def _notify(self):
        for listener in list(self._listeners):
            listener(self.current_user)
