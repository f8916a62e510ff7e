# a_users/session.py
import logging
import threading
from typing import Callable, List, Optional

from firebase_admin import auth as admin_auth
from google.cloud import firestore as _fs

from a_core.context import ClientContext
from .firebase_helpers import user_ref
from .presence import set_presence
from .profiles import UserProfile, get_profile

logger = logging.getLogger(__name__)


def register(db, email: str, password: str, display_name: str) -> UserProfile:
    """
    Create the auth account and its users/{uid} profile document.
    Auth-provider errors (duplicate email, weak password) propagate.
    """
    email = (email or "").strip().lower()
    record = admin_auth.create_user(email=email, password=password, display_name=display_name)

    user_ref(db, record.uid).set({
        "userId": record.uid,
        "displayName": display_name,
        "email": email,
        "photoURL": "",
        "isOnline": True,
        "lastSeen": _fs.SERVER_TIMESTAMP,
        "createdAt": _fs.SERVER_TIMESTAMP,
    })
    return get_profile(db, record.uid) or UserProfile(user_id=record.uid, display_name=display_name, email=email)


class AuthSession:
    """
    Maps auth-provider transitions onto a local ClientContext and presence.

    Holds who is signed in on this device; core operations still take the
    context explicitly via `session.context`.
    """

    def __init__(self, db, device):
        self.db = db
        self.device = device
        self._uid: Optional[str] = None
        self._listeners: List[Callable[[Optional[str]], None]] = []
        self._lock = threading.Lock()

    @property
    def context(self) -> ClientContext:
        return ClientContext(uid=self._uid, device=self.device)

    def on_auth_state_changed(self, callback: Callable[[Optional[str]], None]) -> Callable[[], None]:
        """Register a sign-in/sign-out listener; fires immediately with the current uid."""
        with self._lock:
            self._listeners.append(callback)
        callback(self._uid)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _notify(self):
        with self._lock:
            listeners = list(self._listeners)
        for cb in listeners:
            try:
                cb(self._uid)
            except Exception:
                logger.exception("auth state listener failed")

    def sign_in(self, id_token: str) -> ClientContext:
        """Verify a Firebase ID token and start a session for its uid."""
        decoded = admin_auth.verify_id_token(id_token, check_revoked=True)
        self._uid = decoded["uid"]
        set_presence(self.db, self._uid, True)
        self._notify()
        return self.context

    def sign_out(self) -> None:
        """Always completes; a failed offline update does not block sign-out."""
        uid = self._uid
        if uid:
            set_presence(self.db, uid, False)
        self._uid = None
        self._notify()
