# a_users/presence.py
import logging
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.utils import timezone
from google.api_core import exceptions as gexc
from google.cloud import firestore as _fs

from a_core.results import OpResult, Rejection
from .firebase_helpers import user_ref

logger = logging.getLogger(__name__)


def set_presence(db, uid: str, online: bool) -> bool:
    """
    Best-effort: flip users/{uid}.isOnline and bump lastSeen.
    Presence is non-critical, so store failures are logged, not raised.
    """
    if not uid:
        return False
    try:
        user_ref(db, uid).set(
            {"isOnline": online, "lastSeen": _fs.SERVER_TIMESTAMP},
            merge=True,
        )
        return True
    except gexc.GoogleAPICallError as e:
        logger.warning("set_presence(%s, online=%s) failed: %s", uid, online, e)
        return False


def ping_presence(db, uid: str) -> bool:
    """Heartbeat from an active client; keeps lastSeen inside the online window."""
    return set_presence(db, uid, True)


def is_effectively_online(profile, now=None) -> bool:
    """
    A user counts as online when their flag is set and the last heartbeat
    is recent enough. Clients that crashed never flip the flag back.
    """
    if not profile or not profile.is_online:
        return False
    if not profile.last_seen:
        return True
    window = getattr(settings, "PRESENCE_ONLINE_WINDOW_SECONDS", 120)
    now = now or timezone.now()
    return (now - profile.last_seen) <= timedelta(seconds=window)


# -------------------------- Typing --------------------------

def set_typing(db, ctx, chat_id: str, is_typing: bool) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    try:
        db.collection("chats").document(chat_id).update({f"typingUsers.{ctx.uid}": bool(is_typing)})
    except gexc.NotFound:
        return OpResult.fail(Rejection.NOT_FOUND, "Chat not found")
    return OpResult.ok()


def typing_users(typing_map: Optional[dict], viewer_uid: Optional[str]) -> List[str]:
    return sorted(uid for uid, flag in (typing_map or {}).items() if flag and uid != viewer_uid)
