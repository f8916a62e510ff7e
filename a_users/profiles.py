# a_users/profiles.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from django.conf import settings
from firebase_admin import auth as admin_auth
from google.cloud import firestore as _fs

from a_core.results import OpResult, Rejection
from .firebase_helpers import get_profile_dict, safe_make_aware, user_ref

logger = logging.getLogger(__name__)

PRIVACY_KEYS = ("showLastSeen", "showPhoto", "showOnline")
PRIVACY_VALUES = ("everyone", "nobody")


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    display_name: str = "User"
    email: str = ""
    photo_url: str = ""
    is_online: bool = False
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None
    public_key: Optional[str] = None
    blocked_users: FrozenSet[str] = frozenset()
    privacy: Dict[str, str] = field(default_factory=dict)

    @property
    def has_e2ee(self) -> bool:
        # No published key means the user never enabled E2EE
        return bool(self.public_key)

    def privacy_for(self, key: str) -> str:
        value = self.privacy.get(key)
        return value if value in PRIVACY_VALUES else "everyone"

    def as_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "email": self.email,
            "photoURL": self.photo_url,
            "isOnline": self.is_online,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "hasE2EE": self.has_e2ee,
        }


def profile_from_doc(uid: str, data: dict) -> UserProfile:
    data = data or {}
    return UserProfile(
        user_id=uid,
        display_name=data.get("displayName") or "User",
        email=data.get("email") or "",
        photo_url=data.get("photoURL") or "",
        is_online=bool(data.get("isOnline")),
        last_seen=safe_make_aware(data.get("lastSeen")),
        created_at=safe_make_aware(data.get("createdAt")),
        public_key=data.get("publicKey") or None,
        blocked_users=frozenset(data.get("blockedUsers") or []),
        privacy=dict(data.get("privacySettings") or {}),
    )


def get_profile(db, uid: str) -> Optional[UserProfile]:
    if not uid:
        return None
    data = get_profile_dict(db, uid)
    if not data:
        return None
    return profile_from_doc(uid, data)


def visible_profile(profile: UserProfile, viewer_uid: Optional[str]) -> UserProfile:
    """
    Apply `profile`'s privacy settings for someone else looking at it.
    Owners always see their own profile unchanged.
    """
    if viewer_uid == profile.user_id:
        return profile
    changes = {"blocked_users": frozenset(), "privacy": {}}
    if profile.privacy_for("showOnline") == "nobody":
        changes["is_online"] = False
    if profile.privacy_for("showLastSeen") == "nobody":
        changes["last_seen"] = None
    if profile.privacy_for("showPhoto") == "nobody":
        changes["photo_url"] = ""
    return replace(profile, **changes)


def is_blocked_between(a: Optional[UserProfile], b: Optional[UserProfile]) -> bool:
    if not a or not b:
        return False
    return b.user_id in a.blocked_users or a.user_id in b.blocked_users


# -------------------------- Search --------------------------

def search_users(db, ctx, term: str) -> List[UserProfile]:
    """
    Prefix match on email, capped. Not a full-text search.
    """
    term = (term or "").strip()
    if not term or not ctx.is_authenticated:
        return []
    cap = getattr(settings, "USER_SEARCH_LIMIT", 5)
    q = (
        db.collection("users")
        .where("email", ">=", term)
        .where("email", "<=", term + "\uf8ff")
        .limit(cap + 1)
    )
    out = []
    for snap in q.stream():
        if snap.id == ctx.uid:
            continue
        out.append(visible_profile(profile_from_doc(snap.id, snap.to_dict() or {}), ctx.uid))
    return out[:cap]


# -------------------------- Profile updates --------------------------

def update_display_name(db, ctx, display_name: str) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    display_name = (display_name or "").strip()
    if not display_name:
        return OpResult.fail(Rejection.EMPTY_MESSAGE, "Display name cannot be empty")

    admin_auth.update_user(ctx.uid, display_name=display_name)
    user_ref(db, ctx.uid).set({"displayName": display_name}, merge=True)
    return OpResult.ok()


def update_privacy_settings(db, ctx, privacy: dict) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    cleaned = {
        key: value
        for key, value in (privacy or {}).items()
        if key in PRIVACY_KEYS and value in PRIVACY_VALUES
    }
    if not cleaned:
        return OpResult.ok()
    user_ref(db, ctx.uid).update({f"privacySettings.{key}": value for key, value in cleaned.items()})
    return OpResult.ok()


# -------------------------- Blocking & reports --------------------------

def set_blocked(db, ctx, other_uid: str, block: bool) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    if not other_uid or other_uid == ctx.uid:
        return OpResult.fail(Rejection.NOT_FOUND, "User not found")
    ref = user_ref(db, ctx.uid)
    if not ref.get().exists:
        return OpResult.fail(Rejection.NOT_FOUND, "User not found")
    change = _fs.ArrayUnion([other_uid]) if block else _fs.ArrayRemove([other_uid])
    ref.update({"blockedUsers": change})
    logger.info("user %s %s %s", ctx.uid, "blocked" if block else "unblocked", other_uid)
    return OpResult.ok()


def get_blocked_users(db, ctx) -> List[UserProfile]:
    if not ctx.is_authenticated:
        return []
    me = get_profile(db, ctx.uid)
    if not me:
        return []
    out = []
    for uid in sorted(me.blocked_users):
        profile = get_profile(db, uid)
        if profile:
            out.append(visible_profile(profile, ctx.uid))
    return out


def report_user(db, ctx, user_id: str, reason: str, description: str = "") -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    ref = db.collection("reports").document()
    ref.set({
        "reportedUserId": user_id,
        "reporterId": ctx.uid,
        "reason": reason,
        "description": description or "",
        "createdAt": _fs.SERVER_TIMESTAMP,
        "status": "pending",
    })
    return OpResult.ok(ref.id)
