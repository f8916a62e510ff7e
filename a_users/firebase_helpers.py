from datetime import timezone as dt_timezone

from django.utils import timezone


def user_ref(db, uid: str):
    return db.collection("users").document(uid)


def normalize_user_payload_to_displayName(payload: dict) -> dict:
    """
    Normalize user profile payload to use displayName (camelCase) only.

    Older clients wrote `displayname`; it is folded into `displayName` and
    never returned.
    """
    data = dict(payload or {})
    dn = (data.get("displayName") or data.get("displayname") or "").strip()
    if dn:
        data["displayName"] = dn
    data.pop("displayname", None)
    return data


def get_profile_dict(db, uid: str) -> dict:
    """Read users/{uid} as a normalized dict ({} when missing)."""
    snap = user_ref(db, uid).get()
    if not snap.exists:
        return {}
    return normalize_user_payload_to_displayName(snap.to_dict() or {})


def safe_make_aware(dt):
    """Make Firestore timestamps timezone-aware if needed."""
    if not dt:
        return None
    if timezone.is_naive(dt):
        return timezone.make_aware(dt, dt_timezone.utc)
    return dt
