import logging
from typing import Optional

from .models import DeviceValue

logger = logging.getLogger(__name__)

DRAFT_KEY_PREFIX = "chat_draft_"


class DeviceStore:
    """
    Synchronous key/value scratch space on this device.

    Backed by the local database; never synced, never readable by other
    devices. Used for private-key custody and message drafts only.
    """

    def get(self, key: str) -> Optional[str]:
        row = DeviceValue.objects.filter(key=key).only("value").first()
        return row.value if row else None

    def set(self, key: str, value: str) -> None:
        DeviceValue.objects.update_or_create(key=key, defaults={"value": value})

    def remove(self, key: str) -> None:
        DeviceValue.objects.filter(key=key).delete()


# -------------------------- Drafts --------------------------

def _draft_key(chat_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}{chat_id}"


def load_draft(device, chat_id: str) -> str:
    if not chat_id:
        return ""
    return device.get(_draft_key(chat_id)) or ""


def save_draft(device, chat_id: str, text: str) -> None:
    """Persist a draft; blank text removes it."""
    if not chat_id:
        return
    if (text or "").strip():
        device.set(_draft_key(chat_id), text)
    else:
        device.remove(_draft_key(chat_id))


def clear_draft(device, chat_id: str) -> None:
    if not chat_id:
        return
    device.remove(_draft_key(chat_id))
