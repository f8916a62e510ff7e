# a_e2ee/policy.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from django.conf import settings

from .crypto import has_local_key


@dataclass(frozen=True)
class EncryptionDecision:
    encrypt: bool
    reason: str = ""
    receiver_public_key: Optional[str] = None
    sender_public_key: Optional[str] = None


def encryption_required() -> bool:
    return bool(getattr(settings, "E2EE_REQUIRE_ENCRYPTION", False))


def resolve_encryption(chat_type: str, sender, receiver, device) -> EncryptionDecision:
    """
    Direct chats only, and only when both sides published a key and this
    device holds the sender's private half.
    """
    if chat_type != "direct":
        return EncryptionDecision(False, "group chats are not end-to-end encrypted")
    if not sender or not sender.public_key:
        return EncryptionDecision(False, "sender has not enabled E2EE")
    if not receiver or not receiver.public_key:
        return EncryptionDecision(False, "receiver has not enabled E2EE")
    if not has_local_key(device, sender.user_id):
        return EncryptionDecision(False, "no local key material")
    return EncryptionDecision(
        True,
        receiver_public_key=receiver.public_key,
        sender_public_key=sender.public_key,
    )
