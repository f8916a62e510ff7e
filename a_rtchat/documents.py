# a_rtchat/documents.py
"""
Typed views over the raw Firestore chat and message documents.

Per-user state lives in maps keyed by uid on the chat document
(`unreadCounts`, `archivedStatus`, `mutedStatus`, `pinnedStatus`,
`deletedBy`). A missing entry always reads as the neutral default.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from google.cloud import firestore as _fs

from a_users.firebase_helpers import safe_make_aware

GROUP_RECEIVER = "group"
TOMBSTONE_TEXT = "Message deleted"
ENCRYPTED_PREVIEW = "🔒 Encrypted message"
UNDECRYPTABLE_TEXT = "🔒 Encrypted message (keys missing or invalid)"
EXPIRED_PREVIEW = "Message expired"


class ChatType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


STATUS_ORDER = {
    MessageStatus.SENDING.value: 0,
    MessageStatus.SENT.value: 1,
    MessageStatus.DELIVERED.value: 2,
    MessageStatus.READ.value: 3,
}

# map name -> neutral value for a participant
MEMBER_MAPS = {
    "unreadCounts": 0,
    "archivedStatus": False,
    "mutedStatus": False,
    "pinnedStatus": False,
}


# -------------------------- per-user maps --------------------------

@dataclass(frozen=True)
class MemberState:
    unread: int = 0
    archived: bool = False
    muted: bool = False
    pinned: bool = False
    deleted: bool = False


def member_state(data: dict, uid: str) -> MemberState:
    def _entry(map_name, default):
        value = (data.get(map_name) or {}).get(uid)
        return default if value is None else value

    try:
        unread = max(0, int(_entry("unreadCounts", 0)))
    except (TypeError, ValueError):
        unread = 0
    return MemberState(
        unread=unread,
        archived=bool(_entry("archivedStatus", False)),
        muted=bool(_entry("mutedStatus", False)),
        pinned=bool(_entry("pinnedStatus", False)),
        deleted=bool(_entry("deletedBy", False)),
    )


def seed_member_maps(uids: Iterable[str]) -> dict:
    """Whole-map payload for a chat being created."""
    uids = list(uids)
    return {name: {uid: default for uid in uids} for name, default in MEMBER_MAPS.items()}


def member_defaults(uid: str) -> dict:
    """Field-path updates giving a new participant neutral entries."""
    return {f"{name}.{uid}": default for name, default in MEMBER_MAPS.items()}


def retire_member(uid: str) -> dict:
    """Field-path updates dropping a former participant's entries."""
    paths = list(MEMBER_MAPS) + ["typingUsers"]
    return {f"{name}.{uid}": _fs.DELETE_FIELD for name in paths}


# -------------------------- chats --------------------------

@dataclass(frozen=True)
class ChatDoc:
    chat_id: str
    type: str
    participants: Tuple[str, ...]
    admins: Tuple[str, ...] = ()
    name: Optional[str] = None
    description: Optional[str] = None
    last_message: str = ""
    last_message_at: Optional[datetime] = None
    last_message_sender: str = ""
    last_message_id: Optional[str] = None
    last_message_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    typing: Dict[str, bool] = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def is_group(self) -> bool:
        return self.type == ChatType.GROUP.value

    def others(self, uid: str) -> List[str]:
        return [p for p in self.participants if p != uid]

    def state_for(self, uid: str) -> MemberState:
        return member_state(self.raw, uid)

    def preview(self, now: datetime) -> str:
        """The last-message preview, hidden once that message self-destructs."""
        if self.last_message_expires_at is not None and self.last_message_expires_at <= now:
            return EXPIRED_PREVIEW
        return self.last_message


def chat_from_dict(chat_id: str, data: dict) -> ChatDoc:
    data = data or {}
    return ChatDoc(
        chat_id=chat_id,
        type=data.get("type") or ChatType.DIRECT.value,
        participants=tuple(data.get("participants") or ()),
        admins=tuple(data.get("admins") or ()),
        name=data.get("name"),
        description=data.get("description"),
        last_message=data.get("lastMessage") or "",
        last_message_at=safe_make_aware(data.get("lastMessageAt")),
        last_message_sender=data.get("lastMessageSender") or "",
        last_message_id=data.get("lastMessageId"),
        last_message_expires_at=safe_make_aware(data.get("lastMessageExpiresAt")),
        created_at=safe_make_aware(data.get("createdAt")),
        typing=dict(data.get("typingUsers") or {}),
        raw=data,
    )


def chat_from_snapshot(snap) -> ChatDoc:
    return chat_from_dict(snap.id, snap.to_dict() or {})


# -------------------------- messages --------------------------

@dataclass(frozen=True)
class ReplySnapshot:
    """Denormalized copy of the replied-to message, taken at send time."""

    message_id: str
    text: str
    sender_display_name: str

    def as_dict(self) -> dict:
        return {
            "messageId": self.message_id,
            "text": self.text,
            "senderDisplayName": self.sender_display_name,
        }

    @classmethod
    def from_dict(cls, data) -> Optional["ReplySnapshot"]:
        if isinstance(data, ReplySnapshot):
            return data
        if not isinstance(data, Mapping) or not data.get("messageId"):
            return None
        return cls(
            message_id=data["messageId"],
            text=data.get("text") or "",
            sender_display_name=data.get("senderDisplayName") or "",
        )


@dataclass(frozen=True)
class MessageDoc:
    message_id: str
    text: str
    sender_id: str
    receiver_id: str
    created_at: Optional[datetime] = None
    status: str = MessageStatus.SENT.value
    reply_to: Optional[ReplySnapshot] = None
    reactions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    is_pinned: bool = False
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    forwarded_from: Optional[str] = None
    is_encrypted: bool = False
    iv: Optional[str] = None
    sender_public_key: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def message_from_dict(message_id: str, data: dict) -> MessageDoc:
    data = data or {}
    reactions = {
        emoji: tuple(users)
        for emoji, users in (data.get("reactions") or {}).items()
        if users
    }
    return MessageDoc(
        message_id=message_id,
        text=data.get("text") or "",
        sender_id=data.get("senderId") or "",
        receiver_id=data.get("receiverId") or "",
        created_at=safe_make_aware(data.get("createdAt")),
        status=data.get("status") or MessageStatus.SENT.value,
        reply_to=ReplySnapshot.from_dict(data.get("replyTo")),
        reactions=reactions,
        is_pinned=bool(data.get("isPinned")),
        is_edited=bool(data.get("isEdited")),
        edited_at=safe_make_aware(data.get("editedAt")),
        deleted_at=safe_make_aware(data.get("deletedAt")),
        forwarded_from=data.get("forwardedFrom"),
        is_encrypted=bool(data.get("isEncrypted")),
        iv=data.get("iv"),
        sender_public_key=data.get("senderPublicKey"),
        expires_at=safe_make_aware(data.get("expiresAt")),
    )


def message_from_snapshot(snap) -> MessageDoc:
    return message_from_dict(snap.id, snap.to_dict() or {})
