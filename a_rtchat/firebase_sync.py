# a_rtchat/firebase_sync.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from django.utils import timezone

from a_e2ee.crypto import E2EEError, decrypt_text
from a_users.presence import typing_users
from a_users.profiles import UserProfile, get_profile, is_blocked_between, visible_profile

from .documents import (
    TOMBSTONE_TEXT,
    UNDECRYPTABLE_TEXT,
    MemberState,
    MessageDoc,
    ReplySnapshot,
    chat_from_dict,
    message_from_snapshot,
)
from .service import load_chat, messages_ref

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)


# -------------------------- Views handed to the UI --------------------------

@dataclass(frozen=True)
class ChatView:
    chat_id: str
    type: str
    participants: Tuple[str, ...]
    admins: Tuple[str, ...] = ()
    name: Optional[str] = None
    description: Optional[str] = None
    last_message: str = ""
    last_message_at: Optional[datetime] = None
    last_message_sender: str = ""
    created_at: Optional[datetime] = None
    state: MemberState = field(default_factory=MemberState)
    other_user: Optional[UserProfile] = None
    members: Tuple[UserProfile, ...] = ()
    typing: Tuple[str, ...] = ()
    is_blocked: bool = False

    def as_dict(self) -> dict:
        return {
            "chatId": self.chat_id,
            "type": self.type,
            "participants": list(self.participants),
            "admins": list(self.admins),
            "name": self.name,
            "description": self.description,
            "lastMessage": self.last_message,
            "lastMessageAt": self.last_message_at.isoformat() if self.last_message_at else None,
            "lastMessageSender": self.last_message_sender,
            "unreadCount": self.state.unread,
            "isArchived": self.state.archived,
            "isMuted": self.state.muted,
            "isPinned": self.state.pinned,
            "otherUser": self.other_user.as_dict() if self.other_user else None,
            "members": [m.as_dict() for m in self.members],
            "typingUsers": list(self.typing),
            "isBlocked": self.is_blocked,
        }


@dataclass(frozen=True)
class MessageView:
    message_id: str
    text: str
    sender_id: str
    receiver_id: str
    created_at: Optional[datetime] = None
    status: str = "sent"
    reply_to: Optional[ReplySnapshot] = None
    reactions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    is_pinned: bool = False
    is_edited: bool = False
    is_deleted: bool = False
    is_encrypted: bool = False
    undecryptable: bool = False
    forwarded_from: Optional[str] = None
    expires_at: Optional[datetime] = None

    def as_dict(self) -> dict:
        return {
            "messageId": self.message_id,
            "text": self.text,
            "senderId": self.sender_id,
            "receiverId": self.receiver_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "status": self.status,
            "replyTo": self.reply_to.as_dict() if self.reply_to else None,
            "reactions": {emoji: list(users) for emoji, users in self.reactions.items()},
            "isPinned": self.is_pinned,
            "isEdited": self.is_edited,
            "isDeleted": self.is_deleted,
            "isEncrypted": self.is_encrypted,
            "forwardedFrom": self.forwarded_from,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


# -------------------------- Reading message bodies --------------------------

def readable_text(device, viewer_uid: str, message: MessageDoc, peer_public_key: Optional[str]) -> Optional[str]:
    """
    Plaintext of `message` for the viewer, or None when it cannot be decrypted.

    Received messages use the sender key stored on the message; the viewer's own
    messages need the peer's current public key.
    """
    if message.is_deleted:
        return TOMBSTONE_TEXT
    if not message.is_encrypted:
        return message.text
    if message.sender_id == viewer_uid:
        their_key = peer_public_key
    else:
        their_key = message.sender_public_key or peer_public_key
    if not their_key or not message.iv:
        return None
    try:
        return decrypt_text(device, viewer_uid, message.text, message.iv, their_key)
    except E2EEError:
        return None


def message_view(message: MessageDoc, text: str, reply_to: Optional[ReplySnapshot] = None, undecryptable: bool = False) -> MessageView:
    return MessageView(
        message_id=message.message_id,
        text=text,
        sender_id=message.sender_id,
        receiver_id=message.receiver_id,
        created_at=message.created_at,
        status=message.status,
        reply_to=reply_to,
        reactions=message.reactions,
        is_pinned=message.is_pinned,
        is_edited=message.is_edited,
        is_deleted=message.is_deleted,
        is_encrypted=message.is_encrypted,
        undecryptable=undecryptable,
        forwarded_from=message.forwarded_from,
        expires_at=message.expires_at,
    )


def materialize_messages(ctx, snapshots: Iterable, now: Optional[datetime] = None, peer_public_key: Optional[str] = None) -> List[MessageView]:
    """
    Turn a message snapshot list (server order, createdAt ascending) into
    views. Expired messages are left out; reply snapshots follow the live
    referenced message when it is in the list.
    """
    now = now or timezone.now()
    messages = [message_from_snapshot(s) for s in snapshots]
    by_id = {m.message_id: m for m in messages}

    out = []
    for message in messages:
        if message.is_expired(now):
            continue
        text = readable_text(ctx.device, ctx.uid, message, peer_public_key)
        undecryptable = text is None

        reply = message.reply_to
        live = by_id.get(reply.message_id) if reply else None
        if live is not None:
            if live.is_deleted or live.is_expired(now):
                reply_text = TOMBSTONE_TEXT
            else:
                reply_text = readable_text(ctx.device, ctx.uid, live, peer_public_key) or UNDECRYPTABLE_TEXT
            reply = ReplySnapshot(reply.message_id, reply_text, reply.sender_display_name)

        out.append(message_view(message, UNDECRYPTABLE_TEXT if undecryptable else text, reply, undecryptable))
    return out


# -------------------------- Chats --------------------------

def cached_profile(db, uid: str, cache: Dict[str, Optional[UserProfile]]) -> Optional[UserProfile]:
    if uid not in cache:
        cache[uid] = get_profile(db, uid)
    return cache[uid]


def materialize_chat(
    db,
    viewer_uid: str,
    chat_id: str,
    data: dict,
    viewer: Optional[UserProfile] = None,
    profiles: Optional[Dict[str, Optional[UserProfile]]] = None,
) -> ChatView:
    """Join a raw chat document with the profiles the viewer is allowed to see."""
    cache = profiles if profiles is not None else {}
    chat = chat_from_dict(chat_id, data)
    if viewer is None:
        viewer = cached_profile(db, viewer_uid, cache)

    other_user = None
    members: List[UserProfile] = []
    blocked = False
    if chat.is_group:
        for uid in chat.participants:
            profile = cached_profile(db, uid, cache)
            if profile:
                members.append(visible_profile(profile, viewer_uid))
    else:
        others = chat.others(viewer_uid)
        other = cached_profile(db, others[0], cache) if others else None
        if other:
            blocked = is_blocked_between(viewer, other)
            other_user = visible_profile(other, viewer_uid)

    return ChatView(
        chat_id=chat.chat_id,
        type=chat.type,
        participants=chat.participants,
        admins=chat.admins,
        name=chat.name,
        description=chat.description,
        last_message=chat.preview(timezone.now()),
        last_message_at=chat.last_message_at,
        last_message_sender=chat.last_message_sender,
        created_at=chat.created_at,
        state=chat.state_for(viewer_uid),
        other_user=other_user,
        members=tuple(members),
        typing=tuple(typing_users(chat.typing, viewer_uid)),
        is_blocked=blocked,
    )


def sort_chat_views(views: Iterable[ChatView]) -> List[ChatView]:
    """Pinned chats first, then most recent activity; chats with no activity last."""
    ordered = sorted(views, key=lambda v: v.last_message_at or _EPOCH, reverse=True)
    return sorted(ordered, key=lambda v: not v.state.pinned)


def _my_chats_query(db, uid: str):
    return db.collection("chats").where("participants", "array_contains", uid)


def _materialize_all(db, ctx, snapshots) -> List[ChatView]:
    cache: Dict[str, Optional[UserProfile]] = {}
    viewer = cached_profile(db, ctx.uid, cache)
    views = [
        materialize_chat(db, ctx.uid, snap.id, snap.to_dict() or {}, viewer=viewer, profiles=cache)
        for snap in snapshots
    ]
    return sort_chat_views(views)


def get_chats_for_forward(db, ctx) -> List[ChatView]:
    """One-shot read of the caller's chats, in chat-list order."""
    if not ctx.is_authenticated:
        return []
    return _materialize_all(db, ctx, _my_chats_query(db, ctx.uid).stream())


# -------------------------- Subscriptions --------------------------

class Subscription:
    """Handle over one Firestore watch. `cancel()` may be called any number of times."""

    def __init__(self, watch, key: Optional[str] = None):
        self.key = key
        self._watch = watch
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._watch is not None

    def cancel(self):
        with self._lock:
            watch, self._watch = self._watch, None
        if watch is not None:
            watch.unsubscribe()


class SubscriptionRegistry:
    """At most one live subscription per key; opening a key again replaces it."""

    def __init__(self):
        self._subs: Dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def open(self, key: str, subscription: Optional[Subscription]) -> Optional[Subscription]:
        with self._lock:
            previous = self._subs.pop(key, None)
            if subscription is not None:
                self._subs[key] = subscription
        if previous is not None:
            previous.cancel()
        return subscription

    def close(self, key: str):
        with self._lock:
            sub = self._subs.pop(key, None)
        if sub is not None:
            sub.cancel()

    def get(self, key: str) -> Optional[Subscription]:
        return self._subs.get(key)

    def keys(self) -> List[str]:
        return list(self._subs)

    def close_all(self):
        with self._lock:
            subs, self._subs = list(self._subs.values()), {}
        for sub in subs:
            sub.cancel()


def subscribe_to_chats(db, ctx, callback: Callable[[List[ChatView]], None]) -> Optional[Subscription]:
    """
    Stream the caller's sorted chat list. Every change re-materializes and
    re-sorts the whole list.
    """
    if not ctx.is_authenticated:
        return None

    def _on_snapshot(docs, changes, read_time):
        try:
            callback(_materialize_all(db, ctx, docs))
        except Exception:
            logger.exception("chat list update failed for %s", ctx.uid)

    watch = _my_chats_query(db, ctx.uid).on_snapshot(_on_snapshot)
    return Subscription(watch, key="chats")


def subscribe_to_messages(db, ctx, chat_id: str, callback: Callable[[List[MessageView]], None]) -> Optional[Subscription]:
    """Stream a chat's messages, oldest first. None when the caller is not a member."""
    if not ctx.is_authenticated:
        return None
    chat = load_chat(db, chat_id)
    if chat is None or ctx.uid not in chat.participants:
        logger.info("refusing message stream of %s for %s", chat_id, ctx.uid)
        return None

    peer_public_key = None
    if not chat.is_group:
        others = chat.others(ctx.uid)
        peer = get_profile(db, others[0]) if others else None
        peer_public_key = peer.public_key if peer else None

    def _on_snapshot(docs, changes, read_time):
        try:
            callback(materialize_messages(ctx, docs, peer_public_key=peer_public_key))
        except Exception:
            logger.exception("message stream update failed for chat %s", chat_id)

    watch = messages_ref(db, chat_id).order_by("createdAt").on_snapshot(_on_snapshot)
    return Subscription(watch, key=f"messages:{chat_id}")
