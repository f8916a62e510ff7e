# a_rtchat/service.py
"""
Chat commands against Firestore.

Every command takes the Firestore client and the caller's ClientContext and
returns an OpResult. Policy outcomes (not a member, window elapsed, ...) come
back as failures with a stable error code; Firestore outages propagate as
google.api_core exceptions, except `NotFound` on a single-document update,
which is reported as `not-found`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from django.conf import settings
from django.utils import timezone
from google.api_core import exceptions as gexc
from google.cloud import firestore as _fs

from a_core.results import OpResult, Rejection
from a_e2ee.crypto import E2EEError, encrypt_text
from a_e2ee.policy import encryption_required, resolve_encryption
from a_users.firebase_helpers import safe_make_aware
from a_users.profiles import get_profile, is_blocked_between

from .documents import (
    ENCRYPTED_PREVIEW,
    GROUP_RECEIVER,
    STATUS_ORDER,
    TOMBSTONE_TEXT,
    ChatDoc,
    ChatType,
    MessageDoc,
    MessageStatus,
    ReplySnapshot,
    chat_from_snapshot,
    member_defaults,
    message_from_snapshot,
    retire_member,
    seed_member_maps,
)

logger = logging.getLogger(__name__)

CLEARED_PREVIEW = "Chat history cleared"
RETIRED_PREVIEW = "Chat deleted"


# -------------------------- Utilities --------------------------

def make_pair_key(uid_a: str, uid_b: str) -> str:
    return "#".join(sorted([uid_a, uid_b]))


def _now() -> datetime:
    return timezone.now()


def _window(setting_name: str, default_seconds: int) -> timedelta:
    return timedelta(seconds=getattr(settings, setting_name, default_seconds))


def _outside_window(created_at: Optional[datetime], window: timedelta) -> bool:
    # A message without a resolved createdAt is still in flight, so it is fresh.
    if created_at is None:
        return False
    return _now() - created_at > window


def _batch_size() -> int:
    return int(getattr(settings, "FIRESTORE_BATCH_SIZE", 400))


def chat_ref(db, chat_id: str):
    return db.collection("chats").document(chat_id)


def messages_ref(db, chat_id: str):
    return chat_ref(db, chat_id).collection("messages")


def load_chat(db, chat_id: str) -> Optional[ChatDoc]:
    if not chat_id:
        return None
    snap = chat_ref(db, chat_id).get()
    return chat_from_snapshot(snap) if snap.exists else None


def load_message(db, chat_id: str, message_id: str) -> Optional[MessageDoc]:
    if not chat_id or not message_id:
        return None
    snap = messages_ref(db, chat_id).document(message_id).get()
    return message_from_snapshot(snap) if snap.exists else None


def _member_chat(db, ctx, chat_id: str) -> Tuple[Optional[ChatDoc], Optional[OpResult]]:
    """Load a chat the caller belongs to, or the failure explaining why not."""
    if not ctx.is_authenticated:
        return None, OpResult.fail(Rejection.NOT_AUTHENTICATED)
    chat = load_chat(db, chat_id)
    if chat is None:
        return None, OpResult.fail(Rejection.NOT_FOUND, "Chat not found")
    if ctx.uid not in chat.participants:
        return None, OpResult.fail(Rejection.NOT_PARTICIPANT, "You are not a member of this chat")
    return chat, None


def _admin_group(db, ctx, chat_id: str) -> Tuple[Optional[ChatDoc], Optional[OpResult]]:
    if not ctx.is_authenticated:
        return None, OpResult.fail(Rejection.NOT_AUTHENTICATED)
    chat = load_chat(db, chat_id)
    if chat is None:
        return None, OpResult.fail(Rejection.NOT_FOUND, "Chat not found")
    if not chat.is_group:
        return None, OpResult.fail(Rejection.NOT_GROUP, "Not a group chat")
    if ctx.uid not in chat.admins:
        return None, OpResult.fail(Rejection.NOT_ADMIN, "Only admins can do this")
    return chat, None


def _update_chat(db, chat_id: str, updates: dict) -> Optional[OpResult]:
    try:
        chat_ref(db, chat_id).update(updates)
    except gexc.NotFound:
        return OpResult.fail(Rejection.NOT_FOUND, "Chat not found")
    return None


def _preview_for(body: dict) -> str:
    return ENCRYPTED_PREVIEW if body.get("isEncrypted") else body.get("text", "")


def _bump_chat(
    db,
    chat_id: str,
    sender_uid: str,
    message_id: str,
    preview: str,
    recipients: Iterable[str],
    expires_at: Optional[datetime] = None,
):
    updates = {
        "lastMessage": preview,
        "lastMessageAt": _fs.SERVER_TIMESTAMP,
        "lastMessageSender": sender_uid,
        "lastMessageId": message_id,
        "lastMessageExpiresAt": expires_at,
    }
    for uid in recipients:
        updates[f"unreadCounts.{uid}"] = _fs.Increment(1)
    chat_ref(db, chat_id).update(updates)


# -------------------------- Chat creation --------------------------

def create_direct_chat(db, ctx, other_uid: str) -> OpResult:
    """
    Return the existing direct chat between the caller and `other_uid`,
    creating it on first contact. Value is the chat id.
    """
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    if not other_uid or other_uid == ctx.uid:
        return OpResult.fail(Rejection.NOT_FOUND, "User not found")

    chats = db.collection("chats")
    pair_key = make_pair_key(ctx.uid, other_uid)
    for snap in chats.where("pairKey", "==", pair_key).stream():
        if ctx.uid in ((snap.to_dict() or {}).get("participants") or []):
            return OpResult.ok(snap.id)

    # Chats written before pairKey existed
    for snap in chats.where("participants", "array_contains", ctx.uid).stream():
        data = snap.to_dict() or {}
        if (data.get("type") or ChatType.DIRECT.value) == ChatType.DIRECT.value and other_uid in (data.get("participants") or []):
            return OpResult.ok(snap.id)

    ref = chats.document()
    ref.set({
        "type": ChatType.DIRECT.value,
        "participants": [ctx.uid, other_uid],
        "pairKey": pair_key,
        "createdAt": _fs.SERVER_TIMESTAMP,
        "lastMessage": "",
        "lastMessageAt": _fs.SERVER_TIMESTAMP,
        "lastMessageSender": "",
        **seed_member_maps([ctx.uid, other_uid]),
    })
    logger.info("direct chat %s created for %s", ref.id, pair_key)
    return OpResult.ok(ref.id)


def create_group_chat(db, ctx, name: str, description: str = "", member_ids: Iterable[str] = ()) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    name = (name or "").strip()
    if not name:
        return OpResult.fail(Rejection.EMPTY_MESSAGE, "Group name is required")

    participants = list(dict.fromkeys([ctx.uid, *[m for m in (member_ids or []) if m]]))
    ref = db.collection("chats").document()
    ref.set({
        "type": ChatType.GROUP.value,
        "name": name,
        "description": (description or "").strip(),
        "participants": participants,
        "admins": [ctx.uid],
        "createdBy": ctx.uid,
        "createdAt": _fs.SERVER_TIMESTAMP,
        "lastMessage": f"{name} group created",
        "lastMessageAt": _fs.SERVER_TIMESTAMP,
        "lastMessageSender": "",
        **seed_member_maps(participants),
    })
    logger.info("group chat %s created by %s with %d members", ref.id, ctx.uid, len(participants))
    return OpResult.ok(ref.id)


# -------------------------- Sending --------------------------

def _seal_body(ctx, chat_type: str, sender, receiver, text: str) -> Tuple[Optional[dict], Optional[OpResult]]:
    """
    Body fields for a message: ciphertext when the encryption policy allows
    it, otherwise plaintext (or a rejection when plaintext is not allowed).
    """
    decision = resolve_encryption(chat_type, sender, receiver, ctx.device)
    reason = decision.reason
    if decision.encrypt:
        try:
            payload = encrypt_text(ctx.device, ctx.uid, text, decision.receiver_public_key)
            return {
                "text": payload.ciphertext,
                "iv": payload.iv,
                "isEncrypted": True,
                "senderPublicKey": decision.sender_public_key,
            }, None
        except E2EEError as e:
            reason = f"encryption failed: {e}"

    if chat_type == ChatType.DIRECT.value:
        if encryption_required():
            logger.info("refusing plaintext send from %s: %s", ctx.uid, reason)
            return None, OpResult.fail(
                Rejection.ENCRYPTION_UNAVAILABLE,
                "This message cannot be encrypted and plaintext sending is disabled",
            )
        logger.info("sending plaintext from %s: %s", ctx.uid, reason)
    return {"text": text, "iv": None, "isEncrypted": False, "senderPublicKey": None}, None


def _message_payload(ctx, body: dict, receiver_id: str, **extra) -> dict:
    payload = {
        **body,
        "senderId": ctx.uid,
        "receiverId": receiver_id,
        "createdAt": _fs.SERVER_TIMESTAMP,
        "status": MessageStatus.SENT.value,
        "type": "text",
        "reactions": {},
        "replyTo": None,
        "expiresAt": None,
        "forwardedFrom": None,
        "isPinned": False,
        "isEdited": False,
        "editedAt": None,
        "deletedAt": None,
    }
    payload.update(extra)
    return payload


def _recipients(chat: ChatDoc, sender_uid: str, receiver_id: Optional[str]) -> Tuple[str, List[str]]:
    """(receiverId to store, uids whose unread count goes up)."""
    others = chat.others(sender_uid)
    if chat.is_group:
        return GROUP_RECEIVER, others
    if receiver_id in others:
        return receiver_id, [receiver_id]
    if receiver_id and receiver_id != GROUP_RECEIVER:
        return receiver_id, []
    return (others[0], others[:1]) if others else ("", [])


def send_message(
    db,
    ctx,
    chat_id: str,
    text: str,
    receiver_id: Optional[str] = None,
    reply_to=None,
    expires_at: Optional[datetime] = None,
) -> OpResult:
    """
    Append a message and update the chat preview and recipients' unread
    counts. Value is the new message id.
    """
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    if not (text or "").strip():
        return OpResult.fail(Rejection.EMPTY_MESSAGE, "Message cannot be empty")
    chat, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure

    receiver_id, recipients = _recipients(chat, ctx.uid, receiver_id)
    if not chat.is_group and not recipients:
        return OpResult.fail(Rejection.NOT_PARTICIPANT, "Receiver is not a member of this chat")

    sender = get_profile(db, ctx.uid)
    receiver = None if chat.is_group else get_profile(db, receiver_id)
    if not chat.is_group and is_blocked_between(sender, receiver):
        return OpResult.fail(Rejection.BLOCKED, "You cannot message this user")

    body, failure = _seal_body(ctx, chat.type, sender, receiver, text)
    if failure:
        return failure

    extra = {}
    reply = ReplySnapshot.from_dict(reply_to)
    if reply:
        if body["isEncrypted"]:
            reply = ReplySnapshot(reply.message_id, ENCRYPTED_PREVIEW, reply.sender_display_name)
        extra["replyTo"] = reply.as_dict()
    if expires_at is not None:
        expires_at = safe_make_aware(expires_at)
        extra["expiresAt"] = expires_at

    ref = messages_ref(db, chat_id).document()
    ref.set(_message_payload(ctx, body, receiver_id, **extra))
    _bump_chat(db, chat_id, ctx.uid, ref.id, _preview_for(body), recipients, expires_at)
    logger.debug("message %s sent to chat %s (encrypted=%s)", ref.id, chat_id, body["isEncrypted"])
    return OpResult.ok(ref.id)


# -------------------------- Edit / delete --------------------------

def _own_live_message(db, ctx, chat_id: str, message_id: str, verb: str) -> Tuple[Optional[MessageDoc], Optional[OpResult]]:
    if not ctx.is_authenticated:
        return None, OpResult.fail(Rejection.NOT_AUTHENTICATED)
    message = load_message(db, chat_id, message_id)
    if message is None:
        return None, OpResult.fail(Rejection.NOT_FOUND, "Message not found")
    if message.sender_id != ctx.uid:
        return None, OpResult.fail(Rejection.NOT_SENDER, f"You can only {verb} your own messages")
    if message.is_deleted:
        return None, OpResult.fail(Rejection.DELETED, "Message was deleted")
    return message, None


def edit_message(db, ctx, chat_id: str, message_id: str, new_text: str) -> OpResult:
    """Sender-only, within the edit window of createdAt."""
    if not (new_text or "").strip():
        return OpResult.fail(Rejection.EMPTY_MESSAGE, "Message cannot be empty")
    message, failure = _own_live_message(db, ctx, chat_id, message_id, "edit")
    if failure:
        return failure
    if _outside_window(message.created_at, _window("CHAT_EDIT_WINDOW_SECONDS", 900)):
        return OpResult.fail(Rejection.EXPIRED, "Messages can only be edited within 15 minutes")

    body = {"text": new_text, "iv": None, "isEncrypted": False, "senderPublicKey": None}
    chat = load_chat(db, chat_id)
    if message.is_encrypted and chat is not None:
        sender = get_profile(db, ctx.uid)
        receiver = None if chat.is_group else get_profile(db, message.receiver_id)
        body, failure = _seal_body(ctx, chat.type, sender, receiver, new_text)
        if failure:
            return failure

    try:
        messages_ref(db, chat_id).document(message_id).update({
            **body,
            "isEdited": True,
            "editedAt": _fs.SERVER_TIMESTAMP,
        })
    except gexc.NotFound:
        return OpResult.fail(Rejection.NOT_FOUND, "Message not found")

    if chat is not None and chat.last_message_id == message_id:
        _update_chat(db, chat_id, {"lastMessage": _preview_for(body)})
    return OpResult.ok()


def _tombstone_fields() -> dict:
    return {
        "text": TOMBSTONE_TEXT,
        "deletedAt": _fs.SERVER_TIMESTAMP,
        "isEncrypted": False,
        "iv": None,
        "senderPublicKey": None,
    }


def delete_message(db, ctx, chat_id: str, message_id: str) -> OpResult:
    """Sender-only soft delete, within the delete window of createdAt."""
    message, failure = _own_live_message(db, ctx, chat_id, message_id, "delete")
    if failure:
        return failure
    if _outside_window(message.created_at, _window("CHAT_DELETE_WINDOW_SECONDS", 3600)):
        return OpResult.fail(Rejection.EXPIRED, "Messages can only be deleted within 1 hour")

    try:
        messages_ref(db, chat_id).document(message_id).update(_tombstone_fields())
    except gexc.NotFound:
        return OpResult.fail(Rejection.NOT_FOUND, "Message not found")

    chat = load_chat(db, chat_id)
    if chat is not None and chat.last_message_id == message_id:
        _update_chat(db, chat_id, {"lastMessage": TOMBSTONE_TEXT})
    return OpResult.ok()


# -------------------------- Reactions --------------------------

def _set_reaction(db, ctx, chat_id: str, message_id: str, emoji: str, present: bool) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    if not emoji:
        return OpResult.fail(Rejection.EMPTY_MESSAGE, "Reaction cannot be empty")
    _, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    ref = messages_ref(db, chat_id).document(message_id)
    snap = ref.get()
    if not snap.exists:
        return OpResult.fail(Rejection.NOT_FOUND, "Message not found")

    users = ((snap.to_dict() or {}).get("reactions") or {}).get(emoji) or []
    if (ctx.uid in users) == present:
        return OpResult.ok()
    change = _fs.ArrayUnion([ctx.uid]) if present else _fs.ArrayRemove([ctx.uid])
    ref.update({f"reactions.{emoji}": change})
    return OpResult.ok()


def add_reaction(db, ctx, chat_id: str, message_id: str, emoji: str) -> OpResult:
    return _set_reaction(db, ctx, chat_id, message_id, emoji, True)


def remove_reaction(db, ctx, chat_id: str, message_id: str, emoji: str) -> OpResult:
    return _set_reaction(db, ctx, chat_id, message_id, emoji, False)


# -------------------------- Forwarding --------------------------

@dataclass(frozen=True)
class ForwardResult:
    """Overall outcome plus one OpResult per destination chat id."""

    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    destinations: Dict[str, OpResult] = field(default_factory=dict)

    def as_dict(self) -> dict:
        data = {
            "success": self.success,
            "destinations": {cid: r.as_dict() for cid, r in self.destinations.items()},
        }
        if self.error:
            data["error"] = self.error
            data["message"] = self.message
        return data


def forwarded_body(original: MessageDoc) -> dict:
    """
    The stored body copied verbatim. Ciphertext stays bound to the original
    sender/receiver pair and is not re-encrypted for the destination.
    """
    return {
        "text": original.text,
        "iv": original.iv,
        "isEncrypted": original.is_encrypted,
        "senderPublicKey": original.sender_public_key,
    }


def _forward_one(db, ctx, original: MessageDoc, from_chat_id: str, dest_chat_id: str) -> OpResult:
    chat, failure = _member_chat(db, ctx, dest_chat_id)
    if failure:
        return failure
    receiver_id, recipients = _recipients(chat, ctx.uid, None)
    if not receiver_id:
        return OpResult.fail(Rejection.NOT_PARTICIPANT, "Chat has no other members")
    if not chat.is_group and is_blocked_between(get_profile(db, ctx.uid), get_profile(db, receiver_id)):
        return OpResult.fail(Rejection.BLOCKED, "You cannot message this user")

    body = forwarded_body(original)
    ref = messages_ref(db, dest_chat_id).document()
    ref.set(_message_payload(ctx, body, receiver_id, forwardedFrom=from_chat_id))
    _bump_chat(db, dest_chat_id, ctx.uid, ref.id, _preview_for(body), recipients)
    return OpResult.ok(ref.id)


def forward_message(db, ctx, from_chat_id: str, message_id: str, to_chat_ids: Iterable[str]) -> ForwardResult:
    _, failure = _member_chat(db, ctx, from_chat_id)
    if failure:
        return ForwardResult(False, failure.error, failure.message)
    original = load_message(db, from_chat_id, message_id)
    if original is None:
        return ForwardResult(False, Rejection.NOT_FOUND.value, "Message not found")
    if original.is_deleted:
        return ForwardResult(False, Rejection.DELETED.value, "Cannot forward a deleted message")
    if original.is_expired(_now()):
        return ForwardResult(False, Rejection.EXPIRED.value, "Message has expired")

    targets = list(dict.fromkeys(cid for cid in (to_chat_ids or []) if cid))
    if not targets:
        return ForwardResult(False, Rejection.NOT_FOUND.value, "No chats selected")

    results: Dict[str, OpResult] = {}
    for dest in targets:
        try:
            results[dest] = _forward_one(db, ctx, original, from_chat_id, dest)
        except gexc.GoogleAPICallError as e:
            logger.warning("forward of %s to %s failed: %s", message_id, dest, e)
            results[dest] = OpResult.fail(Rejection.UNAVAILABLE, "Could not forward to this chat")

    failed = [cid for cid, r in results.items() if not r.success]
    if not failed:
        return ForwardResult(True, destinations=results)
    return ForwardResult(
        False,
        Rejection.PARTIAL_FAILURE.value,
        f"Forwarded to {len(results) - len(failed)} of {len(results)} chats",
        destinations=results,
    )


# -------------------------- Group membership --------------------------

def add_group_member(db, ctx, chat_id: str, user_id: str) -> OpResult:
    chat, failure = _admin_group(db, ctx, chat_id)
    if failure:
        return failure
    if not user_id:
        return OpResult.fail(Rejection.NOT_FOUND, "User not found")
    if user_id in chat.participants:
        return OpResult.fail(Rejection.ALREADY_EXISTS, "User is already a member")
    failure = _update_chat(db, chat_id, {"participants": _fs.ArrayUnion([user_id]), **member_defaults(user_id)})
    if failure:
        return failure
    logger.info("%s added %s to group %s", ctx.uid, user_id, chat_id)
    return OpResult.ok()


def remove_group_member(db, ctx, chat_id: str, user_id: str) -> OpResult:
    """Admins remove anyone; any member may remove themselves."""
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    chat = load_chat(db, chat_id)
    if chat is None:
        return OpResult.fail(Rejection.NOT_FOUND, "Chat not found")
    if not chat.is_group:
        return OpResult.fail(Rejection.NOT_GROUP, "Not a group chat")
    if user_id != ctx.uid and ctx.uid not in chat.admins:
        return OpResult.fail(Rejection.NOT_ADMIN, "Only admins can remove members")
    if user_id not in chat.participants:
        return OpResult.fail(Rejection.NOT_PARTICIPANT, "User is not a member of this group")
    if chat.admins == (user_id,) and len(chat.participants) > 1:
        return OpResult.fail(Rejection.LAST_ADMIN, "Make someone else an admin first")

    failure = _update_chat(db, chat_id, {
        "participants": _fs.ArrayRemove([user_id]),
        "admins": _fs.ArrayRemove([user_id]),
        **retire_member(user_id),
    })
    if failure:
        return failure
    logger.info("%s removed %s from group %s", ctx.uid, user_id, chat_id)
    return OpResult.ok()


def leave_group(db, ctx, chat_id: str) -> OpResult:
    if not ctx.is_authenticated:
        return OpResult.fail(Rejection.NOT_AUTHENTICATED)
    return remove_group_member(db, ctx, chat_id, ctx.uid)


def make_admin(db, ctx, chat_id: str, user_id: str) -> OpResult:
    chat, failure = _admin_group(db, ctx, chat_id)
    if failure:
        return failure
    if user_id not in chat.participants:
        return OpResult.fail(Rejection.NOT_PARTICIPANT, "User is not a member of this group")
    if user_id in chat.admins:
        return OpResult.fail(Rejection.ALREADY_ADMIN, "User is already an admin")
    return _update_chat(db, chat_id, {"admins": _fs.ArrayUnion([user_id])}) or OpResult.ok()


def update_group_info(db, ctx, chat_id: str, name: Optional[str] = None, description: Optional[str] = None) -> OpResult:
    chat, failure = _admin_group(db, ctx, chat_id)
    if failure:
        return failure
    updates = {}
    if name is not None:
        name = name.strip()
        if not name:
            return OpResult.fail(Rejection.EMPTY_MESSAGE, "Group name is required")
        updates["name"] = name
    if description is not None:
        updates["description"] = description.strip()
    if not updates:
        return OpResult.ok()
    return _update_chat(db, chat_id, updates) or OpResult.ok()


# -------------------------- Per-user flags --------------------------

def _set_member_flag(db, ctx, chat_id: str, map_name: str, value) -> OpResult:
    _, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    return _update_chat(db, chat_id, {f"{map_name}.{ctx.uid}": value}) or OpResult.ok()


def set_archived(db, ctx, chat_id: str, archived: bool = True) -> OpResult:
    return _set_member_flag(db, ctx, chat_id, "archivedStatus", bool(archived))


def set_muted(db, ctx, chat_id: str, muted: bool = True) -> OpResult:
    return _set_member_flag(db, ctx, chat_id, "mutedStatus", bool(muted))


def set_pinned(db, ctx, chat_id: str, pinned: bool = True) -> OpResult:
    return _set_member_flag(db, ctx, chat_id, "pinnedStatus", bool(pinned))


# -------------------------- Receipts --------------------------

def _advance_inbound_status(db, chat_id: str, uid: str, target: MessageStatus) -> int:
    """Move the caller's inbound direct messages forward to `target`; never back."""
    rank = STATUS_ORDER[target.value]
    batch, pending, moved = db.batch(), 0, 0
    for snap in messages_ref(db, chat_id).where("receiverId", "==", uid).stream():
        status = (snap.to_dict() or {}).get("status") or MessageStatus.SENT.value
        if STATUS_ORDER.get(status, 0) >= rank:
            continue
        batch.update(snap.reference, {"status": target.value})
        pending += 1
        moved += 1
        if pending >= _batch_size():
            batch.commit()
            batch, pending = db.batch(), 0
    if pending:
        batch.commit()
    return moved


def mark_messages_as_read(db, ctx, chat_id: str) -> OpResult:
    """Zero the caller's unread count and mark inbound direct messages read."""
    chat, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    failure = _update_chat(db, chat_id, {f"unreadCounts.{ctx.uid}": 0})
    if failure:
        return failure
    moved = 0
    if not chat.is_group:
        moved = _advance_inbound_status(db, chat_id, ctx.uid, MessageStatus.READ)
    return OpResult.ok(moved)


def mark_messages_delivered(db, ctx, chat_id: str) -> OpResult:
    chat, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    if chat.is_group:
        return OpResult.ok(0)
    return OpResult.ok(_advance_inbound_status(db, chat_id, ctx.uid, MessageStatus.DELIVERED))


# -------------------------- Pins --------------------------

def _set_message_pin(db, ctx, chat_id: str, message_id: str, pinned: bool) -> OpResult:
    _, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    try:
        messages_ref(db, chat_id).document(message_id).update({"isPinned": pinned})
    except gexc.NotFound:
        return OpResult.fail(Rejection.NOT_FOUND, "Message not found")
    return OpResult.ok()


def pin_message(db, ctx, chat_id: str, message_id: str) -> OpResult:
    return _set_message_pin(db, ctx, chat_id, message_id, True)


def unpin_message(db, ctx, chat_id: str, message_id: str) -> OpResult:
    return _set_message_pin(db, ctx, chat_id, message_id, False)


# -------------------------- Clearing / deleting chats --------------------------

def _tombstone_all(db, chat_id: str) -> int:
    batch, pending, count = db.batch(), 0, 0
    for snap in messages_ref(db, chat_id).stream():
        if (snap.to_dict() or {}).get("deletedAt"):
            continue
        batch.update(snap.reference, _tombstone_fields())
        pending += 1
        count += 1
        if pending >= _batch_size():
            batch.commit()
            batch, pending = db.batch(), 0
    if pending:
        batch.commit()
    return count


def clear_chat_history(db, ctx, chat_id: str) -> OpResult:
    """Tombstone every message in the chat. Value is the number cleared."""
    _, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    count = _tombstone_all(db, chat_id)
    _update_chat(db, chat_id, {
        "lastMessage": CLEARED_PREVIEW,
        "lastMessageAt": _fs.SERVER_TIMESTAMP,
        "lastMessageExpiresAt": None,
    })
    logger.info("%s cleared %d messages in %s", ctx.uid, count, chat_id)
    return OpResult.ok(count)


def retire_chat(db, ctx, chat: ChatDoc) -> OpResult:
    """
    Tombstone every message and empty the participant list, so the chat
    disappears for everyone. Nothing restores it.
    """
    count = _tombstone_all(db, chat.chat_id)
    failure = _update_chat(db, chat.chat_id, {
        f"deletedBy.{ctx.uid}": True,
        "participants": [],
        "lastMessage": RETIRED_PREVIEW,
        "lastMessageExpiresAt": None,
    })
    if failure:
        return failure
    logger.info("%s deleted chat %s (%d messages tombstoned)", ctx.uid, chat.chat_id, count)
    return OpResult.ok(count)


def delete_chat(db, ctx, chat_id: str) -> OpResult:
    chat, failure = _member_chat(db, ctx, chat_id)
    if failure:
        return failure
    return retire_chat(db, ctx, chat)
