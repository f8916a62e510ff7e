# a_rtchat/search.py
"""
Client-side message search. Firestore has no substring queries, so each chat's
most recent window is fetched and filtered here (newest first).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from django.conf import settings
from django.utils import timezone
from google.cloud import firestore as _fs

from a_users.profiles import UserProfile

from .documents import ChatDoc, chat_from_snapshot, message_from_snapshot
from .firebase_sync import ChatView, MessageView, cached_profile, materialize_chat, message_view, readable_text
from .service import load_chat, messages_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatSearchHit:
    chat: ChatView
    messages: List[MessageView]


def _peer_public_key(db, ctx, chat: ChatDoc, cache: Dict[str, Optional[UserProfile]]) -> Optional[str]:
    if chat.is_group:
        return None
    others = chat.others(ctx.uid)
    peer = cached_profile(db, others[0], cache) if others else None
    return peer.public_key if peer else None


def _matches(db, ctx, chat: ChatDoc, needle: str, window: int, cache) -> List[MessageView]:
    now = timezone.now()
    peer_key = _peer_public_key(db, ctx, chat, cache)
    q = (
        messages_ref(db, chat.chat_id)
        .order_by("createdAt", direction=_fs.Query.DESCENDING)
        .limit(window)
    )
    out = []
    for snap in q.stream():
        message = message_from_snapshot(snap)
        if message.is_deleted or message.is_expired(now):
            continue
        text = readable_text(ctx.device, ctx.uid, message, peer_key)
        # Undecryptable bodies cannot be searched
        if text is None or needle not in text.casefold():
            continue
        out.append(message_view(message, text))
    return out


def search_messages_in_chat(db, ctx, chat_id: str, term: str) -> List[MessageView]:
    needle = (term or "").strip().casefold()
    if not needle or not ctx.is_authenticated:
        return []
    chat = load_chat(db, chat_id)
    if chat is None or ctx.uid not in chat.participants:
        return []
    window = getattr(settings, "CHAT_SEARCH_WINDOW", 500)
    return _matches(db, ctx, chat, needle, window, {})


def search_all_messages(db, ctx, term: str) -> List[ChatSearchHit]:
    """Search every chat of the caller; only chats with hits are returned."""
    needle = (term or "").strip().casefold()
    if not needle or not ctx.is_authenticated:
        return []
    window = getattr(settings, "CHAT_SEARCH_ALL_WINDOW", 100)
    cache: Dict[str, Optional[UserProfile]] = {}
    viewer = cached_profile(db, ctx.uid, cache)

    hits = []
    for snap in db.collection("chats").where("participants", "array_contains", ctx.uid).stream():
        chat = chat_from_snapshot(snap)
        messages = _matches(db, ctx, chat, needle, window, cache)
        if not messages:
            continue
        view = materialize_chat(db, ctx.uid, chat.chat_id, chat.raw, viewer=viewer, profiles=cache)
        hits.append(ChatSearchHit(chat=view, messages=messages))
    logger.debug("search_all_messages: %d chats matched for %s", len(hits), ctx.uid)
    return hits
