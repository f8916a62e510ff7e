from channels.generic.websocket import WebsocketConsumer
from asgiref.sync import async_to_sync
from firebase_admin import auth as admin_auth
from firebase_admin import exceptions as fb_exceptions
from django.utils.dateparse import parse_datetime
from google.api_core import exceptions as gexc
from urllib.parse import parse_qs
import json
import logging

from a_core.context import ClientContext
from a_core.firebase_admin_client import get_db
from a_core.results import OpResult, Rejection
from a_users.device_store import DeviceStore
from a_users.presence import ping_presence, set_presence, set_typing
from . import service
from .firebase_sync import SubscriptionRegistry, subscribe_to_chats, subscribe_to_messages

logger = logging.getLogger(__name__)

CHATS_KEY = "chats"
MESSAGES_KEY = "messages"


def _request_arg(data, key):
    """Pull one command argument out of a client request."""
    raw = data.get(key)
    if key == "value":
        return bool(data.get("value", True))
    if key == "expiresAt" and raw:
        when = parse_datetime(str(raw))
        if when is None:
            raise ValueError(f"expiresAt is not an ISO-8601 timestamp: {raw!r}")
        return when
    return raw


class ChatConsumer(WebsocketConsumer):
    """
    One signed-in client. Streams the chat list for the whole connection and
    the messages of at most one open chat at a time.

    Firestore watch callbacks run on SDK threads; they hop back onto this
    consumer through its own channel.
    """

    # action -> (service callable, request keys passed positionally)
    COMMANDS = {
        "send": (service.send_message, ("chatId", "text", "receiverId", "replyTo", "expiresAt")),
        "edit": (service.edit_message, ("chatId", "messageId", "text")),
        "delete": (service.delete_message, ("chatId", "messageId")),
        "react": (service.add_reaction, ("chatId", "messageId", "emoji")),
        "unreact": (service.remove_reaction, ("chatId", "messageId", "emoji")),
        "forward": (service.forward_message, ("chatId", "messageId", "toChatIds")),
        "pin_message": (service.pin_message, ("chatId", "messageId")),
        "unpin_message": (service.unpin_message, ("chatId", "messageId")),
        "mark_read": (service.mark_messages_as_read, ("chatId",)),
        "archive": (service.set_archived, ("chatId", "value")),
        "mute": (service.set_muted, ("chatId", "value")),
        "pin_chat": (service.set_pinned, ("chatId", "value")),
        "typing": (set_typing, ("chatId", "value")),
    }

    def connect(self):
        self.ctx = None
        self.open_chat_id = None
        self.registry = SubscriptionRegistry()

        token = parse_qs((self.scope.get("query_string") or b"").decode()).get("token", [None])[0]
        if not token:
            self.close(code=4401)
            return
        self.db = get_db()
        try:
            decoded = admin_auth.verify_id_token(token, check_revoked=True)
        except (ValueError, fb_exceptions.FirebaseError) as e:
            logger.info("websocket auth rejected: %s", e)
            self.close(code=4401)
            return

        self.ctx = ClientContext(uid=decoded["uid"], device=DeviceStore())
        self.accept()
        set_presence(self.db, self.ctx.uid, True)
        self.registry.open(CHATS_KEY, subscribe_to_chats(self.db, self.ctx, self._push_chats))

    def disconnect(self, close_code):
        try:
            self.registry.close_all()
            if self.ctx is not None:
                set_presence(self.db, self.ctx.uid, False)
        except Exception:
            logger.exception("Error during WebSocket disconnect")

    def receive(self, text_data=None, bytes_data=None):
        try:
            data = json.loads(text_data or "{}")
        except ValueError:
            self._reply("invalid", OpResult.fail(Rejection.NOT_FOUND, "Malformed request"))
            return
        action = data.get("action")

        if action == "open_chat":
            self._open_chat(data.get("chatId"))
        elif action == "close_chat":
            self.open_chat_id = None
            self.registry.close(MESSAGES_KEY)
        elif action == "ping":
            ping_presence(self.db, self.ctx.uid)
        elif action in self.COMMANDS:
            self._dispatch(action, data)
        else:
            self._reply(action, OpResult.fail(Rejection.NOT_FOUND, "Unknown action"))

    # -------------------------- helpers --------------------------

    def _dispatch(self, action, data):
        func, keys = self.COMMANDS[action]
        try:
            args = [_request_arg(data, k) for k in keys]
        except ValueError as e:
            self._reply(action, OpResult.fail(Rejection.NOT_FOUND, str(e)))
            return
        try:
            result = func(self.db, self.ctx, *args)
        except gexc.GoogleAPICallError as e:
            logger.warning("%s by %s failed: %s", action, self.ctx.uid, e)
            result = OpResult.fail(Rejection.UNAVAILABLE, "Service unavailable, try again")
        self._reply(action, result)

    def _open_chat(self, chat_id):
        self.open_chat_id = chat_id
        sub = subscribe_to_messages(
            self.db, self.ctx, chat_id,
            lambda views: self._push_messages(chat_id, views),
        )
        if sub is None:
            self.open_chat_id = None
            self.registry.close(MESSAGES_KEY)
            self._reply("open_chat", OpResult.fail(Rejection.NOT_PARTICIPANT, "You are not a member of this chat"))
            return
        self.registry.open(MESSAGES_KEY, sub)
        service.mark_messages_delivered(self.db, self.ctx, chat_id)
        self._reply("open_chat", OpResult.ok(chat_id))

    def _reply(self, action, result):
        payload = {"type": "result", "action": action, **result.as_dict()}
        self.send(text_data=json.dumps(payload))

    def _push_chats(self, views):
        async_to_sync(self.channel_layer.send)(
            self.channel_name,
            {"type": "chat_list_handler", "chats": [v.as_dict() for v in views]},
        )

    def _push_messages(self, chat_id, views):
        async_to_sync(self.channel_layer.send)(
            self.channel_name,
            {
                "type": "message_list_handler",
                "chat_id": chat_id,
                "messages": [v.as_dict() for v in views],
            },
        )

    # -------------------------- channel handlers --------------------------

    def chat_list_handler(self, event):
        self.send(text_data=json.dumps({"type": "chats", "chats": event["chats"]}))

    def message_list_handler(self, event):
        # Late deliveries from a stream that was already replaced
        if event["chat_id"] != self.open_chat_id:
            return
        self.send(text_data=json.dumps({
            "type": "messages",
            "chatId": event["chat_id"],
            "messages": event["messages"],
        }))
