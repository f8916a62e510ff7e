import os

from channels.routing import ProtocolTypeRouter, URLRouter
from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "a_core.settings")

# Sets Django up before the consumers import models
get_asgi_application()

from a_rtchat.routing import websocket_urlpatterns  # noqa: E402

# Websocket-only: the UI talks to this process over /ws/chats/
application = ProtocolTypeRouter({
    "websocket": URLRouter(websocket_urlpatterns),
})
