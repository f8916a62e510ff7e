from pathlib import Path
import os
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

env_path = BASE_DIR / ".env"
load_dotenv(dotenv_path=str(env_path), encoding="utf-8-sig")
SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-insecure-change-me")

DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"

ALLOWED_HOSTS = os.environ.get("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")

REDIS_URL = os.environ.get("REDIS_URL")

INSTALLED_APPS = [
    'daphne',
    'a_users',
    'a_rtchat',
    'a_e2ee',
]

ASGI_APPLICATION = 'a_core.asgi.application'

if REDIS_URL:
    CHANNEL_LAYERS = {
        "default": {
            "BACKEND": "channels_redis.core.RedisChannelLayer",
            "CONFIG": {
                "hosts": [REDIS_URL],
            },
        },
    }
else:
    CHANNEL_LAYERS = {"default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}}

# Local device storage (private keys, drafts). Never synced anywhere.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get("DEVICE_DB_PATH", BASE_DIR / 'device.sqlite3'),
    }
}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Firebase
FIREBASE_CREDENTIALS = os.environ.get("FIREBASE_CREDENTIALS", str(BASE_DIR / "firebase-key.json"))
FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID")
FIRESTORE_BATCH_SIZE = 400  # Firestore limit is 500

# Message policy windows
CHAT_EDIT_WINDOW_SECONDS = 15 * 60
CHAT_DELETE_WINDOW_SECONDS = 60 * 60

# Search windows (recency bounded, not an index)
CHAT_SEARCH_WINDOW = 500
CHAT_SEARCH_ALL_WINDOW = 100
USER_SEARCH_LIMIT = 5

# Presence/Online status settings
PRESENCE_ONLINE_WINDOW_SECONDS = 120  #2 minutes

# When True, direct messages that cannot be encrypted are rejected instead of sent in plaintext
E2EE_REQUIRE_ENCRYPTION = os.environ.get("E2EE_REQUIRE_ENCRYPTION", "0") == "1"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "a_core": {"level": "INFO"},
        "a_users": {"level": "INFO"},
        "a_rtchat": {"level": "INFO"},
        "a_e2ee": {"level": "INFO"},
    },
}
