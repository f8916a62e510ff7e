import firebase_admin
from firebase_admin import credentials, firestore
from django.conf import settings


def init_firebase():
    """Initialize the default Firebase app once per process."""
    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS)
        options = {}
        if settings.FIREBASE_PROJECT_ID:
            options["projectId"] = settings.FIREBASE_PROJECT_ID
        firebase_admin.initialize_app(cred, options)
    return firebase_admin.get_app()


def get_db():
    """Lazy-load the Firestore client."""
    init_firebase()
    return firestore.client()
