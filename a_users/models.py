# a_users/models.py
from django.db import models


class DeviceValue(models.Model):
    """
    One entry of this device's local key/value scratch space.

    Holds private key material and message drafts. Lives only in the local
    SQLite database and is never mirrored to Firestore.
    """

    key = models.CharField(max_length=255, unique=True)
    value = models.TextField()
    updated = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.key
